"""
Trust gates — the inbound webhook path and the outbound send path.

Depends on: gate/inbound, gate/outbound
"""

from mahilo.gate.inbound import InboundGate, InboundOutcome
from mahilo.gate.outbound import OutboundGate, OutboundOutcome

__all__ = ["InboundGate", "InboundOutcome", "OutboundGate", "OutboundOutcome"]
