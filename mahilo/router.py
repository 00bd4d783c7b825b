"""
Connection selection — pick which of a contact's endpoints gets a message.

Pure routing logic only. Inactive connections are never selected.

Depends on: models
"""

from typing import Iterable, Optional

from mahilo.models import Connection


def tag_score(connection: Connection, tags: Iterable[str]) -> int:
    """Count requested tags that match a capability, ignoring case."""
    caps = {c.casefold() for c in connection.capabilities}
    return sum(1 for t in tags if t.casefold() in caps)


def select_connection(connections: Iterable[Connection],
                      label: Optional[str] = None,
                      tags: Optional[list[str]] = None) -> Optional[Connection]:
    """Select the best active connection.

    1. An exact label match wins.
    2. Otherwise the best capability/tag overlap, ties broken by routing
       priority, but only when at least one tag matched.
    3. Otherwise the highest routing priority; earlier connections win ties.
    Returns None when nothing is active.
    """
    active = [c for c in connections if c.is_active]
    if not active:
        return None

    if label:
        for conn in active:
            if conn.label == label:
                return conn

    if tags:
        # sorted() is stable, so equal (score, priority) keep their original order
        scored = sorted(
            active,
            key=lambda c: (tag_score(c, tags), c.routing_priority),
            reverse=True,
        )
        if tag_score(scored[0], tags) > 0:
            return scored[0]

    return max(active, key=lambda c: c.routing_priority)
