"""Scoped consumer for a stream of live positions."""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional

from flask import current_app

from .geo import Coordinate
from .services import discover_nearby_secrets

DiscoveryCallback = Callable[[Dict[str, Any]], None]


class PositionWatch:
    """Feeds positions into secret discovery until cancelled.

    Use it as a context manager so the watch is cancelled on every exit path,
    errors included. Positions fed after cancellation are dropped.
    """

    def __init__(self, user_id: str, on_discovery: Optional[DiscoveryCallback] = None):
        self.user_id = user_id
        self.on_discovery = on_discovery
        self.active = False
        self.positions_seen = 0
        self.discovered: List[Dict[str, Any]] = []

    def __enter__(self) -> "PositionWatch":
        self.active = True
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()

    def cancel(self) -> None:
        if self.active:
            current_app.logger.debug("Position watch for %s cancelled after %d fixes", self.user_id, self.positions_seen)
        self.active = False

    def feed(self, position: Coordinate) -> Optional[Dict[str, Any]]:
        if not self.active:
            return None
        self.positions_seen += 1
        result = discover_nearby_secrets(self.user_id, position)
        if result["discovered"]:
            self.discovered.extend(result["discovered"])
            if self.on_discovery:
                self.on_discovery(result)
        return result


def watch_positions(
    user_id: str,
    positions: Iterable[Coordinate],
    on_discovery: Optional[DiscoveryCallback] = None,
) -> List[Dict[str, Any]]:
    """Drain a finite position stream inside one watch; returns every new discovery."""
    with PositionWatch(user_id, on_discovery) as watch:
        for position in positions:
            watch.feed(position)
    return watch.discovered
