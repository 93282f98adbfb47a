"""Journey feature package: missions, hidden secrets and trip progress."""

from .routes import journey_bp
from .watch import PositionWatch, watch_positions

__all__ = ["PositionWatch", "journey_bp", "watch_positions"]
