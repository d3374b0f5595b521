"""OBS WebSocket driver, display queue and goal tracking."""

from .connection import OBSConnectionManager
from .display_queue import DisplayQueue
from .goals import GoalTracker, format_goal
from .sources import ObsSources

__all__ = ["DisplayQueue", "GoalTracker", "OBSConnectionManager", "ObsSources", "format_goal"]
