"""HTTP control API."""

from .server import ControlServer, NotifyCommand

__all__ = ["ControlServer", "NotifyCommand"]
