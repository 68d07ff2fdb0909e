"""Alert output channels and dispatch, event-drop monitoring, metrics snapshots,
health and version endpoints, and in-process alert streaming."""

__version__ = "0.1.0"