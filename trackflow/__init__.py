"""trackflow: automation rule engine for issue trackers."""

__version__ = "0.1.0"
