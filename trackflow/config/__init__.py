"""Configuration management for trackflow."""

from trackflow.config.settings import EngineConfig, TrackerConfig, TrackflowSettings

__all__ = ["EngineConfig", "TrackerConfig", "TrackflowSettings"]
