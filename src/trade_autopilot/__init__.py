"""Trade Autopilot - admission control and stop lifecycle management for automated entries."""

__version__ = "0.1.0"
