"""Telemetry journal."""
