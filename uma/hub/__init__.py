"""Telemetry hub: collector, TTL cache, change detection and event delivery."""
