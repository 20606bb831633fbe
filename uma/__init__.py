"""UMA: unified telemetry collection and caching core."""

__version__ = "0.4.0"
