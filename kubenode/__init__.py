"""Ping monitoring, lease renewal, node status patches and stats types for a virtual cluster node."""

__version__ = "0.1.0"