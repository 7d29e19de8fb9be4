"""Configuration, Consul leasing and command-line tools for a replicated SQLite cluster node."""

__version__ = "0.1.0"