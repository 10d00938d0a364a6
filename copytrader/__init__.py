"""Leader/follower spot copy-trading worker."""

__version__ = "1.0.0"
