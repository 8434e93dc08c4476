"""Real-time chat relay with bounded history and timed retention."""

__version__ = "1.0.0"
