"""kiroweb: session runner and conversation sync for kiro-cli."""

__version__ = "0.1.0"
