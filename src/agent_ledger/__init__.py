"""Task and fund lifecycle coordination for autonomous agents."""

__version__ = "0.1.0"
