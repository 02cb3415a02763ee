"""TickLoop - tick-driven adaptive trading loop for a single instrument."""

__version__ = "1.0.0"
