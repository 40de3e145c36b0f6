"""Two-player Snake matchmaking and relay server."""

__version__ = "0.1.0"
