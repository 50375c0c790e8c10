"""Version information for wamux."""

__version__ = "0.4.0"
