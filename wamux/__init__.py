"""
wamux - multi-account messaging relay.

Runs many independent messaging sessions side by side and relays their
traffic to per-account webhook subscribers.
"""

from wamux.__version__ import __version__

__all__ = ["__version__"]
