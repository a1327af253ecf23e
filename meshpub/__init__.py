"""Peer scoring, score parameters, message signing and subscriptions for mesh-based publish/subscribe."""

__version__ = "0.1.0"
__all__ = ["__version__"]