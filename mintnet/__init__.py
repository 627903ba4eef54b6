"""Framed, authenticated and reconnecting messaging between federation peers."""

__version__ = "0.1.0"

__all__ = ["cln", "config", "connect", "framed", "peers", "queue"]