"""Configuration package for deferred payouts."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
