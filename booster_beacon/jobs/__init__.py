"""Background jobs module."""

from .scheduler import create_scheduler

__all__ = ["create_scheduler"]
