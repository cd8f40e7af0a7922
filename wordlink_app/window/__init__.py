"""
Visitor dedup window for unique-visitor accounting.

Implements the Strategy Pattern so the window can live in-process or in Redis.
"""

from .strategies import VisitorWindowStrategy, InMemoryVisitorWindow, RedisVisitorWindow
from .factory import VisitorWindowFactory, WindowBackend

__all__ = [
    "VisitorWindowStrategy",
    "InMemoryVisitorWindow",
    "RedisVisitorWindow",
    "VisitorWindowFactory",
    "WindowBackend",
]
