"""
Database models for the keyword link store.

Links and identifiers are transactional data; click events are the
append-only analytics log read by the aggregator.
"""

from .link import Link, Identifier, make_path_key
from .click_event import ClickEvent

__all__ = ["Link", "Identifier", "ClickEvent", "make_path_key"]
