"""
Path parsing for keyword links.

    /launch                 -> identifier=None, keywords=["launch"]
    /acme/spring-sale       -> identifier="acme", keywords=["spring-sale"]   (acme is claimed)
    /spring/sale            -> identifier=None, keywords=["spring", "sale"]  (spring is not)
"""

import re
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from wordlink_app.exceptions import MalformedPath

SEGMENT_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


@dataclass(frozen=True)
class ParsedPath:
    identifier: Optional[str]
    keywords: Tuple[str, ...]

    @property
    def path(self) -> str:
        parts = [self.identifier] if self.identifier else []
        return "/".join(parts + list(self.keywords))


def split_segments(raw_path: str) -> list:
    """
    Lowercase and split; empty segments from repeated slashes are dropped.

    The path arrives already percent-decoded by routing, so segments are not
    decoded or trimmed again: whitespace and a literal "%" fail validation.
    """
    return [segment.lower() for segment in raw_path.split("/") if segment]


def is_valid_segment(segment: str) -> bool:
    return bool(SEGMENT_PATTERN.match(segment))


class PathParser:
    """
    Splits an inbound path into (identifier, keywords).

    The first segment is treated as an identifier only when it is a claimed
    namespace and at least one keyword follows it.
    """

    def __init__(self, is_known_identifier: Callable[[str], bool], max_keywords: int = 5):
        self.is_known_identifier = is_known_identifier
        self.max_keywords = max_keywords

    def parse(self, raw_path: str) -> ParsedPath:
        segments = split_segments(raw_path or "")

        if not segments:
            raise MalformedPath("Empty path")

        for segment in segments:
            if not is_valid_segment(segment):
                raise MalformedPath(f"Invalid path segment: {segment!r}")

        # More segments than identifier + max keywords can never match
        if len(segments) > self.max_keywords + 1:
            raise MalformedPath(f"Too many segments ({len(segments)})")

        identifier = None
        keywords = segments
        if len(segments) > 1 and self.is_known_identifier(segments[0]):
            identifier, keywords = segments[0], segments[1:]

        if len(keywords) > self.max_keywords:
            raise MalformedPath(f"Too many keywords ({len(keywords)}), max {self.max_keywords}")

        return ParsedPath(identifier=identifier, keywords=tuple(keywords))
