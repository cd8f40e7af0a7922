from typing import Optional, Sequence

from sqlalchemy import JSON, BigInteger, Boolean, Column, Integer, String, Text
from sqlalchemy.sql import func

from wordlink_app.database.connection import Base
from wordlink_app.database.types import UTCDateTime


def make_path_key(identifier: Optional[str], keywords: Sequence[str]) -> str:
    """
    Composite lookup key for (identifier, keywords).

    "@acme:spring/sale" for identifier links, ":spring/sale" without one, so
    identifier=None keywords=[acme, sale] never collides with identifier=acme.
    """
    prefix = f"@{identifier}" if identifier else ""
    return f"{prefix}:{'/'.join(keywords)}"


class Link(Base):
    """
    A keyword link.

    Identity is (identifier, keywords); path_key carries it as one unique,
    indexed column so redirect lookups are a single index lookup.
    Counters are only ever changed with SQL-side increments by the click recorder.
    """
    __tablename__ = "links"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    identifier = Column(String(50), nullable=True, index=True)
    keywords = Column(JSON, nullable=False)
    path_key = Column(String(600), unique=True, nullable=False, index=True)
    destination_url = Column(Text, nullable=False)
    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    owner_id = Column(String(64), nullable=True, index=True)

    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(UTCDateTime(), nullable=True)

    click_count = Column(BigInteger, default=0, nullable=False)
    unique_visitors = Column(BigInteger, default=0, nullable=False)
    last_clicked_at = Column(UTCDateTime(), nullable=True)

    created_at = Column(UTCDateTime(), server_default=func.now())
    updated_at = Column(UTCDateTime(), onupdate=func.now())

    @property
    def path(self) -> str:
        parts = [self.identifier] if self.identifier else []
        return "/".join(parts + list(self.keywords))


class Identifier(Base):
    """Tenant namespace, claimed by exactly one owner."""
    __tablename__ = "identifiers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), unique=True, nullable=False, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    created_at = Column(UTCDateTime(), server_default=func.now())
