from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wordlink_app.exceptions import (
    IdentifierInUse,
    IdentifierNotOwned,
    IdentifierTaken,
    InvalidLink,
    NotFound,
    QuotaExceeded,
)
from wordlink_app.models import Identifier, Link
from wordlink_app.schemas.link import IdentifierAvailability, IdentifierCreate, Quota
from wordlink_app.services.link_service import RESERVED_SEGMENTS
from wordlink_app.services.path_parser import is_valid_segment

logger = structlog.get_logger(__name__)


class IdentifierService:
    """Claims, looks up and releases identifier namespaces."""

    def __init__(self, db: Session):
        self.db = db

    def count_for_owner(self, owner_id: str) -> int:
        return self.db.execute(
            select(func.count(Identifier.id)).where(Identifier.owner_id == owner_id)
        ).scalar_one()

    @staticmethod
    def _validate_name(name: str) -> None:
        if not is_valid_segment(name):
            raise InvalidLink(f"Invalid identifier {name!r}")

    def _starts_a_link(self, name: str) -> bool:
        """True when an identifier-less multi-keyword link begins with name."""
        pattern = name.replace("_", "\\_")
        return self.db.execute(
            select(Link.id).where(
                Link.identifier.is_(None),
                Link.path_key.like(f":{pattern}/%", escape="\\"),
            )
        ).first() is not None

    def check(self, name: str) -> IdentifierAvailability:
        """
        Whether name could be claimed right now.

        Raises:
            InvalidLink: name is not a valid path segment
        """
        name = name.strip().lower()
        self._validate_name(name)

        if name in RESERVED_SEGMENTS:
            return IdentifierAvailability(name=name, is_available=False, reason="reserved")

        claimed = self.db.execute(
            select(Identifier).where(Identifier.name == name)
        ).scalar_one_or_none()
        if claimed is not None:
            return IdentifierAvailability(name=name, is_available=False, reason="taken",
                                          owner_id=claimed.owner_id, claimed_at=claimed.created_at)

        if self._starts_a_link(name):
            return IdentifierAvailability(name=name, is_available=False, reason="starts_a_link")
        return IdentifierAvailability(name=name, is_available=True)

    def claim(self, data: IdentifierCreate, quota: Optional[Quota] = None) -> Identifier:
        """
        Claim a namespace for an owner.

        A name that already starts an identifier-less multi-keyword link is
        refused: claiming it would make that link unreachable.
        """
        name = data.name
        self._validate_name(name)
        if name in RESERVED_SEGMENTS:
            raise InvalidLink(f"{name!r} is a reserved word")

        if quota is not None and self.count_for_owner(data.owner_id) >= quota.max_identifiers:
            raise QuotaExceeded(f"Identifier limit reached ({quota.max_identifiers})")

        if self.db.execute(select(Identifier.id).where(Identifier.name == name)).first():
            raise IdentifierTaken(name)
        if self._starts_a_link(name):
            raise IdentifierTaken(name)

        identifier = Identifier(name=name, owner_id=data.owner_id)
        self.db.add(identifier)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise IdentifierTaken(name)
        self.db.refresh(identifier)

        logger.info("Identifier claimed", identifier=name, owner_id=data.owner_id)
        return identifier

    def get(self, name: str) -> Identifier:
        identifier = self.db.execute(
            select(Identifier).where(Identifier.name == name.lower())
        ).scalar_one_or_none()
        if identifier is None:
            raise NotFound(f"Identifier {name}")
        return identifier

    def list_for_owner(self, owner_id: str) -> List[Identifier]:
        return list(self.db.execute(
            select(Identifier).where(Identifier.owner_id == owner_id).order_by(Identifier.name)
        ).scalars())

    def usage_for_owner(self, owner_id: str) -> List[Tuple[Identifier, int, int]]:
        """(identifier, links under it, their lifetime clicks) for each of an owner's identifiers."""
        identifiers = self.list_for_owner(owner_id)
        if not identifiers:
            return []

        usage: Dict[str, Tuple[int, int]] = {
            name: (links, clicks or 0)
            for name, links, clicks in self.db.execute(
                select(Link.identifier, func.count(Link.id), func.sum(Link.click_count))
                .where(
                    Link.owner_id == owner_id,
                    Link.identifier.in_([identifier.name for identifier in identifiers]),
                )
                .group_by(Link.identifier)
            )
        }
        return [(identifier,) + usage.get(identifier.name, (0, 0)) for identifier in identifiers]

    def release(self, name: str, owner_id: str) -> None:
        """
        Give a namespace back.

        Refused while any active link lives under it. Deactivated links keep
        their paths, so a later claimant cannot recreate those exact paths.

        Raises:
            NotFound: no such identifier
            IdentifierNotOwned: claimed by someone else
            IdentifierInUse: active links still use it
        """
        identifier = self.get(name)
        if identifier.owner_id != owner_id:
            raise IdentifierNotOwned(identifier.name)

        active = self.db.execute(
            select(func.count(Link.id)).where(
                Link.identifier == identifier.name,
                Link.is_active.is_(True),
            )
        ).scalar_one()
        if active:
            raise IdentifierInUse(f"{identifier.name!r} still has {active} active link(s)")

        self.db.delete(identifier)
        self.db.commit()
        logger.info("Identifier released", identifier=identifier.name, owner_id=owner_id)
