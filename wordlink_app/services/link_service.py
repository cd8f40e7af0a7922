from datetime import datetime, timezone
from typing import List, Optional, Sequence

import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wordlink_app.cache.strategies import CacheStrategy
from wordlink_app.config import settings
from wordlink_app.exceptions import (
    DuplicatePath,
    IdentifierNotOwned,
    InvalidLink,
    NotFound,
    QuotaExceeded,
)
from wordlink_app.models import Identifier, Link, make_path_key
from wordlink_app.schemas.link import (
    BulkItemError,
    BulkItemResult,
    BulkLinkResult,
    LinkCreate,
    LinkResponse,
    LinkUpdate,
    Quota,
    ResolvedLink,
)
from wordlink_app.services.path_parser import ParsedPath, PathParser, is_valid_segment

logger = structlog.get_logger(__name__)

# First path segments that belong to the application itself
RESERVED_SEGMENTS = frozenset({
    "admin", "api", "app", "auth", "dashboard", "login", "logout", "register",
    "settings", "profile", "account", "billing", "terms", "privacy", "help",
    "support", "docs", "documentation", "redoc", "health", "metrics",
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def is_live(link: ResolvedLink, now: Optional[datetime] = None) -> bool:
    expires_at = _as_utc(link.expires_at)
    return expires_at is None or expires_at > (now or _utcnow())


class LinkService:
    """
    Resolution store: keyword paths -> live destinations.

    Uses the Cache-Aside pattern for the redirect lookup:
    - cache hit: no database round trip
    - cache miss: one lookup on the unique path_key index, then populate

    The cached document carries expires_at, so a cached link that expires
    before its cache entry does is still rejected.
    """

    def __init__(self, db: Session, cache: Optional[CacheStrategy] = None,
                 max_keywords: Optional[int] = None):
        self.db = db
        self.cache = cache
        self.max_keywords = max_keywords or settings.max_keywords
        self.parser = PathParser(self.identifier_exists, max_keywords=self.max_keywords)

    @staticmethod
    def _cache_key(path_key: str) -> str:
        return f"link:{path_key}"

    def identifier_exists(self, name: str) -> bool:
        return self.db.execute(
            select(Identifier.id).where(Identifier.name == name)
        ).first() is not None

    # ----------------------------------------------------------- resolution

    async def resolve(self, identifier: Optional[str], keywords: Sequence[str]) -> ResolvedLink:
        """
        Exact match on (identifier, keywords) among active, unexpired links.

        Raises:
            NotFound: no such link, inactive, or expired
        """
        path_key = make_path_key(identifier, keywords)
        cache_key = self._cache_key(path_key)
        now = _utcnow()

        if self.cache:
            cached = await self.cache.get_json(cache_key)
            if cached is not None:
                try:
                    resolved = ResolvedLink.model_validate(cached)
                except ValidationError:
                    await self.cache.delete(cache_key)
                else:
                    if is_live(resolved, now):
                        return resolved
                    raise NotFound(path_key)

        link = self.db.execute(
            select(Link).where(Link.path_key == path_key, Link.is_active.is_(True))
        ).scalar_one_or_none()

        if link is None:
            raise NotFound(path_key)

        resolved = ResolvedLink.model_validate(link)
        if not is_live(resolved, now):
            raise NotFound(path_key)

        if self.cache:
            ttl = settings.cache_ttl
            if resolved.expires_at is not None:
                # Never cache past the link's own expiry
                remaining = int((_as_utc(resolved.expires_at) - now).total_seconds())
                ttl = max(1, min(ttl, remaining))
            await self.cache.set_json(cache_key, resolved.model_dump(mode="json"), ttl=ttl)

        return resolved

    async def resolve_path(self, raw_path: str) -> ResolvedLink:
        """Parse an inbound path and resolve it. Raises MalformedPath or NotFound."""
        parsed = self.parser.parse(raw_path)
        return await self.resolve(parsed.identifier, parsed.keywords)

    # ----------------------------------------------------------- management

    def _validate_keywords(self, keywords: List[str]) -> None:
        if not keywords:
            raise InvalidLink("At least one keyword is required")
        if len(keywords) > self.max_keywords:
            raise InvalidLink(f"At most {self.max_keywords} keywords are allowed")
        for keyword in keywords:
            if len(keyword) > settings.max_keyword_length:
                raise InvalidLink(f"Keyword too long: {keyword[:20]}...")
            if not is_valid_segment(keyword):
                raise InvalidLink(
                    f"Invalid keyword {keyword!r}: use lowercase letters, digits, '-' and '_'"
                )

    def _validate_namespace(self, data: LinkCreate) -> None:
        first_segment = data.identifier or data.keywords[0]
        if first_segment in RESERVED_SEGMENTS:
            raise InvalidLink(f"{first_segment!r} is a reserved word")

        if data.identifier:
            owner = self.db.execute(
                select(Identifier.owner_id).where(Identifier.name == data.identifier)
            ).scalar_one_or_none()
            if owner is None or owner != data.owner_id:
                raise IdentifierNotOwned(data.identifier)
        elif len(data.keywords) > 1 and self.identifier_exists(data.keywords[0]):
            # The parser would read the first keyword as that identifier
            raise InvalidLink(
                f"{data.keywords[0]!r} is a claimed identifier and cannot start a keyword path"
            )

    async def create(self, data: LinkCreate) -> Link:
        """
        Create a keyword link.

        Raises:
            InvalidLink: bad keyword, reserved word, or unreachable path
            IdentifierNotOwned: identifier missing or owned by someone else
            DuplicatePath: (identifier, keywords) already taken
        """
        if data.identifier and not is_valid_segment(data.identifier):
            raise InvalidLink(f"Invalid identifier {data.identifier!r}")
        self._validate_keywords(data.keywords)
        self._validate_namespace(data)

        path_key = make_path_key(data.identifier, data.keywords)
        exists = self.db.execute(
            select(Link.id).where(Link.path_key == path_key)
        ).first()
        if exists:
            raise DuplicatePath(ParsedPath(data.identifier, tuple(data.keywords)).path)

        link = Link(
            identifier=data.identifier,
            keywords=list(data.keywords),
            path_key=path_key,
            destination_url=str(data.destination_url),
            title=data.title,
            description=data.description,
            owner_id=data.owner_id,
            expires_at=data.expires_at,
            is_active=True,
            click_count=0,
            unique_visitors=0,
        )
        self.db.add(link)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent create of the same path
            self.db.rollback()
            raise DuplicatePath(ParsedPath(data.identifier, tuple(data.keywords)).path)
        self.db.refresh(link)

        # A previous NotFound is never cached, but an old deactivated entry might be
        if self.cache:
            await self.cache.delete(self._cache_key(path_key))

        logger.info("Link created", link_id=link.id, path=link.path, owner_id=link.owner_id)
        return link

    async def create_many(self, items: List[dict], quota: Optional[Quota] = None) -> BulkLinkResult:
        """
        Create links one by one; a failing item is reported and the rest go on.

        Every item gets its own commit, so earlier successes survive a later failure.
        """
        result = BulkLinkResult(total=len(items), successful=0, failed=0)
        for index, item in enumerate(items):
            try:
                data = LinkCreate.model_validate(item)
                if quota is not None and len(data.keywords) > quota.max_keywords:
                    raise QuotaExceeded(f"Your plan allows at most {quota.max_keywords} keywords per link")
                link = await self.create(data)
            except ValidationError as e:
                message = "; ".join(
                    f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in e.errors()
                )
                result.errors.append(BulkItemError(index=index, error=message, data=item))
            except (DuplicatePath, IdentifierNotOwned, InvalidLink, QuotaExceeded) as e:
                result.errors.append(BulkItemError(index=index, error=str(e), data=item))
            else:
                result.results.append(BulkItemResult(index=index, link=LinkResponse.model_validate(link)))

        result.successful = len(result.results)
        result.failed = len(result.errors)
        logger.info("Bulk link create", total=result.total, successful=result.successful, failed=result.failed)
        return result

    def get_link(self, link_id: int) -> Link:
        """Unfiltered lookup by internal id (inactive and expired links included)."""
        link = self.db.get(Link, link_id)
        if link is None:
            raise NotFound(f"Link {link_id}")
        return link

    def list_links(self, owner_id: Optional[str] = None, skip: int = 0, limit: int = 100) -> List[Link]:
        query = select(Link).order_by(Link.id.desc()).offset(skip).limit(limit)
        if owner_id is not None:
            query = query.where(Link.owner_id == owner_id)
        return list(self.db.execute(query).scalars())

    async def update_link(self, link_id: int, changes: LinkUpdate) -> Link:
        link = self.get_link(link_id)

        fields = changes.model_dump(exclude_unset=True)
        if "destination_url" in fields:
            if changes.destination_url is None:
                raise InvalidLink("destination_url cannot be removed")
            fields["destination_url"] = str(changes.destination_url)
        if "is_active" in fields and fields["is_active"] is None:
            raise InvalidLink("is_active cannot be null")

        for name, value in fields.items():
            setattr(link, name, value)
        self.db.commit()
        self.db.refresh(link)

        if self.cache:
            await self.cache.delete(self._cache_key(link.path_key))

        logger.info("Link updated", link_id=link.id, fields=sorted(fields))
        return link

    async def deactivate_link(self, link_id: int) -> Link:
        """Soft delete; the path stays reserved and the history stays reportable."""
        link = self.get_link(link_id)
        link.is_active = False
        self.db.commit()

        if self.cache:
            await self.cache.delete(self._cache_key(link.path_key))

        logger.info("Link deactivated", link_id=link.id)
        return link
