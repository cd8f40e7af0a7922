from pydantic import BaseModel, HttpUrl, Field, computed_field, ConfigDict, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from wordlink_app.config import settings


def _lower(value):
    return value.strip().lower() if isinstance(value, str) else value


class LinkBase(BaseModel):
    destination_url: HttpUrl = Field(..., description="Where the keywords redirect to")
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    expires_at: Optional[datetime] = None


class LinkCreate(LinkBase):
    identifier: Optional[str] = Field(None, description="Claimed namespace, e.g. 'acme'")
    keywords: List[str] = Field(..., min_length=1, description="Ordered keywords, e.g. ['spring-sale']")
    owner_id: Optional[str] = Field(None, max_length=64)

    @field_validator("identifier", mode="before")
    @classmethod
    def normalize_identifier(cls, value):
        value = _lower(value)
        return value or None

    @field_validator("keywords", mode="before")
    @classmethod
    def normalize_keywords(cls, value):
        if isinstance(value, list):
            return [_lower(keyword) for keyword in value]
        return value


class LinkUpdate(BaseModel):
    """Partial update; unset fields are left alone."""
    destination_url: Optional[HttpUrl] = None
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None


class LinkResponse(BaseModel):
    """Serializes the SQLAlchemy Link model (from_attributes)."""
    id: int
    identifier: Optional[str] = None
    keywords: List[str]
    destination_url: str
    title: Optional[str] = None
    description: Optional[str] = None
    owner_id: Optional[str] = None
    is_active: bool
    expires_at: Optional[datetime] = None
    click_count: int
    unique_visitors: int
    last_clicked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def path(self) -> str:
        parts = [self.identifier] if self.identifier else []
        return "/".join(parts + self.keywords)

    @computed_field
    @property
    def short_url(self) -> str:
        return f"{settings.base_url}/{self.path}"

    model_config = ConfigDict(from_attributes=True)


class ResolvedLink(BaseModel):
    """What the redirect needs; also the cached representation of a link."""
    id: int
    destination_url: str
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class IdentifierCreate(BaseModel):
    name: str = Field(..., min_length=3, max_length=50)
    owner_id: str = Field(..., max_length=64)

    @field_validator("name", mode="before")
    @classmethod
    def normalize_name(cls, value):
        return _lower(value)


class IdentifierResponse(BaseModel):
    name: str
    owner_id: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Quota(BaseModel):
    """Limits supplied by the account/subscription system."""
    max_keywords: int = 5
    max_identifiers: int = 3


class IdentifierUsage(IdentifierResponse):
    links_count: int = 0
    total_clicks: int = 0


class IdentifierList(BaseModel):
    identifiers: List[IdentifierUsage]
    count: int
    max_allowed: int


class IdentifierAvailability(BaseModel):
    """reason is one of: reserved, taken, starts_a_link (None when available)"""
    name: str
    is_available: bool
    reason: Optional[str] = None
    owner_id: Optional[str] = None
    claimed_at: Optional[datetime] = None


class BulkLinkCreate(BaseModel):
    """Items are validated one by one, so a bad item fails alone."""
    links: List[Dict[str, Any]] = Field(..., min_length=1, max_length=100)


class BulkItemResult(BaseModel):
    index: int
    link: LinkResponse


class BulkItemError(BaseModel):
    index: int
    error: str
    data: Dict[str, Any] = Field(default_factory=dict)


class BulkLinkResult(BaseModel):
    total: int
    successful: int
    failed: int
    results: List[BulkItemResult] = Field(default_factory=list)
    errors: List[BulkItemError] = Field(default_factory=list)
