"""
Canonical item model.

Every adapter turns its wire format into one of the FeedItem variants below.
Items are created by adapters and afterwards only touched by the aggregator,
which sets ``block_reason`` and eventually evicts them.
"""

from datetime import datetime, timezone
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stream_aggregation.models.enums import BlockReason, ContentType, SourceType


class ImageSize(BaseModel):
    """Pixel dimensions of an image rendition."""

    model_config = ConfigDict(frozen=True)

    width: int = Field(..., ge=0)
    height: int = Field(..., ge=0)

    def __str__(self) -> str:
        return f"{self.width}x{self.height}"


class FeedItem(BaseModel):
    """Source-agnostic representation of one piece of content.

    Use one of the variants (NewsFeedItem, StatusFeedItem, ImageFeedItem);
    the base class only carries the attribution and bookkeeping fields.
    """

    # Optional attributes inspected when deciding whether a duplicate adds information
    optional_fields: ClassVar[tuple[str, ...]] = ("author", "avatar_uri", "service_id")

    # Attributes scanned by the profanity and keyword filters
    text_attributes: ClassVar[tuple[str, ...]] = ("author",)

    uri: str = Field(..., min_length=1, description="Canonical link to the content")
    date: datetime = Field(..., description="Publish time (UTC)")
    author: Optional[str] = Field(None, description="Author display name")
    avatar_uri: Optional[str] = Field(None, description="Author avatar link")
    source_type: SourceType = Field(..., description="Service that produced the item")
    content_type: ContentType = Field(..., description="Kind of content")
    block_reason: BlockReason = Field(BlockReason.NONE, description="Why the item is hidden")
    service_id: Optional[str] = Field(None, description="Identifier assigned by the service")

    @field_validator("date")
    @classmethod
    def ensure_timezone(cls, v: datetime) -> datetime:
        """Treat naive datetimes as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def dedup_key(self) -> tuple[SourceType, str, str]:
        """Key used to detect duplicates within a source."""
        if self.service_id:
            return (self.source_type, "id", self.service_id)
        return (self.source_type, "uri", self.uri)

    @property
    def is_blocked(self) -> bool:
        return self.block_reason != BlockReason.NONE

    def text_fields(self) -> list[str]:
        """Return every non-empty textual field of the item."""
        values = []
        for name in self.text_attributes:
            value = getattr(self, name)
            if value:
                values.append(value)
        return values

    def missing_fields(self) -> set[str]:
        """Return the names of optional fields that have no value."""
        return {name for name in self.optional_fields if not getattr(self, name)}

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__}(source={self.source_type.value}, uri='{self.uri}', "
            f"blocked={self.block_reason.value})>"
        )


class NewsFeedItem(FeedItem):
    """An article from a syndication feed."""

    optional_fields: ClassVar[tuple[str, ...]] = FeedItem.optional_fields + (
        "title",
        "summary",
        "body",
    )
    text_attributes: ClassVar[tuple[str, ...]] = ("author", "title", "summary", "body")

    content_type: ContentType = ContentType.NEWS
    title: Optional[str] = None
    summary: Optional[str] = None
    body: Optional[str] = None


class StatusFeedItem(FeedItem):
    """A short status update."""

    optional_fields: ClassVar[tuple[str, ...]] = FeedItem.optional_fields + ("status",)
    text_attributes: ClassVar[tuple[str, ...]] = ("author", "status")

    content_type: ContentType = ContentType.STATUS
    status: Optional[str] = None


class ImageFeedItem(FeedItem):
    """A photo with its thumbnail and the renditions known for it."""

    optional_fields: ClassVar[tuple[str, ...]] = FeedItem.optional_fields + (
        "title",
        "caption",
        "thumbnail_uri",
        "thumbnail_size",
        "sizes",
    )
    text_attributes: ClassVar[tuple[str, ...]] = ("author", "title", "caption")

    content_type: ContentType = ContentType.IMAGE
    title: Optional[str] = None
    caption: Optional[str] = None
    thumbnail_uri: Optional[str] = None
    thumbnail_size: Optional[ImageSize] = None
    sizes: dict[ImageSize, str] = Field(default_factory=dict)

    def largest_size(self) -> Optional[ImageSize]:
        """Return the rendition with the most pixels, if any are known."""
        if not self.sizes:
            return None
        return max(self.sizes, key=lambda size: size.width * size.height)
