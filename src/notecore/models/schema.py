"""Data models for notecore."""

import datetime
import re
import uuid
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

# Hex color in #RRGGBB form
HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")

MAX_TITLE_LENGTH = 255
MAX_ICON_LENGTH = 32
MAX_DESCRIPTION_LENGTH = 500
SNIPPET_LENGTH = 160


def validate_body(value: Optional[str]) -> str:
    """Validate that a note body carries text.

    Raises:
        ValueError: If the body is missing or only whitespace.
    """
    if value is None or not value.strip():
        raise ValueError("Note body cannot be empty")
    return value


def validate_title(value: Optional[str]) -> Optional[str]:
    """Normalize an optional title; blank titles become None."""
    if value is None or not value.strip():
        return None
    if len(value) > MAX_TITLE_LENGTH:
        raise ValueError(f"Title cannot exceed {MAX_TITLE_LENGTH} characters")
    return value


def validate_tag_name(value: str, max_length: int = 50) -> str:
    """Validate and trim a tag name.

    Args:
        value: Raw tag name from the caller.
        max_length: Maximum allowed length after trimming.

    Returns:
        The trimmed name with inner whitespace collapsed.

    Raises:
        ValueError: If the name is empty or too long.
    """
    if value is None:
        raise ValueError("Tag name cannot be empty")
    name = " ".join(value.split())
    if not name:
        raise ValueError("Tag name cannot be empty")
    if len(name) > max_length:
        raise ValueError(f"Tag name cannot exceed {max_length} characters")
    return name


def validate_color(value: str) -> str:
    """Validate a #RRGGBB color and return it upper-cased."""
    if not value or not HEX_COLOR_PATTERN.match(value):
        raise ValueError("Color must be a hex value like #21409A")
    return value.upper()


def validate_icon(value: Optional[str]) -> Optional[str]:
    """Validate an optional emoji or icon identifier."""
    if value is None or not value.strip():
        return None
    if len(value) > MAX_ICON_LENGTH:
        raise ValueError(f"Icon cannot exceed {MAX_ICON_LENGTH} characters")
    return value.strip()


def validate_description(value: Optional[str]) -> Optional[str]:
    """Validate an optional tag description."""
    if value is None or not value.strip():
        return None
    if len(value) > MAX_DESCRIPTION_LENGTH:
        raise ValueError(
            f"Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters"
        )
    return value


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite hands back naive datetimes; every stored timestamp is UTC.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def to_db_time(dt_value: datetime.datetime) -> datetime.datetime:
    """Convert a datetime to the naive UTC form stored in the database."""
    if dt_value.tzinfo is None:
        return dt_value
    return dt_value.astimezone(timezone.utc).replace(tzinfo=None)


def generate_id() -> str:
    """Generate a random UUID string for notes and tags."""
    return str(uuid.uuid4())


class WeightClass(str, Enum):
    """Field weight classes of the derived search representation."""

    TITLE = "A"
    BODY = "B"


class SortOrder(str, Enum):
    """Result ordering for note searches."""

    RELEVANCE = "relevance"
    NEWEST = "newest"
    OLDEST = "oldest"


class NoteFilter(BaseModel):
    """Note metadata restrictions applied on top of query text and tags.

    Date bounds are exclusive; the confidence bound is inclusive. An empty
    language list places no restriction.
    """

    languages: Optional[List[str]] = Field(
        default=None, description="Detected language codes to keep (en, de, und, ...)"
    )
    min_language_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    created_after: Optional[datetime.datetime] = None
    created_before: Optional[datetime.datetime] = None
    updated_after: Optional[datetime.datetime] = None
    updated_before: Optional[datetime.datetime] = None

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("languages")
    @classmethod
    def _normalize_languages(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if not v:
            return None
        codes = [code.strip().lower() for code in v if code.strip()]
        return list(dict.fromkeys(codes)) or None

    @model_validator(mode="after")
    def _check_ranges(self) -> "NoteFilter":
        for lower, upper in (
            (self.created_after, self.created_before),
            (self.updated_after, self.updated_before),
        ):
            if lower is None or upper is None:
                continue
            if to_db_time(lower) >= to_db_time(upper):
                raise ValueError("Date range is empty: the lower bound must be earlier")
        return self

    @property
    def has_filters(self) -> bool:
        return any(
            value is not None
            for value in (
                self.languages,
                self.min_language_confidence,
                self.created_after,
                self.created_before,
                self.updated_after,
                self.updated_before,
            )
        )


class Note(BaseModel):
    """A note owned by exactly one owner."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the note")
    owner_id: str = Field(..., description="Owner the note belongs to")
    title: Optional[str] = Field(default=None, description="Optional title")
    body: str = Field(..., description="Plain-text body of the note")
    language_code: str = Field(default="und", description="Detected language code")
    language_confidence: float = Field(
        default=0.0, ge=0.0, le=1.0, description="Detection confidence (diagnostic)"
    )
    analyzer: str = Field(default="simple", description="Analyzer used for indexing")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last updated (UTC)"
    )
    deleted_at: Optional[datetime.datetime] = Field(
        default=None, description="Soft-delete marker (UTC)"
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("body")
    @classmethod
    def _validate_body(cls, v: str) -> str:
        return validate_body(v)

    @field_validator("title")
    @classmethod
    def _validate_title(cls, v: Optional[str]) -> Optional[str]:
        return validate_title(v)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def text(self) -> str:
        """Title and body joined the way language detection sees them."""
        if self.title:
            return f"{self.title}\n{self.body}"
        return self.body

    def summary(self, tag_ids: Optional[List[str]] = None) -> "NoteSummary":
        """Build the list-view summary of this note."""
        snippet = " ".join(self.body.split())
        if len(snippet) > SNIPPET_LENGTH:
            snippet = snippet[: SNIPPET_LENGTH - 3].rstrip() + "..."
        return NoteSummary(
            id=self.id,
            title=self.title,
            snippet=snippet,
            language_code=self.language_code,
            created_at=self.created_at,
            updated_at=self.updated_at,
            tag_ids=list(tag_ids or []),
        )


class NoteSummary(BaseModel):
    """Compact view of a note used in search result pages."""

    id: str
    title: Optional[str] = None
    snippet: str
    language_code: str
    created_at: datetime.datetime
    updated_at: datetime.datetime
    tag_ids: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class SearchHit(BaseModel):
    """A ranked search result."""

    note: NoteSummary
    rank: float = 0.0

    model_config = {"frozen": True}


class SearchPage(BaseModel):
    """One page of search results."""

    items: List[SearchHit] = Field(default_factory=list)
    next_cursor: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None

    @property
    def note_ids(self) -> List[str]:
        return [hit.note.id for hit in self.items]


class Tag(BaseModel):
    """A tag in an owner's catalog."""

    id: str = Field(default_factory=generate_id, description="Unique ID of the tag")
    owner_id: str = Field(..., description="Owner the tag belongs to")
    name: str = Field(..., description="Display name, unique per owner ignoring case")
    color: str = Field(default="#21409A", description="Hex color (#RRGGBB)")
    icon: Optional[str] = Field(default=None, description="Emoji or icon identifier")
    description: Optional[str] = Field(default=None, description="What the tag is for")
    usage_count: int = Field(default=0, ge=0, description="Number of tagged notes")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("color")
    @classmethod
    def _validate_color(cls, v: str) -> str:
        return validate_color(v)

    @property
    def is_used(self) -> bool:
        return self.usage_count > 0

    @property
    def display_name(self) -> str:
        return f"{self.icon} {self.name}" if self.icon else self.name

    def catalog_entry(self) -> Dict[str, Any]:
        """Return the fields the presentation layer shows in a tag catalog."""
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "icon": self.icon,
            "usage_count": self.usage_count,
        }

    def __str__(self) -> str:
        return self.name


class SuggestionReason(str, Enum):
    """Why the suggester proposed a tag."""

    ACTION = "action"
    URGENCY = "urgency"
    IDEATION = "ideation"
    TEMPORAL = "temporal"
    TIME_OF_DAY = "time_of_day"
    CATALOG_MATCH = "catalog_match"


class SuggestedTag(BaseModel):
    """A non-binding tag suggestion."""

    name: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: SuggestionReason
    tag_id: Optional[str] = Field(
        default=None, description="Existing catalog tag, if the name matches one"
    )
    matched_terms: List[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def is_new(self) -> bool:
        return self.tag_id is None


@dataclass
class IntegrityReport:
    """Result of an owner-scoped consistency check.

    Attributes:
        owner_id: The owner that was checked.
        usage_count_drift: tag_id -> (stored usage_count, actual associations).
        orphaned_associations: (note_id, tag_id) pairs whose note is deleted
            or missing.
        unindexed_note_ids: Live notes without any search representation.
        repaired: Whether the report describes a repair run.
    """

    owner_id: str
    usage_count_drift: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    orphaned_associations: List[Tuple[str, str]] = field(default_factory=list)
    unindexed_note_ids: List[str] = field(default_factory=list)
    repaired: bool = False

    @property
    def is_clean(self) -> bool:
        return not (
            self.usage_count_drift
            or self.orphaned_associations
            or self.unindexed_note_ids
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "usage_count_drift": {
                tag_id: {"stored": stored, "actual": actual}
                for tag_id, (stored, actual) in self.usage_count_drift.items()
            },
            "orphaned_associations": [
                {"note_id": n, "tag_id": t} for n, t in self.orphaned_associations
            ],
            "unindexed_note_ids": list(self.unindexed_note_ids),
            "repaired": self.repaired,
            "clean": self.is_clean,
        }
