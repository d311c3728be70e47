from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

HOUR = 60 * 60
DAY = 24 * HOUR


class CacheCategory(str, Enum):
    """Logical partitions of the AI response cache."""

    ITEM_IDENTIFICATION = "item_identification"
    TRAVEL_SUGGESTIONS = "travel_suggestions"
    PACKING_OPTIMIZATION = "packing_optimization"
    PHOTO_RECOGNITION = "photo_recognition"
    ALTERNATIVES = "alternatives"
    AIRLINE_POLICIES = "airline_policies"

    @property
    def default_ttl(self) -> float:
        """Default time-to-live in seconds."""
        return _CATEGORY_METADATA[self]["ttl"]

    @property
    def display_name(self) -> str:
        return _CATEGORY_METADATA[self]["display_name"]

    @property
    def timeout_multiplier(self) -> float:
        """Scale applied to the coordinator's default wait timeout."""
        return _CATEGORY_METADATA[self]["timeout_multiplier"]

    @classmethod
    def parse(cls, value: "str | CacheCategory") -> "CacheCategory":
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        try:
            return cls(text)
        except ValueError as exc:
            allowed = ", ".join(member.value for member in cls)
            raise ValueError(f"Unknown cache category {value!r}. Expected one of: {allowed}.") from exc


_CATEGORY_METADATA = {
    CacheCategory.ITEM_IDENTIFICATION: {
        "ttl": 24 * HOUR,
        "display_name": "Item identification",
        "timeout_multiplier": 1.0,
    },
    CacheCategory.TRAVEL_SUGGESTIONS: {
        "ttl": 24 * HOUR,
        "display_name": "Travel suggestions",
        "timeout_multiplier": 1.5,
    },
    CacheCategory.PACKING_OPTIMIZATION: {
        "ttl": 12 * HOUR,
        "display_name": "Packing optimization",
        "timeout_multiplier": 1.5,
    },
    CacheCategory.PHOTO_RECOGNITION: {
        "ttl": 7 * DAY,
        "display_name": "Photo recognition",
        "timeout_multiplier": 2.0,
    },
    CacheCategory.ALTERNATIVES: {
        "ttl": 24 * HOUR,
        "display_name": "Alternatives",
        "timeout_multiplier": 1.0,
    },
    CacheCategory.AIRLINE_POLICIES: {
        "ttl": 7 * DAY,
        "display_name": "Airline policies",
        "timeout_multiplier": 0.8,
    },
}


# --- Stored entries ---


class CacheEntry(BaseModel):
    """A single cached response. The payload is opaque to the cache."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")

    key: str = Field(description="Deterministic fingerprint of the logical request.")
    category: CacheCategory
    payload: bytes = Field(description="Serialized response value.")
    created_at: float = Field(description="Insertion time, epoch seconds.")
    expires_at: float = Field(description="Entry is expired from this instant on, epoch seconds.")
    size_bytes: int = Field(ge=0, description="Serialized size counted toward the budget.")
    sequence: int = Field(default=0, description="Insertion order, breaks created_at ties on eviction.")

    @classmethod
    def create(
        cls,
        key: str,
        category: CacheCategory,
        payload: bytes,
        ttl: float,
        now: float,
        sequence: int = 0,
    ) -> "CacheEntry":
        return cls(
            key=key,
            category=category,
            payload=payload,
            created_at=now,
            expires_at=now + ttl,
            size_bytes=len(payload),
            sequence=sequence,
        )

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


# --- Derived statistics ---


def format_bytes(size: int) -> str:
    """Human readable size using decimal units, e.g. ``'1.5 MB'``."""
    if abs(size) < 1000:
        return f"{int(size)} bytes"
    value = float(size)
    for unit in ("KB", "MB"):
        value /= 1000
        if abs(value) < 1000:
            return f"{value:.1f} {unit}"
    return f"{value / 1000:.1f} GB"


class CacheStatistics(BaseModel):
    """Snapshot computed on demand from the live store. Never cached itself."""

    total_entries: int = 0
    total_size_bytes: int = 0
    max_size_bytes: int
    category_counts: Dict[str, int] = Field(default_factory=dict)
    category_sizes: Dict[str, int] = Field(default_factory=dict)
    writes: int = Field(default=0, description="Successful puts since the store was opened.")
    evictions: int = Field(default=0, description="Entries removed to respect the size budget.")
    expired_removed: int = Field(default=0, description="Expired entries removed by cleanup or eviction.")
    cleanup_runs: int = Field(default=0, description="Expiry sweeps, periodic or requested.")
    freed_bytes: int = Field(default=0, description="Payload bytes released by cleanup and eviction.")
    last_cleanup_at: Optional[float] = Field(default=None, description="Time of the last expiry sweep.")

    @computed_field
    @property
    def usage_percentage(self) -> float:
        if self.max_size_bytes <= 0:
            return 0.0
        return self.total_size_bytes / self.max_size_bytes * 100

    @computed_field
    @property
    def formatted_size(self) -> str:
        return format_bytes(self.total_size_bytes)

    @computed_field
    @property
    def formatted_max_size(self) -> str:
        return format_bytes(self.max_size_bytes)
