from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class ItemCategory(str, Enum):
    CLOTHING = "clothing"
    ELECTRONICS = "electronics"
    TOILETRIES = "toiletries"
    DOCUMENTS = "documents"
    MEDICINE = "medicine"
    ACCESSORIES = "accessories"
    SHOES = "shoes"
    BOOKS = "books"
    FOOD = "food"
    SPORTS = "sports"
    BEAUTY = "beauty"
    OTHER = "other"


# --- Requests (hashed into cache keys) ---


class ItemIdentificationRequest(BaseModel):
    name: str = Field(description="Item name as typed by the user.")
    model: Optional[str] = Field(default=None, description="Optional brand or model designation.")


class TravelSuggestionRequest(BaseModel):
    destination: str
    duration_days: int = Field(ge=1)
    season: str
    activities: List[str] = Field(default_factory=list)


class PackingOptimizationRequest(BaseModel):
    luggage_name: str
    capacity_liters: float = Field(gt=0)
    weight_limit_kg: Optional[float] = Field(default=None, gt=0)
    items: List[str] = Field(default_factory=list, description="Names of the items to pack.")


class AlternativesRequest(BaseModel):
    item_name: str
    reason: Optional[str] = Field(default=None, description="Why the user wants a replacement (weight, size, ...).")
    max_suggestions: int = Field(default=3, ge=1, le=10)


class AirlinePolicyRequest(BaseModel):
    airline: str
    cabin_class: str = "economy"


# --- Structured LLM responses ---


class ItemInfo(BaseModel):
    """Identification result for a single item."""

    name: str = Field(description="Normalized item name.")
    category: ItemCategory = Field(default=ItemCategory.OTHER)
    weight_grams: float = Field(default=100.0, ge=0, description="Estimated weight in grams.")
    volume_cm3: float = Field(default=100.0, ge=0, description="Estimated volume in cubic centimetres.")
    confidence: float = Field(default=0.8, ge=0.0, le=1.0, description="Identification confidence from 0.0 to 1.0.")
    source: str = Field(default="ai", description="'ai' for model answers, 'default' for placeholders.")

    @classmethod
    def placeholder(cls, name: str) -> "ItemInfo":
        """Neutral stand-in used when identification fails."""
        return cls(name=name, confidence=0.5, source="default")


class PhotoRecognitionResult(BaseModel):
    items: List[ItemInfo] = Field(default_factory=list, description="Items visible in the photo.")


class SuggestedItem(BaseModel):
    name: str
    category: ItemCategory = Field(default=ItemCategory.OTHER)
    importance: str = Field(default="recommended", description="essential, important, recommended or optional")
    quantity: int = Field(default=1, ge=1)
    reason: str = Field(default="")


class TravelSuggestions(BaseModel):
    destination: str
    suggested_items: List[SuggestedItem] = Field(default_factory=list)
    tips: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class PackingStep(BaseModel):
    item_name: str
    position: str = Field(default="middle", description="bottom, middle, top, side or corner")
    priority: int = Field(default=5, ge=1, le=10)
    reason: str = Field(default="")


class PackingPlan(BaseModel):
    steps: List[PackingStep] = Field(default_factory=list)
    total_weight_kg: float = Field(default=0.0, ge=0)
    efficiency: float = Field(default=0.0, ge=0.0, le=1.0, description="Space utilization from 0.0 to 1.0.")
    warnings: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class AlternativeItem(BaseModel):
    name: str
    weight_grams: Optional[float] = Field(default=None, ge=0)
    advantages: List[str] = Field(default_factory=list)
    reason: str = Field(default="")


class ItemAlternatives(BaseModel):
    original_item: str
    alternatives: List[AlternativeItem] = Field(default_factory=list)


class SizeLimit(BaseModel):
    length_cm: float = Field(ge=0)
    width_cm: float = Field(ge=0)
    height_cm: float = Field(ge=0)


class BaggageAllowance(BaseModel):
    weight_limit_kg: float = Field(ge=0)
    size_limit: Optional[SizeLimit] = None
    pieces: int = Field(default=1, ge=0)


class AirlinePolicy(BaseModel):
    airline: str
    checked_baggage: BaggageAllowance
    carry_on: BaggageAllowance
    restrictions: List[str] = Field(default_factory=list)
    tips: List[str] = Field(default_factory=list)
