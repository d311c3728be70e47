"""User-facing luggage operations backed by the coordinated, cached LLM."""

import hashlib
import json
import logging
from typing import Any, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from luggage_cache import prompts
from luggage_cache.cache.models import CacheCategory
from luggage_cache.coordinator import BatchItem, ComputeFn, Degraded, RequestCoordinator
from luggage_cache.errors import ComputeFailure
from luggage_cache.llm_utils import ImageInput, LLMClient
from luggage_cache.schemas import (
    AirlinePolicy,
    AirlinePolicyRequest,
    AlternativesRequest,
    ItemAlternatives,
    ItemIdentificationRequest,
    ItemInfo,
    PackingOptimizationRequest,
    PackingPlan,
    PhotoRecognitionResult,
    TravelSuggestionRequest,
    TravelSuggestions,
)

T = TypeVar("T", bound=BaseModel)

logger = logging.getLogger(__name__)


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.split()).casefold()
    if isinstance(value, list):
        return [_normalize(item) for item in value]
    if isinstance(value, dict):
        return {key: _normalize(item) for key, item in value.items()}
    return value


def make_cache_key(category: CacheCategory, request: BaseModel) -> str:
    """Fingerprint ``request`` as ``<category>:<sha256 of its normalized canonical JSON>``.

    Strings are whitespace-collapsed and case-folded, so "Phone Charger" and
    " phone  charger" share a key.
    """
    canonical = json.dumps(
        _normalize(request.model_dump(mode="json")),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return f"{category.value}:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"


def photo_cache_key(image: bytes) -> str:
    return f"{CacheCategory.PHOTO_RECOGNITION.value}:{hashlib.sha256(image).hexdigest()}"


class LuggageAssistant:
    """Turns typed luggage requests into cached LLM calls."""

    def __init__(self, coordinator: RequestCoordinator, llm: LLMClient):
        self.coordinator = coordinator
        self.llm = llm

    def _compute_fn(self, prompt: str, schema: Type[T], image: Optional[ImageInput] = None) -> ComputeFn:
        def compute() -> bytes:
            answer = self.llm.query_structured(prompt, prompts.SYSTEM_MESSAGE, schema, image=image)
            return answer.model_dump_json().encode("utf-8")

        return compute

    def _ask(
        self,
        key: str,
        category: CacheCategory,
        schema: Type[T],
        prompt: str,
        image: Optional[ImageInput] = None,
        timeout: Optional[float] = None,
    ) -> T:
        compute = self._compute_fn(prompt, schema, image)
        payload = self.coordinator.execute(key, category, compute, timeout=timeout)
        try:
            return schema.model_validate_json(payload)
        except ValidationError as exc:
            logger.warning("Cached response for %s failed validation: %s. Requesting a fresh call.", key, exc)
            self.coordinator.store.delete(key)
            return schema.model_validate_json(self.coordinator.execute(key, category, compute, timeout=timeout))

    # --- Operations ---

    def identify_item(self, request: ItemIdentificationRequest, timeout: Optional[float] = None) -> ItemInfo:
        category = CacheCategory.ITEM_IDENTIFICATION
        prompt = prompts.ITEM_IDENTIFICATION_PROMPT.format(
            name=request.name,
            model_line=f"Model: {request.model}" if request.model else "",
        )
        return self._ask(make_cache_key(category, request), category, ItemInfo, prompt, timeout=timeout)

    def identify_items_batch(self, names: List[str], timeout: Optional[float] = None) -> List[ItemInfo]:
        """Identify several items at once; failed identifications become placeholder items.

        Placeholders are returned as degraded results, so they are not cached
        unless the coordinator is configured to cache degraded results.
        """
        category = CacheCategory.ITEM_IDENTIFICATION
        batch = []
        for name in names:
            request = ItemIdentificationRequest(name=name)
            prompt = prompts.ITEM_IDENTIFICATION_PROMPT.format(name=request.name, model_line="")
            batch.append(
                BatchItem(
                    make_cache_key(category, request),
                    category,
                    self._placeholder_on_failure(name, self._compute_fn(prompt, ItemInfo)),
                )
            )

        identified: List[ItemInfo] = []
        for name, result in zip(names, self.coordinator.execute_batch(batch, timeout=timeout)):
            if not result.ok:
                logger.warning("Identification of %r failed: %s", name, result.error)
                identified.append(ItemInfo.placeholder(name))
                continue
            try:
                identified.append(ItemInfo.model_validate_json(result.value))
            except ValidationError as exc:
                logger.warning("Discarding invalid identification for %r: %s", name, exc)
                identified.append(ItemInfo.placeholder(name))
        return identified

    @staticmethod
    def _placeholder_on_failure(name: str, compute: ComputeFn) -> ComputeFn:
        def compute_or_placeholder() -> Any:
            try:
                return compute()
            except ComputeFailure as exc:
                logger.warning("Falling back to a placeholder for %r: %s", name, exc)
                return Degraded(ItemInfo.placeholder(name).model_dump_json().encode("utf-8"), reason=str(exc))

        return compute_or_placeholder

    def recognize_photo(
        self,
        image: bytes,
        mime_type: str = "image/jpeg",
        hint: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> PhotoRecognitionResult:
        if not image:
            raise ValueError("Image data is empty.")
        prompt = prompts.PHOTO_RECOGNITION_PROMPT.format(hint_line=f"Hint from the user: {hint}" if hint else "")
        return self._ask(
            photo_cache_key(image),
            CacheCategory.PHOTO_RECOGNITION,
            PhotoRecognitionResult,
            prompt,
            image=ImageInput(image, mime_type),
            timeout=timeout,
        )

    def travel_suggestions(self, request: TravelSuggestionRequest, timeout: Optional[float] = None) -> TravelSuggestions:
        category = CacheCategory.TRAVEL_SUGGESTIONS
        prompt = prompts.TRAVEL_SUGGESTIONS_PROMPT.format(
            destination=request.destination,
            duration_days=request.duration_days,
            season=request.season,
            activities=", ".join(request.activities) or "none specified",
        )
        return self._ask(make_cache_key(category, request), category, TravelSuggestions, prompt, timeout=timeout)

    def optimize_packing(self, request: PackingOptimizationRequest, timeout: Optional[float] = None) -> PackingPlan:
        category = CacheCategory.PACKING_OPTIMIZATION
        weight_line = f", weight limit {request.weight_limit_kg} kg" if request.weight_limit_kg else ""
        prompt = prompts.PACKING_OPTIMIZATION_PROMPT.format(
            luggage_name=request.luggage_name,
            capacity_liters=request.capacity_liters,
            weight_line=weight_line,
            items=prompts.format_item_list(request.items),
        )
        return self._ask(make_cache_key(category, request), category, PackingPlan, prompt, timeout=timeout)

    def suggest_alternatives(self, request: AlternativesRequest, timeout: Optional[float] = None) -> ItemAlternatives:
        category = CacheCategory.ALTERNATIVES
        prompt = prompts.ALTERNATIVES_PROMPT.format(
            max_suggestions=request.max_suggestions,
            item_name=request.item_name,
            reason_line=f"Reason: {request.reason}" if request.reason else "",
        )
        return self._ask(make_cache_key(category, request), category, ItemAlternatives, prompt, timeout=timeout)

    def airline_policy(self, request: AirlinePolicyRequest, timeout: Optional[float] = None) -> AirlinePolicy:
        category = CacheCategory.AIRLINE_POLICIES
        prompt = prompts.AIRLINE_POLICY_PROMPT.format(airline=request.airline, cabin_class=request.cabin_class)
        return self._ask(make_cache_key(category, request), category, AirlinePolicy, prompt, timeout=timeout)
