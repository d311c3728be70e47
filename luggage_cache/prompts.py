"""Prompt templates for the luggage assistant. Every answer is requested as JSON."""

from typing import List

SYSTEM_MESSAGE = (
    "You are a meticulous travel packing assistant. Answer with a single JSON object that "
    "matches the requested schema. Use metric units. Never add commentary outside the JSON."
)

ITEM_IDENTIFICATION_PROMPT = """
Identify the following travel item and estimate its physical properties.

Item: {name}
{model_line}
Return the normalized item name, one category (clothing, electronics, toiletries,
documents, medicine, accessories, shoes, books, food, sports, beauty, other),
the typical weight in grams, the typical volume in cubic centimetres and your
confidence between 0.0 and 1.0.
"""

PHOTO_RECOGNITION_PROMPT = """
List every travel item visible in the attached photo with its category,
estimated weight in grams, estimated volume in cubic centimetres and confidence.
{hint_line}
"""

TRAVEL_SUGGESTIONS_PROMPT = """
Suggest what to pack for this trip.

Destination: {destination}
Duration: {duration_days} days
Season: {season}
Activities: {activities}

For each suggested item give its category, importance (essential, important,
recommended or optional), quantity and a short reason. Add practical tips and
warnings for the destination.
"""

PACKING_OPTIMIZATION_PROMPT = """
Plan how to pack the following items into "{luggage_name}"
(capacity {capacity_liters} L{weight_line}).

Items:
{items}

For every item give its position (bottom, middle, top, side or corner), a packing
priority from 1 to 10 and the reason. Estimate the total weight in kilograms and the
space efficiency between 0.0 and 1.0. Report warnings for overweight, fragile,
liquid or battery items.
"""

ALTERNATIVES_PROMPT = """
Suggest up to {max_suggestions} lighter or more compact alternatives to "{item_name}".
{reason_line}
For each alternative give its name, estimated weight in grams, its advantages and why
it is a good replacement.
"""

AIRLINE_POLICY_PROMPT = """
Summarize the current baggage policy of {airline} for {cabin_class} class.

Give checked and carry-on allowances (weight limit in kg, size limit in cm, number of
pieces), notable restrictions (batteries, liquids, sharp objects) and practical tips.
"""


def format_item_list(items: List[str]) -> str:
    return "\n".join(f"{index}. {name}" for index, name in enumerate(items, start=1))
