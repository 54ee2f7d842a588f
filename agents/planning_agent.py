"""
Itinerary pipeline (litellm, one request plus at most one corrective retry)

Each submitted trip goes through the same linear steps:

  1. Prompt building        → no LLM
  2. Itinerary generation   → 1 LLM call
  3. Sanitising + schema    → no LLM (fence strip, brace slice, parse, validate)
  4. Uniqueness check       → 0 or 1 extra LLM call (bounded by RetryPolicy)
  5. Event IDs              → no LLM
  6. Cost normalisation     → no LLM (the model's arithmetic is never trusted)
  7. Map points             → no LLM

The model is not a reliable JSON emitter, so every step after (2) is a
best-effort repair.  Anything that cannot be repaired raises one of the
errors in ``errors.py`` and bubbles up unmodified; anything that can be
degraded (missing costs, missing coordinates, duplicates after the retry)
is logged and absorbed.
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from errors import InvalidShapeError, JsonParseError, ModelOutputError, NoJsonFoundError
from schemas import Coordinates, Itinerary, MapPoint, coerce_cost
from TripRequest import TripRequest

try:
    from .llm_client import LLMClient
except ImportError:
    from llm_client import LLMClient  # type: ignore

logger = logging.getLogger(__name__)

MAX_RADIUS_KM = 50
DAY_START = "08:00"
DAY_END = "22:00"
MEAL_TYPES = ("breakfast", "lunch", "dinner")
COST_CATEGORIES = ("activities", "food", "transportation", "accommodation")


# ---------------------------------------------------------------------------
# Step 1: Prompt building
# ---------------------------------------------------------------------------

_ITINERARY_SYSTEM = """\
You are a travel planning assistant. You must respond ONLY with valid JSON, \
no explanatory text, no markdown fences. Your response must exactly follow \
the specified JSON format. All costs are PER PERSON in USD."""

_JSON_EXAMPLE = """\
{
  "days": [
    {
      "date": "YYYY-MM-DD",
      "activities": [
        {
          "time": "HH:MM",
          "name": "Specific Location Name",
          "description": "Brief description",
          "cost": 25,
          "coordinates": {"lat": 40.4167, "lng": -3.7033},
          "transport": {"method": "metro", "duration": "15 min", "cost": 2},
          "distance": 1.5
        }
      ],
      "meals": [
        {
          "type": "breakfast",
          "time": "HH:MM",
          "name": "Specific Restaurant Name",
          "description": "What to order there",
          "cost": 12,
          "coordinates": {"lat": 40.4170, "lng": -3.7040}
        }
      ],
      "accommodation_options": [
        {
          "name": "Hotel Name",
          "description": "Why it fits",
          "type": "hotel",
          "cost_per_night": 90,
          "distance_to_next_activity": "0.8 km"
        }
      ],
      "dailyTotal": 0
    }
  ],
  "perPersonTotal": 0,
  "groupTotal": 0,
  "costBreakdown": {"activities": 0, "food": 0, "transportation": 0, "accommodation": 0}
}"""


def build_prompts(request: TripRequest) -> Tuple[str, str]:
    """Return the (system, user) prompt pair for a trip request."""
    start, end = request.dates
    days = request.trip_days()
    people = request.num_people

    user_prompt = f"""Generate a travel itinerary with these requirements:
- Destination: {request.destination}
- Dates: {start.isoformat()} to {end.isoformat()} ({days} days, one entry per day)
- Total budget: ${request.budget:g} for {people} {"person" if people == 1 else "people"} \
(about ${request.budget_per_person():.0f} per person)
- Interests: {request.interests or "general sightseeing"}
- Additional notes: {request.notes or "None"}

You must respond with a JSON object exactly matching this structure:
{_JSON_EXAMPLE}

Rules:
1. Every cost is PER PERSON. Keep the per-person total within \
${request.budget_per_person():.0f}.
2. Never repeat an activity or a meal venue anywhere in the itinerary: \
every "name" must be unique across ALL days.
3. Spread activity types (museums, parks, food, history, nightlife...) \
evenly across the days instead of clustering one type on one day.
4. Every location must be within {MAX_RADIUS_KM} km of the centre of \
{request.destination}.
5. Schedule activities between {DAY_START} and {DAY_END} only.
6. Each day has at least one activity and exactly three meals: \
{", ".join(MEAL_TYPES)}.
7. Use real coordinates and exact names of actual places.
8. Format dates as YYYY-MM-DD and times as 24-hour HH:MM.
9. All numbers must be plain numbers without quotes or currency symbols.
10. Keep descriptions concise.
11. Respond only with the JSON, no additional text."""

    return _ITINERARY_SYSTEM, user_prompt


def build_avoid_prompt(user_prompt: str, used_names: List[str]) -> str:
    """Append an explicit exclusion list to the original user prompt."""
    avoid = "\n".join(f"- {name}" for name in used_names)
    return (
        f"{user_prompt}\n\n"
        "IMPORTANT: your previous answer repeated some activities or meals. "
        "Every activity and meal name must appear only once in the whole "
        "itinerary. Do NOT reuse any of these names, pick different places:\n"
        f"{avoid}"
    )


# ---------------------------------------------------------------------------
# Step 3: Sanitising + schema validation
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?")


def parse_json_object(text: str) -> Dict[str, Any]:
    """Extract and parse the outermost JSON object from an LLM reply.

    Three best-effort repairs in order: strip markdown fences, slice from
    the first ``{`` to the last ``}``, parse.
    """
    cleaned = _FENCE_RE.sub("", text or "").strip()
    first = cleaned.find("{")
    last = cleaned.rfind("}")
    if first == -1 or last == -1 or last < first:
        raise NoJsonFoundError(f"No JSON object in model reply: {cleaned[:80]!r}")
    try:
        parsed = json.loads(cleaned[first:last + 1])
    except json.JSONDecodeError as exc:
        raise JsonParseError(f"Model returned invalid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise InvalidShapeError("Model reply is not a JSON object")
    return parsed


def sanitize_response(raw: str) -> Dict[str, Any]:
    """Parse a raw itinerary reply; the result is guaranteed to carry a ``days`` list."""
    parsed = parse_json_object(raw)
    if not isinstance(parsed.get("days"), list):
        raise InvalidShapeError("Itinerary reply has no 'days' array")
    return parsed


def validate_itinerary(data: Dict[str, Any]) -> Dict[str, Any]:
    """Validate against the canonical schema and return the coerced dict."""
    try:
        model = Itinerary.model_validate(data)
    except ValidationError as exc:
        raise InvalidShapeError(
            f"Itinerary does not match schema ({exc.error_count()} errors)"
        ) from exc
    return model.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Step 4: Uniqueness check + bounded retry
# ---------------------------------------------------------------------------

def _iter_events(itinerary: Dict[str, Any]):
    """Yield (day_number, kind, index, event) in display order."""
    for day_number, day in enumerate(itinerary.get("days") or [], start=1):
        if not isinstance(day, dict):
            continue
        for kind, key in (("activity", "activities"), ("meal", "meals")):
            for index, event in enumerate(day.get(key) or []):
                if isinstance(event, dict):
                    yield day_number, kind, index, event


def _name_key(event: Dict[str, Any]) -> str:
    return str(event.get("name") or "").strip().lower()


def collect_event_names(itinerary: Dict[str, Any]) -> List[str]:
    """Every activity and meal name, in traversal order (the avoid list)."""
    names: List[str] = []
    for _, _, _, event in _iter_events(itinerary):
        name = str(event.get("name") or "").strip()
        if name:
            names.append(name)
    return names


def _named_keys(itinerary: Dict[str, Any]) -> List[str]:
    # Blank names are skipped
    return [key for key in (_name_key(e) for _, _, _, e in _iter_events(itinerary)) if key]


def find_duplicates(itinerary: Dict[str, Any]) -> List[str]:
    seen: set[str] = set()
    dupes: List[str] = []
    for key in _named_keys(itinerary):
        if key in seen and key not in dupes:
            dupes.append(key)
        seen.add(key)
    return dupes


def is_unique(itinerary: Dict[str, Any]) -> bool:
    """True if no activity/meal name repeats (case-insensitive, blank names ignored)."""
    keys = _named_keys(itinerary)
    return len(set(keys)) == len(keys)


def _avoid_used_names(prompt: str, previous: Dict[str, Any]) -> str:
    return build_avoid_prompt(prompt, collect_event_names(previous))


@dataclass
class RetryPolicy:
    """Re-prompt while *validator* rejects the result, at most *max_retries* times.

    Once the bound is used up the last result is accepted as-is; an
    unbounded loop against a paid API is the worse failure.
    """

    max_retries: int = 1
    temperature: float = 0.7
    retry_temperature: float = 0.3
    validator: Callable[[Dict[str, Any]], bool] = is_unique
    augment: Callable[[str, Dict[str, Any]], str] = _avoid_used_names

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            max_retries=int(os.getenv("LLM_MAX_RETRIES", "1")),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
            retry_temperature=float(os.getenv("LLM_RETRY_TEMPERATURE", "0.3")),
        )

    def run(
        self,
        generate: Callable[[str, float], Dict[str, Any]],
        prompt: str,
    ) -> Dict[str, Any]:
        result = generate(prompt, self.temperature)
        for attempt in range(1, self.max_retries + 1):
            if self.validator(result):
                return result
            logger.warning("Result rejected by %s, retry %d/%d",
                           getattr(self.validator, "__name__", "validator"),
                           attempt, self.max_retries)
            # Augment the original prompt, never the previous retry prompt
            try:
                result = generate(self.augment(prompt, result), self.retry_temperature)
            except ModelOutputError as exc:
                logger.warning("Retry reply unusable (%s), keeping previous result", exc)
                return result
        if not self.validator(result):
            logger.info("Retry budget exhausted, accepting result as-is")
        return result


# ---------------------------------------------------------------------------
# Step 5: Event IDs
# ---------------------------------------------------------------------------

def assign_event_ids(itinerary: Dict[str, Any]) -> Dict[str, Any]:
    """Give every activity and meal a stable id (in-place).

    Revisions match on this id rather than on the display name, which the
    model is free to change.
    """
    for day_number, kind, index, event in _iter_events(itinerary):
        event["id"] = f"day{day_number}_{kind}{index}"
    return itinerary


# ---------------------------------------------------------------------------
# Step 6: Cost normalisation
# ---------------------------------------------------------------------------

def _sum_costs(values) -> float:
    return sum((coerce_cost(v) for v in values), 0.0)


def day_cost_breakdown(day: Dict[str, Any]) -> Dict[str, float]:
    """Per-category costs of one day, missing or junk costs counted as 0."""
    activities = [a for a in day.get("activities") or [] if isinstance(a, dict)]
    meals = [m for m in day.get("meals") or [] if isinstance(m, dict)]
    options = day.get("accommodation_options") or []

    accommodation = 0.0
    if options and isinstance(options[0], dict):
        accommodation = coerce_cost(options[0].get("cost_per_night"))

    return {
        "activities": _sum_costs(a.get("cost") for a in activities),
        "food": _sum_costs(m.get("cost") for m in meals),
        "transportation": _sum_costs(
            (a.get("transport") or {}).get("cost")
            for a in activities if isinstance(a.get("transport") or {}, dict)
        ),
        "accommodation": accommodation,
    }


def compute_daily_total(day: Dict[str, Any]) -> float:
    return sum(day_cost_breakdown(day).values(), 0.0)


def normalize_costs(itinerary: Dict[str, Any], num_people: int = 1) -> Dict[str, Any]:
    """Recompute every total from the raw cost fields (in-place).

    Overwrites whatever totals the model supplied.  Running it twice gives
    the same numbers.
    """
    people = num_people if isinstance(num_people, int) and num_people >= 1 else 1
    breakdown = dict.fromkeys(COST_CATEGORIES, 0.0)
    per_person = 0.0

    for day in itinerary.get("days") or []:
        if not isinstance(day, dict):
            continue
        parts = day_cost_breakdown(day)
        day["dailyTotal"] = sum(parts.values(), 0.0)
        per_person += day["dailyTotal"]
        for category, amount in parts.items():
            breakdown[category] += amount

    itinerary["perPersonTotal"] = per_person
    itinerary["groupTotal"] = per_person * people
    itinerary["numPeople"] = people
    itinerary["costBreakdown"] = breakdown
    return itinerary


# ---------------------------------------------------------------------------
# Step 7: Map points
# ---------------------------------------------------------------------------

def _finite(value: Any) -> bool:
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value))


def extract_locations(itinerary: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten activities and meals with usable coordinates into map points.

    Order is day → activities → meals; the map draws its route through the
    points in this order.
    """
    points: List[Dict[str, Any]] = []
    for day_number, kind, _, event in _iter_events(itinerary):
        coords = event.get("coordinates")
        if not isinstance(coords, dict):
            continue
        lat, lng = coords.get("lat"), coords.get("lng")
        if not (_finite(lat) and _finite(lng)):
            logger.debug("Dropping %s %r from map: bad coordinates",
                         kind, event.get("name"))
            continue
        points.append(MapPoint(
            id=event.get("id"),
            name=str(event.get("name") or ""),
            coordinates=Coordinates(lat=lat, lng=lng),
            description=str(event.get("description") or ""),
            kind=kind,
            day=day_number,
        ).model_dump())
    return points


# ---------------------------------------------------------------------------
# Similar-activity hints
# ---------------------------------------------------------------------------

_SIMILAR_TYPES: Dict[str, Tuple[str, ...]] = {
    "temple": ("temple", "shrine", "religious"),
    "museum": ("museum", "gallery", "exhibition"),
    "park": ("park", "garden", "nature"),
    "beach": ("beach", "water", "coast"),
    "shopping": ("market", "mall", "shopping"),
    "adventure": ("trek", "hike", "adventure", "sport"),
    "historical": ("fort", "palace", "historical", "monument", "ruins"),
    "cultural": ("cultural", "traditional", "heritage", "art"),
}


def _matches(activity: Dict[str, Any], keywords: Tuple[str, ...]) -> bool:
    text = f"{activity.get('name') or ''} {activity.get('description') or ''}".lower()
    return any(k in text for k in keywords)


def find_similar_activities(
    activity: Dict[str, Any], itinerary: Dict[str, Any],
) -> Optional[Dict[str, Any]]:
    """Other activities in the same keyword category as *activity*, if any."""
    activity_type = next(
        (t for t, keywords in _SIMILAR_TYPES.items() if _matches(activity, keywords)),
        None,
    )
    if activity_type is None:
        return None

    similar = [
        a for _, kind, _, a in _iter_events(itinerary)
        if kind == "activity"
        and a.get("name") != activity.get("name")
        and _matches(a, _SIMILAR_TYPES[activity_type])
    ]
    return {"type": activity_type, "activities": similar} if similar else None


def annotate_similarity(itinerary: Dict[str, Any]) -> Dict[str, List[str]]:
    """Map activity id → names of similar activities elsewhere in the trip."""
    hints: Dict[str, List[str]] = {}
    for _, kind, _, activity in _iter_events(itinerary):
        if kind != "activity":
            continue
        info = find_similar_activities(activity, itinerary)
        if info:
            hints[activity.get("id") or activity.get("name", "")] = [
                a.get("name", "") for a in info["activities"]
            ]
    return hints


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

@dataclass
class TripPlanner:
    """Runs the pipeline for one trip request; holds no per-trip state."""

    client: Optional[LLMClient] = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy.from_env)

    def get_client(self) -> LLMClient:
        # Created lazily so importing this module never needs a credential
        if self.client is None:
            self.client = LLMClient()
        return self.client

    def _generate(self, system_prompt: str) -> Callable[[str, float], Dict[str, Any]]:
        def generate(user_prompt: str, temperature: float) -> Dict[str, Any]:
            raw = self.get_client().chat(
                [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=temperature,
            )
            return validate_itinerary(sanitize_response(raw))
        return generate

    def generate_itinerary(self, request: TripRequest) -> Dict[str, Any]:
        """Run the full pipeline. Returns {"itinerary": ..., "locations": [...]}."""
        logger.info("Generating %d-day itinerary for %s (%d people)",
                    request.trip_days(), request.destination, request.num_people)
        system_prompt, user_prompt = build_prompts(request)

        itinerary = self.retry_policy.run(self._generate(system_prompt), user_prompt)
        if not is_unique(itinerary):
            logger.warning("Accepted itinerary with duplicate events: %s",
                           ", ".join(find_duplicates(itinerary)))

        assign_event_ids(itinerary)
        normalize_costs(itinerary, request.num_people)
        locations = extract_locations(itinerary)

        logger.info("Itinerary ready: %d days, %d map points, $%.2f per person",
                    len(itinerary["days"]), len(locations), itinerary["perPersonTotal"])
        return {"itinerary": itinerary, "locations": locations}


# Singleton consumed by main.py via `from agents.planning_agent import planning_agent`
planning_agent = TripPlanner()
