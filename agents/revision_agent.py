"""
Single-event revision (1 LLM call per chat message).

The user picks one activity or meal and describes a change in plain
language.  The model answers with a short conversational reply and,
optionally, a replacement event.  Applying the replacement patches the
itinerary in place and re-runs the cost normalisation so every total stays
consistent.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from schemas import Activity, Meal

try:
    from .llm_client import LLMClient
    from .planning_agent import collect_event_names, normalize_costs, parse_json_object
except ImportError:
    from llm_client import LLMClient  # type: ignore
    from planning_agent import collect_event_names, normalize_costs, parse_json_object  # type: ignore

logger = logging.getLogger(__name__)

_REVISION_TEMPERATURE = 0.5

_REVISION_SYSTEM = """\
You are a travel planning assistant helping a traveller adjust ONE event of \
an existing itinerary. Respond ONLY with a JSON object, no prose outside it:
{
  "message": "1-3 friendly sentences describing what you changed, or a question if the request is unclear",
  "updatedEvent": { <the full replacement event with the same fields as the current one> } or null
}
Return "updatedEvent": null when no change is needed or the request is unclear. \
Keep costs PER PERSON as plain numbers, times as 24-hour HH:MM, real places \
with real coordinates, and never reuse the name of another event in the trip."""

_KIND_KEYS = {"activity": "activities", "meal": "meals"}


def _event_kind(event_context: Dict[str, Any]) -> str:
    kind = str(event_context.get("type") or "activity").lower()
    return kind if kind in _KIND_KEYS else "activity"


def build_revision_prompts(
    instruction: str,
    event_context: Dict[str, Any],
    current_itinerary: Optional[Dict[str, Any]] = None,
    destination: str = "",
) -> Tuple[str, str]:
    kind = _event_kind(event_context)
    details = event_context.get("currentDetails") or {}
    name = details.get("name", "")

    other_names = [
        n for n in collect_event_names(current_itinerary or {})
        if n.strip().lower() != str(name).strip().lower()
    ]
    located = _locate_event(current_itinerary or {}, kind, details.get("id"), name)
    day_date = located[0].get("date", "") if located else ""

    trip_line = f"Trip destination: {destination}\n" if destination else ""
    date_line = f"Scheduled on: {day_date}\n" if day_date else ""
    others = ", ".join(other_names) if other_names else "none"

    user_prompt = f"""{trip_line}{date_line}The traveller wants to modify this {kind}:
{json.dumps(details, indent=2, default=str)}

Other events already in the itinerary (do not reuse these names): {others}

THE TRAVELLER SAYS:
\"{instruction}\"

Return ONLY the JSON object."""
    return _REVISION_SYSTEM, user_prompt


def parse_revision(raw: str, kind: str = "activity") -> Dict[str, Any]:
    """Turn a raw reply into {"message": str, "updatedEvent": dict | None}."""
    parsed = parse_json_object(raw)
    message = parsed.get("message") or parsed.get("reply") or "Here is what I found."

    updated = parsed.get("updatedEvent")
    if updated is not None and not isinstance(updated, dict):
        logger.warning("Ignoring non-object updatedEvent: %r", updated)
        updated = None
    if updated:
        schema = Meal if kind == "meal" else Activity
        try:
            updated = schema.model_validate(updated).model_dump(
                exclude_unset=True, exclude_none=True)
        except ValidationError as exc:
            logger.warning("Ignoring invalid updatedEvent (%d errors)", exc.error_count())
            updated = None

    return {"message": str(message), "updatedEvent": updated or None}


def _locate_event(
    itinerary: Dict[str, Any], kind: str, event_id: Optional[str], name: Any,
) -> Optional[Tuple[Dict[str, Any], str, int]]:
    """Find (day, list_key, index) of the event; id first, exact name as fallback."""
    key = _KIND_KEYS[kind]
    days = [d for d in itinerary.get("days") or [] if isinstance(d, dict)]
    for match_field, wanted in (("id", event_id), ("name", name)):
        if not wanted:
            continue
        for day in days:
            for index, event in enumerate(day.get(key) or []):
                if isinstance(event, dict) and event.get(match_field) == wanted:
                    return day, key, index
        if match_field == "id":
            # An id that no longer resolves must not fall through to a name match
            return None
    return None


def apply_event_update(
    itinerary: Dict[str, Any],
    event_context: Dict[str, Any],
    updated_event: Dict[str, Any],
) -> bool:
    """Replace the selected event in place and recompute all totals.

    Returns False (and changes nothing) when the owning day cannot be found.
    """
    kind = _event_kind(event_context)
    details = event_context.get("currentDetails") or {}
    located = _locate_event(itinerary, kind, details.get("id"), details.get("name"))
    if located is None:
        logger.warning("Edit dropped: %s %r (id=%s) not found in itinerary",
                       kind, details.get("name"), details.get("id"))
        return False

    day, key, index = located
    original = day[key][index]
    day[key][index] = {**original, **updated_event, "id": original.get("id")}

    normalize_costs(itinerary, itinerary.get("numPeople", 1))
    logger.info("Updated %s %s: dailyTotal now %.2f",
                kind, original.get("id"), day["dailyTotal"])
    return True


def revise_event(
    instruction: str,
    event_context: Dict[str, Any],
    current_itinerary: Dict[str, Any],
    client: Optional[LLMClient] = None,
    destination: str = "",
) -> Dict[str, Any]:
    """Ask the model to revise one event.

    Returns {"message": str, "updatedEvent": dict | None}.  The itinerary
    itself is left untouched; pass the result to ``apply_event_update``.
    """
    kind = _event_kind(event_context)
    system_prompt, user_prompt = build_revision_prompts(
        instruction, event_context, current_itinerary, destination,
    )
    raw = (client or LLMClient()).chat(
        [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        temperature=_REVISION_TEMPERATURE,
    )
    return parse_revision(raw, kind)
