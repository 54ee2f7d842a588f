"""
Canonical itinerary schema.

The model has been asked for the same JSON shape in several slightly
different ways over time (with or without meals, accommodation, transport).
Every optional block is declared here once, so incoming model output is
validated explicitly instead of through ad hoc ``"key" in day`` checks.

Unknown keys are kept (``extra="allow"``) so nothing the model adds is
silently lost on the way back to the client.
"""
import logging
import math
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator

log = logging.getLogger(__name__)


def coerce_number(value: Any) -> Optional[float]:
    """Return *value* as a finite float, or None if it is not numeric."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().lstrip("$€£").replace(",", ""))
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def coerce_cost(value: Any) -> float:
    number = coerce_number(value)
    if number is None:
        if value is not None:
            log.debug("Non-numeric cost %r treated as 0", value)
        return 0.0
    return max(number, 0.0)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ValueError(f"expected text, got {type(value).__name__}")


def _list(value: Any) -> Any:
    return [] if value is None else value


Cost = Annotated[float, BeforeValidator(coerce_cost)]
Coord = Annotated[Optional[float], BeforeValidator(coerce_number)]
Text = Annotated[str, BeforeValidator(_text)]


class _Loose(BaseModel):
    model_config = ConfigDict(extra="allow")


class Coordinates(_Loose):
    lat: Coord = None
    lng: Coord = None

    @model_validator(mode="before")
    @classmethod
    def _accept_lon(cls, data: Any) -> Any:
        if isinstance(data, dict) and "lng" not in data and "lon" in data:
            data = {**data, "lng": data["lon"]}
            data.pop("lon")
        return data


class Transport(_Loose):
    method: Text = ""
    duration: Text = ""
    cost: Cost = 0.0


class Activity(_Loose):
    id: Optional[str] = None
    time: Text = ""
    name: Text = ""
    description: Text = ""
    cost: Cost = 0.0
    coordinates: Optional[Coordinates] = None
    transport: Optional[Transport] = None
    distance: Coord = None


class Meal(_Loose):
    id: Optional[str] = None
    type: Annotated[str, BeforeValidator(lambda v: _text(v).strip().lower())] = ""
    time: Text = ""
    name: Text = ""
    description: Text = ""
    cost: Cost = 0.0
    coordinates: Optional[Coordinates] = None


class AccommodationOption(_Loose):
    name: Text = ""
    description: Text = ""
    type: Text = ""
    cost_per_night: Cost = 0.0
    distance_to_next_activity: Text = ""


class Day(_Loose):
    date: Text = ""
    activities: Annotated[List[Activity], BeforeValidator(_list)] = Field(default_factory=list)
    meals: Annotated[List[Meal], BeforeValidator(_list)] = Field(default_factory=list)
    accommodation_options: Optional[List[AccommodationOption]] = None
    dailyTotal: Cost = 0.0


class CostBreakdown(_Loose):
    activities: Cost = 0.0
    food: Cost = 0.0
    transportation: Cost = 0.0
    accommodation: Cost = 0.0


class Itinerary(_Loose):
    days: List[Day]
    perPersonTotal: Cost = 0.0
    groupTotal: Cost = 0.0
    numPeople: Any = None
    costBreakdown: Optional[CostBreakdown] = None


class MapPoint(BaseModel):
    id: Optional[str] = None
    name: str
    coordinates: Coordinates
    description: str = ""
    kind: str
    day: int
