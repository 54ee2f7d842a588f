import copy
import json
import sys
import os
import pytest
from datetime import date

# Project root: needed for TripRequest, errors, schemas, main
_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
# agents/ subdir: imported directly so planning_agent, revision_agent, etc.
# can be imported by name in tests without going through the package.
_agents_dir = os.path.join(_root, "agents")
for _p in (_root, _agents_dir):
    if _p not in sys.path:
        sys.path.insert(0, _p)

os.environ.setdefault("LLM_API_KEY", "test-key")

from TripRequest import TripRequest


class FakeLLMClient:
    """Stands in for LLMClient: returns queued replies and records every call."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def chat(self, messages, temperature=0.7):
        self.calls.append({"messages": messages, "temperature": temperature})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply if isinstance(reply, str) else json.dumps(reply)


def make_day(day_date, prefix, *, activity_cost=20, transport_cost=5, meal_cost=10,
             hotel=None):
    day = {
        "date": day_date,
        "activities": [
            {
                "time": "09:00",
                "name": f"{prefix} Castle Visit",
                "description": "Hilltop castle",
                "cost": activity_cost,
                "coordinates": {"lat": 38.7139, "lng": -9.1334},
                "transport": {"method": "tram", "duration": "15 min", "cost": transport_cost},
            },
            {
                "time": "14:00",
                "name": f"{prefix} Riverside Stroll",
                "description": "Walk along the river",
                "cost": 0,
                "coordinates": {"lat": 38.7071, "lng": -9.1355},
            },
        ],
        "meals": [
            {"type": meal_type, "time": time, "name": f"{prefix} {meal_type.title()} Spot",
             "description": "Local food", "cost": meal_cost,
             "coordinates": {"lat": 38.71, "lng": -9.14}}
            for meal_type, time in (("breakfast", "08:00"), ("lunch", "13:00"),
                                    ("dinner", "20:00"))
        ],
    }
    if hotel is not None:
        day["accommodation_options"] = [
            {"name": f"{prefix} Hotel", "description": "Central", "type": "hotel",
             "cost_per_night": hotel, "distance_to_next_activity": "1 km"},
            {"name": f"{prefix} Hostel", "description": "Cheap", "type": "hostel",
             "cost_per_night": 30, "distance_to_next_activity": "2 km"},
        ]
    return day


@pytest.fixture
def trip():
    return TripRequest(
        destination="Lisbon",
        dates=(date(2025, 6, 1), date(2025, 6, 3)),
        budget=900,
        num_people=3,
        interests="food, history",
    )


@pytest.fixture
def lisbon_reply():
    """A well-formed 3-day model reply with unique names and bogus totals."""
    return {
        "days": [
            make_day("2025-06-01", "Alfama"),
            make_day("2025-06-02", "Belem", hotel=80),
            make_day("2025-06-03", "Baixa"),
        ],
        "perPersonTotal": 1,
        "groupTotal": 2,
    }


@pytest.fixture
def itinerary(lisbon_reply):
    return copy.deepcopy(lisbon_reply)


@pytest.fixture
def fake_client():
    return FakeLLMClient
