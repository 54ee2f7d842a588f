from dataclasses import dataclass
from datetime import date

from dataclasses_json import dataclass_json

from errors import InvalidTripRequestError


@dataclass_json
@dataclass(frozen=True)
class TripRequest:
    destination: str
    dates: tuple[date, date]
    budget: float
    interests: str
    num_people: int = 1
    notes: str = ""

    def __post_init__(self):
        start, end = self.dates
        if not self.destination or not self.destination.strip():
            raise InvalidTripRequestError("destination is required")
        if end < start:
            raise InvalidTripRequestError(
                f"end date {end} is before start date {start}"
            )
        if self.budget <= 0:
            raise InvalidTripRequestError("budget must be positive")
        if self.num_people < 1:
            raise InvalidTripRequestError("num_people must be at least 1")

    def trip_days(self) -> int:
        """Number of calendar days covered, both ends included."""
        start, end = self.dates
        return (end - start).days + 1

    def budget_per_person(self) -> float:
        """Total budget divided by the party size."""
        return self.budget / self.num_people

    def budget_per_day(self) -> float:
        """Per-person budget spread evenly over the trip."""
        return self.budget_per_person() / self.trip_days()
