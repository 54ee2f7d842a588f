"""
Error taxonomy for the itinerary pipeline.

Fatal errors bubble unmodified to the HTTP layer, which turns
``user_message`` into the response detail.  Degraded-but-usable model
output (missing costs, missing coordinates, duplicates after retry) is
never raised, only logged.
"""


class TripPlannerError(Exception):
    """Base class for every error the planner raises on purpose."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str = "", *, status_code: int | None = None):
        super().__init__(message or self.user_message)
        self.status_code = status_code


class MissingCredentialError(TripPlannerError):
    user_message = "The LLM API key is not configured on the server."


class AuthError(TripPlannerError):
    user_message = "The LLM service rejected the request. Please check your API key."


class TransportError(TripPlannerError):
    user_message = "Could not reach the LLM service. Please try again."


class EmptyResponseError(TripPlannerError):
    user_message = "Failed to generate itinerary. Please try again."


class ModelOutputError(TripPlannerError):
    """The model answered, but with something we cannot use."""

    user_message = "Failed to generate itinerary. Please try again."


class NoJsonFoundError(ModelOutputError):
    pass


class JsonParseError(ModelOutputError):
    pass


class InvalidShapeError(ModelOutputError):
    pass


class InvalidTripRequestError(TripPlannerError):
    user_message = "The trip request is invalid."
