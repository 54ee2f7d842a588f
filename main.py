"""FastAPI Backend - itinerary generation and single-event revision"""
import logging
import os
import threading
import uuid
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, List, Optional

# Load .env before anything else
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from agents.FactCheckAgent import FactChecker
from agents.llm_client import _llm_name, require_credential
from agents.planning_agent import annotate_similarity, extract_locations, planning_agent
from agents.revision_agent import apply_event_update, revise_event
from errors import InvalidTripRequestError, MissingCredentialError, TripPlannerError
from TripRequest import TripRequest

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

fact_checker = FactChecker()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Refuse to start without a credential rather than fail on the first request
    require_credential()
    logger.info("Trip planner ready (llm=%s)", _llm_name())
    yield
    fact_checker.close()
    SESSIONS.clear()


# FastAPI app
app = FastAPI(
    title="Trip Planner API",
    description="LLM itinerary generation with cost normalisation and event revision",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# In-memory planning sessions: session_id -> {"request": TripRequest, "itinerary": dict}
SESSIONS: Dict[str, Dict[str, Any]] = {}
_sessions_lock = threading.Lock()


def generate_id():
    return str(uuid.uuid4())[:8]


# Pydantic models
class TripRequestIn(BaseModel):
    destination: str
    start_date: date
    end_date: date
    budget: float = Field(..., gt=0)
    num_people: int = Field(1, ge=1)
    interests: str = ""
    notes: str = ""
    session_id: Optional[str] = None

class ItineraryResponse(BaseModel):
    session_id: str
    itinerary: Dict[str, Any]
    locations: List[Dict[str, Any]]

class EventContext(BaseModel):
    type: str = "activity"
    currentDetails: Dict[str, Any]

class ReviseRequest(BaseModel):
    instruction: str = Field(..., min_length=1)
    eventContext: EventContext

class LocationCheckRequest(BaseModel):
    name: str
    center: Dict[str, float]

class PriceCheckRequest(BaseModel):
    name: str
    cost: Optional[float] = None


# Helper functions
def _http_error(exc: TripPlannerError) -> HTTPException:
    """Map a pipeline error onto the status code and message the UI shows."""
    if isinstance(exc, InvalidTripRequestError):
        status = 422
    elif isinstance(exc, MissingCredentialError):
        status = 503
    else:
        status = 502  # upstream LLM failed or answered with junk
    logger.error("Request failed: %s: %s", type(exc).__name__, exc)
    detail = str(exc) if isinstance(exc, InvalidTripRequestError) else exc.user_message
    return HTTPException(status_code=status, detail=detail)


def _get_session(session_id: str) -> Dict[str, Any]:
    with _sessions_lock:
        session = SESSIONS.get(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Planning session not found")
    return session


# Itinerary endpoints
@app.post("/itinerary", response_model=ItineraryResponse)
def create_itinerary(body: TripRequestIn):
    """Generate a fresh itinerary; replaces the session's previous one."""
    try:
        trip = TripRequest(
            destination=body.destination,
            dates=(body.start_date, body.end_date),
            budget=body.budget,
            interests=body.interests,
            num_people=body.num_people,
            notes=body.notes,
        )
        result = planning_agent.generate_itinerary(trip)
    except TripPlannerError as e:
        raise _http_error(e)

    session_id = body.session_id or generate_id()
    with _sessions_lock:
        SESSIONS[session_id] = {"request": trip, "itinerary": result["itinerary"]}

    return {"session_id": session_id, **result}


@app.get("/itinerary/{session_id}")
def get_itinerary(session_id: str):
    session = _get_session(session_id)
    itinerary = session["itinerary"]
    return {
        "session_id": session_id,
        "trip": session["request"].to_dict(),
        "itinerary": itinerary,
        "locations": extract_locations(itinerary),
    }


@app.get("/itinerary/{session_id}/similar")
def get_similar_activities(session_id: str):
    """Activities that look alike (same keyword category) across the trip."""
    session = _get_session(session_id)
    return {"similar": annotate_similarity(session["itinerary"])}


@app.post("/itinerary/{session_id}/events/revise")
def revise_itinerary_event(session_id: str, body: ReviseRequest):
    """Chat with the model about one activity or meal and apply its suggestion."""
    session = _get_session(session_id)
    itinerary = session["itinerary"]
    context = body.eventContext.model_dump()

    try:
        result = revise_event(
            body.instruction,
            context,
            itinerary,
            client=planning_agent.get_client(),
            destination=session["request"].destination,
        )
    except TripPlannerError as e:
        raise _http_error(e)

    applied = False
    if result["updatedEvent"]:
        with _sessions_lock:
            applied = apply_event_update(itinerary, context, result["updatedEvent"])

    return {
        "message": result["message"],
        "updatedEvent": result["updatedEvent"],
        "applied": applied,
        "itinerary": itinerary,
        "locations": extract_locations(itinerary),
    }


# Fact-check endpoints (best effort, never fail the request)
@app.post("/fact-check/location")
def check_location(body: LocationCheckRequest):
    if "lat" not in body.center or "lng" not in body.center:
        raise HTTPException(status_code=422, detail="center needs lat and lng")
    return fact_checker.validate_location(body.name, body.center)


@app.post("/fact-check/price")
def check_price(body: PriceCheckRequest):
    return fact_checker.validate_price({"name": body.name, "cost": body.cost})


# Health check
@app.get("/health")
def health_check():
    return {
        "status": "ok",
        "version": "1.0.0",
        "llm": _llm_name(),
        "llm_provider": os.getenv("LLM_PROVIDER", "groq"),
        "sessions": len(SESSIONS),
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
