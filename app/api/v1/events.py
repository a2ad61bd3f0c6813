"""Recent lifecycle and progress events, for monitors and debugging."""

from fastapi import APIRouter, HTTPException, Query
from typing import Optional

router = APIRouter()

# Set by main.py during lifespan
_services = None


def set_services(services):
    global _services
    _services = services


@router.get("/events")
async def list_events(
    name: Optional[str] = None,
    limit: int = Query(default=100, ge=0, le=1000),
):
    if _services is None:
        raise HTTPException(status_code=503, detail="Event bus not initialized")
    events = _services.events.history(event_name=name, limit=limit)
    return {"events": events, "count": len(events), "stats": _services.events.stats()}
