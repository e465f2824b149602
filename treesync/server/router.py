"""FastAPI routes for the authoritative event log."""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from treesync.models import BatchResponse, BatchSubmission, EventEnvelope
from treesync.server.store import DuplicateEventError, EventStore

router = APIRouter(prefix="/api/trees", tags=["events"])


def get_event_store() -> EventStore:
    """Dependency placeholder, replaced at app startup."""
    raise RuntimeError("EventStore not initialized")


@router.post("/{tree_id}/events")
async def submit_events(
    tree_id: str,
    batch: BatchSubmission,
    store: EventStore = Depends(get_event_store),
) -> BatchResponse:
    try:
        return await store.submit(tree_id, batch)
    except DuplicateEventError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/{tree_id}/events")
async def list_events(
    tree_id: str,
    since: int = Query(default=0, ge=0),
    store: EventStore = Depends(get_event_store),
) -> list[EventEnvelope]:
    return await store.get_events(tree_id, since=since)
