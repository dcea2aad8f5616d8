r"""backend\inventory_intel\api\v1\events.py"""

from __future__ import annotations

from fastapi import APIRouter

from . import dependencies
from ...models import schemas

router = APIRouter()


@router.get("/events", response_model=list[schemas.OutputEvent])
def drain_events() -> list[schemas.OutputEvent]:
    """Hand every pending output event to the caller and clear the outbox."""

    return dependencies.outbox.drain()
