from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.deps import require_admin
from app.models.user import User
from app.services import karma as karma_service

router = APIRouter()


class ConsumeSignalsRequest(BaseModel):
    signal_ids: list[str] = Field(..., min_length=1, max_length=1000)


@router.get("/signals")
async def karma_signals(
    user: User = Depends(require_admin),
    limit: int = Query(100, ge=1, le=1000),
):
    """Unconsumed karma signals, oldest first, for the reputation service."""
    signals = await karma_service.pending_signals(limit=limit)
    return {
        "items": [
            {
                "id": str(s.id),
                "user_id": s.user_id,
                "repository_id": s.repository_id,
                "emails_added": s.emails_added,
                "reason": s.reason,
                "created_at": s.created_at.isoformat(),
            }
            for s in signals
        ]
    }


@router.post("/signals/consume")
async def karma_signals_consume(
    body: ConsumeSignalsRequest,
    user: User = Depends(require_admin),
):
    consumed = await karma_service.mark_consumed(body.signal_ids)
    return {"consumed": consumed}
