"""Pre-read verdict for chapter pages."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from readguard.abuse.api.deps import require_read_allowed
from readguard.abuse.api.schemas import ReadVerdictOut
from readguard.abuse.domain.user_scorer import BotDetectionResult

router = APIRouter(prefix="/api/abuse/v1/titles", tags=["abuse-reads"])


@router.post("/{title_id}/chapters/{chapter_id}/read", response_model=ReadVerdictOut)
async def check_read(result: BotDetectionResult | None = Depends(require_read_allowed)) -> ReadVerdictOut:
    if result is None:
        return ReadVerdictOut(allowed=True, is_bot=False, is_suspicious=False)
    return ReadVerdictOut(allowed=True, is_bot=result.is_bot, is_suspicious=result.is_suspicious)
