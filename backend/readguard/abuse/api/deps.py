"""FastAPI dependencies that put the abuse engine in front of chapter reads."""

from __future__ import annotations

import math
from typing import Optional

from fastapi import Depends, HTTPException, Path, status

from readguard.abuse.domain.container import get_verdict_service
from readguard.abuse.domain.user_scorer import BotDetectionResult
from readguard.infra.auth import AuthenticatedUser, get_optional_user


async def require_read_allowed(
    title_id: str = Path(..., min_length=1),
    chapter_id: str = Path(..., min_length=1),
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
) -> BotDetectionResult | None:
    """Score the read and raise 429 for readers over their limit or scored as bots.

    Anonymous reads return ``None``; the IP gate already covers them.
    """

    if user is None:
        return None
    service = get_verdict_service()
    decision = await service.check_user_rate_limit(user.id)
    if not decision.allowed:
        retry_after = max(1, math.ceil(decision.remaining_ms / 1000))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"code": "rate_limited", "reason": "Too many chapters requested", "retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
    result = await service.check_user_activity(user.id, chapter_id, title_id)
    if result.is_bot:
        retry_after = max(1, math.ceil(service.config.min_interval.total_seconds()))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"code": "reading_paused", "reason": "Automated reading suspected", "retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
    return result
