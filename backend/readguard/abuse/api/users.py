"""Staff endpoints for reader bot status."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from readguard.abuse.api.schemas import UserBotStatsOut, UserRiskOut
from readguard.abuse.domain.container import get_verdict_service
from readguard.infra.auth import AuthenticatedUser, get_admin_user

router = APIRouter(prefix="/api/abuse/v1/users", tags=["abuse-users"])


@router.get("/suspicious", response_model=list[UserRiskOut])
async def list_suspicious_users(
    limit: int = Query(default=50, ge=1, le=500),
    _: AuthenticatedUser = Depends(get_admin_user),
) -> list[UserRiskOut]:
    records = await get_verdict_service().get_suspicious_users(limit)
    return [UserRiskOut.from_domain(record) for record in records]


@router.get("/stats", response_model=UserBotStatsOut)
async def user_bot_stats(_: AuthenticatedUser = Depends(get_admin_user)) -> UserBotStatsOut:
    return UserBotStatsOut.from_domain(await get_verdict_service().get_bot_stats())


@router.get("/{user_id}", response_model=UserRiskOut)
async def get_user_risk(user_id: str, _: AuthenticatedUser = Depends(get_admin_user)) -> UserRiskOut:
    record = await get_verdict_service().get_user_record(user_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user_not_tracked")
    return UserRiskOut.from_domain(record)


@router.post("/{user_id}/reset", status_code=status.HTTP_204_NO_CONTENT)
async def reset_user(user_id: str, _: AuthenticatedUser = Depends(get_admin_user)) -> None:
    await get_verdict_service().reset_user(user_id)
