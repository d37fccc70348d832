"""Staff endpoints for network address risk and blocks."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from readguard.abuse.api.schemas import BlockIpIn, IpRiskOut, IpStatsOut, WhitelistIn
from readguard.abuse.domain.container import get_verdict_service
from readguard.infra.auth import AuthenticatedUser, get_admin_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/abuse/v1/ips", tags=["abuse-ips"])


@router.get("/blocked", response_model=list[IpRiskOut])
async def list_blocked_ips(
    limit: int = Query(default=100, ge=1, le=1000),
    _: AuthenticatedUser = Depends(get_admin_user),
) -> list[IpRiskOut]:
    records = await get_verdict_service().get_blocked_ips(limit)
    return [IpRiskOut.from_domain(record, include_logs=False) for record in records]


@router.get("/suspicious", response_model=list[IpRiskOut])
async def list_suspicious_ips(
    limit: int = Query(default=100, ge=1, le=1000),
    _: AuthenticatedUser = Depends(get_admin_user),
) -> list[IpRiskOut]:
    records = await get_verdict_service().get_suspicious_ips(limit)
    return [IpRiskOut.from_domain(record, include_logs=False) for record in records]


@router.get("/stats", response_model=IpStatsOut)
async def ip_stats(_: AuthenticatedUser = Depends(get_admin_user)) -> IpStatsOut:
    return IpStatsOut.from_domain(await get_verdict_service().get_ip_stats())


@router.get("/{ip_address}", response_model=IpRiskOut)
async def get_ip(ip_address: str, _: AuthenticatedUser = Depends(get_admin_user)) -> IpRiskOut:
    record = await get_verdict_service().get_ip_record(ip_address)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="ip_not_tracked")
    return IpRiskOut.from_domain(record)


@router.post("/{ip_address}/block", response_model=IpRiskOut)
async def block_ip(
    ip_address: str,
    payload: BlockIpIn,
    admin: AuthenticatedUser = Depends(get_admin_user),
) -> IpRiskOut:
    record = await get_verdict_service().block_ip(ip_address, payload.reason, payload.duration_minutes)
    logger.info("admin blocked ip", extra={"ip_address": ip_address, "admin_id": admin.id})
    if record is None:  # pragma: no cover - the block upserts the row
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="ip_not_tracked")
    return IpRiskOut.from_domain(record, include_logs=False)


@router.post("/{ip_address}/unblock", status_code=status.HTTP_204_NO_CONTENT)
async def unblock_ip(ip_address: str, admin: AuthenticatedUser = Depends(get_admin_user)) -> None:
    if not await get_verdict_service().unblock_ip(ip_address):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="ip_not_tracked")
    logger.info("admin unblocked ip", extra={"ip_address": ip_address, "admin_id": admin.id})


@router.post("/{ip_address}/reset", status_code=status.HTTP_204_NO_CONTENT)
async def reset_ip(ip_address: str, admin: AuthenticatedUser = Depends(get_admin_user)) -> None:
    if not await get_verdict_service().reset_ip_activity(ip_address):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="ip_not_tracked")
    logger.info("admin reset ip", extra={"ip_address": ip_address, "admin_id": admin.id})


@router.post("/{ip_address}/whitelist", status_code=status.HTTP_204_NO_CONTENT)
async def whitelist_endpoint(
    ip_address: str,
    payload: WhitelistIn,
    _: AuthenticatedUser = Depends(get_admin_user),
) -> None:
    await get_verdict_service().whitelist_endpoint(ip_address, payload.endpoint)
