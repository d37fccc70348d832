"""Abuse engine API routers."""

from fastapi import APIRouter

from . import ips, reads, users

router = APIRouter()
router.include_router(users.router)
router.include_router(ips.router)
router.include_router(reads.router)

__all__ = ["router"]
