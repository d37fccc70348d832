"""Identity helpers for FastAPI endpoints.

Sessions are issued and verified by the upstream gateway, which forwards the
resolved identity as `X-User-Id` / `X-User-Roles` headers. Nothing here checks
that the user exists.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Depends, Header, HTTPException, status


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	roles: Tuple[str, ...] = ()

	def has_role(self, role: str) -> bool:
		return role in self.roles


def _parse_roles(raw: Optional[str]) -> Tuple[str, ...]:
	if not raw:
		return ()
	return tuple(part.strip() for part in raw.split(",") if part.strip())


async def get_optional_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_roles: Optional[str] = Header(default=None, alias="X-User-Roles"),
) -> Optional[AuthenticatedUser]:
	if not x_user_id or not x_user_id.strip():
		return None
	return AuthenticatedUser(id=x_user_id.strip(), roles=_parse_roles(x_user_roles))


async def get_current_user(user: Optional[AuthenticatedUser] = Depends(get_optional_user)) -> AuthenticatedUser:
	if user is None:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthenticated")
	return user


async def get_admin_user(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
	if user.has_role("admin"):
		return user
	raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient_role")
