from __future__ import annotations

import logging
from dataclasses import dataclass

from jose import JWTError, jwt

from core.config import AuthConfig
from core.errors import AuthenticationError
from database.repositories import UserRepository
from utils.constants import ROLE_ADMIN, STAFF_ROLES

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Principal:
    id: str
    role: str
    is_active: bool = True

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class IdentityService:
    """Turns an ``Authorization`` header value into a :class:`Principal`.

    Tokens only carry the user id; role and active flag always come from the
    stored user so that demotions and deactivations apply immediately.
    """

    def __init__(self, config: AuthConfig, user_repo: UserRepository) -> None:
        self.config = config
        self.user_repo = user_repo

    async def resolve(self, credential: str | None) -> Principal:
        token = self._extract_token(credential)
        try:
            claims = jwt.decode(token, self.config.jwt_secret, algorithms=[self.config.jwt_algorithm])
        except JWTError as exc:
            LOGGER.debug("Rejected bearer token: %s", exc)
            raise AuthenticationError("Invalid token.") from exc

        user_id = claims.get("sub") or claims.get("userId")
        if not user_id:
            raise AuthenticationError("Invalid token.")

        user = await self.user_repo.get_by_id(str(user_id))
        if not user:
            raise AuthenticationError("Invalid token. User not found.")
        if not user.is_active:
            raise AuthenticationError("Account is deactivated.")
        return Principal(id=user.id, role=user.role, is_active=user.is_active)

    @staticmethod
    def _extract_token(credential: str | None) -> str:
        if not credential:
            raise AuthenticationError("No token provided, authorization denied.")
        scheme, _, token = credential.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("No token provided, authorization denied.")
        return token.strip()
