"""
Request authentication dependencies.

Session tokens are issued by the account service and stored in Redis under
session:{token} → user_id; this service only resolves them. Internal callers
(the scheduler, the posts service) authenticate with the shared service secret.
"""
import logging
import secrets
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.redis_client import session_store
from app.config import settings
from app.database import get_db
from app.errors import Forbidden, NotFound, Unauthorized
from app.models import User

logger = logging.getLogger(__name__)

ADMIN_ROLE = "ADMIN"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user(
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> User:
    token = _bearer_token(authorization)
    if token is None:
        raise Unauthorized()

    user_id = await session_store.get(token)
    if not user_id:
        raise Unauthorized()

    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != ADMIN_ROLE:
        raise Forbidden("Admin access required")
    return user


async def verify_service_secret(authorization: Optional[str] = Header(None)) -> None:
    token = _bearer_token(authorization)
    if not settings.cron_secret:
        logger.warning("CRON_SECRET is not configured — rejecting internal call")
        raise Unauthorized()
    if token is None or not secrets.compare_digest(token, settings.cron_secret):
        raise Unauthorized()
