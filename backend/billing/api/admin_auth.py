import logging
import secrets
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from billing.infra.logging import update_log_context
from billing.settings import settings

logger = logging.getLogger(__name__)

security = HTTPBasic(auto_error=False)


class AdminAuthException(HTTPException):
    def __init__(self, *, reason: str, detail: str = "Invalid authentication") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Basic"},
        )
        self.reason = reason


@dataclass
class AdminIdentity:
    username: str
    auth_method: str = "basic"


async def require_admin(
    credentials: HTTPBasicCredentials | None = Depends(security),
) -> AdminIdentity:
    username = settings.admin_basic_username
    password = settings.admin_basic_password
    if not username or not password:
        logger.warning("admin_auth_unconfigured", extra={"extra": {"path": "/v1/admin"}})
        raise AdminAuthException(reason="unconfigured_credentials")

    if not credentials:
        raise AdminAuthException(reason="missing_credentials")

    if secrets.compare_digest(credentials.username, username) and secrets.compare_digest(
        credentials.password, password
    ):
        update_log_context(admin_user=credentials.username)
        return AdminIdentity(username=credentials.username)

    logger.info("admin_auth_rejected", extra={"extra": {"reason": "invalid_credentials"}})
    raise AdminAuthException(reason="invalid_credentials")
