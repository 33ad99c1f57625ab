"""Shared-secret guards for operator and cron endpoints."""
import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from config import settings

logger = logging.getLogger(__name__)

operator_key_header = APIKeyHeader(name="X-Operator-Key", auto_error=False)
cron_secret_header = APIKeyHeader(name="X-Cron-Secret", auto_error=False)


def _matches(provided: Optional[str], expected: str) -> bool:
    return provided is not None and hmac.compare_digest(provided.encode(), expected.encode())


async def require_operator(api_key: Optional[str] = Security(operator_key_header)) -> None:
    """Operator endpoints. Disabled when no operator key is configured."""
    if settings.operator_api_key is None:
        return
    if not _matches(api_key, settings.operator_api_key):
        logger.warning("Rejected operator request with missing or invalid X-Operator-Key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


async def require_cron_secret(secret: Optional[str] = Security(cron_secret_header)) -> None:
    """Scheduled-job endpoints. Disabled when no cron secret is configured."""
    if settings.cron_secret is None:
        return
    if not _matches(secret, settings.cron_secret):
        logger.warning("Rejected cron request with missing or invalid X-Cron-Secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
