"""Header check for operator endpoints."""
import hmac
from typing import Optional

from fastapi import Depends, Header

from diarybot.core.container import ServiceContainer, get_container
from diarybot.core.errors import AdminAccessDeniedError


def require_admin(
    x_admin_token: Optional[str] = Header(default=None),
    container: ServiceContainer = Depends(get_container),
) -> None:
    expected = container.settings.ADMIN_TOKEN
    if not expected:
        raise AdminAccessDeniedError("Operator endpoints are disabled (ADMIN_TOKEN is not set).")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise AdminAccessDeniedError("Missing or invalid x-admin-token header.")
