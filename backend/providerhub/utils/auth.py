"""
Authentication for the admin API: a static bearer token from settings.
"""

import secrets
from typing import Optional

from fastapi import Request

from providerhub.config import settings
from providerhub.utils.exceptions import raise_unauthorized


def get_token_from_request(request: Request) -> Optional[str]:
    """Extract the bearer token from the Authorization header."""
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


async def require_admin_auth(request: Request) -> Optional[str]:
    """Dependency to require the admin token when one is configured."""
    if not settings.admin_token:
        return None

    token = get_token_from_request(request)
    if not token:
        raise_unauthorized("Missing authentication token")
    if not secrets.compare_digest(token, settings.admin_token):
        raise_unauthorized("Invalid token")
    return token
