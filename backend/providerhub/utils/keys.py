"""
API key helpers.
"""

import uuid


def mask_api_key(key: str) -> str:
    """Mask an API key for display, keeping the first and last 4 characters."""
    if not key or len(key) <= 8:
        return "***"
    return f"{key[:4]}...{key[-4:]}"


def generate_temp_id() -> str:
    """Client-side placeholder id for a key that is not persisted yet."""
    return str(uuid.uuid4())
