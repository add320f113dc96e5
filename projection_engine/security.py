"""
Guards the HTTP adapter's write endpoints (/commands, /events) with an
X-API-Key header checked against PROJECTION_API_KEY. Read endpoints stay open.
With the variable unset every request passes (dev mode).
"""
import os
import secrets

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_api_key(api_key_header: str = Security(api_key_header)) -> str:
    """Return the presented key, or raise 401 if it does not match"""
    expected_key = os.getenv("PROJECTION_API_KEY")

    if not expected_key:
        return "dev-key"

    if api_key_header and secrets.compare_digest(api_key_header, expected_key):
        return api_key_header

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API Key"
    )
