import hmac
import os
from typing import Optional

from fastapi import Header, HTTPException, status

from autofix import config


def configured_api_key() -> str:
    return os.getenv("AUTOFIX_REMOTE_API_KEY", config.REMOTE_API_KEY).strip()


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def require_api_key(
    apikey: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
) -> None:
    expected = configured_api_key()
    if not expected:
        return
    presented = apikey or parse_bearer_token(authorization) or ""
    if not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")
