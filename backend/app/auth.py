from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

from fastapi import Header, HTTPException, status

from dispatch_engine.errors import ValidationError
from dispatch_engine.permissions import Actor

from .config import SECRET_KEY, TOKEN_EXPIRE_HOURS


def _sign(body: str) -> str:
    return hmac.new(SECRET_KEY.encode(), body.encode(), hashlib.sha256).hexdigest()


def create_token(subject_id: str, role: str, expire_hours: int = TOKEN_EXPIRE_HOURS) -> str:
    # Tokens are issued by the identity provider; this mirrors its format for seeding and tests.
    exp = (datetime.now(timezone.utc) + timedelta(hours=expire_hours)).timestamp()
    raw = json.dumps({"sub": subject_id, "role": role, "exp": exp}, separators=(",", ":")).encode()
    b64 = base64.urlsafe_b64encode(raw).decode().rstrip("=")
    return f"{b64}.{_sign(b64)}"


def decode_token(token: str) -> Actor:
    try:
        b64, sig = token.split(".")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    if not hmac.compare_digest(sig, _sign(b64)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    padded = b64 + "=" * (-len(b64) % 4)
    payload = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
    if datetime.now(timezone.utc).timestamp() > payload.get("exp", 0):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")

    try:
        return Actor.of(payload["sub"], payload["role"])
    except (KeyError, ValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token claims") from exc


def get_current_actor(authorization: str = Header(default="")) -> Actor:
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return decode_token(authorization.replace("Bearer ", "", 1))
