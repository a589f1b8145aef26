"""Preflight tokens.

A token proves that preflight passed for a task shortly before a battle
starts. It is the base64url JSON payload and an HMAC-SHA256 signature of it,
joined by a dot, and is only valid for five minutes after issuance.

The signing secret is read from ``BATTLEKIT_PREFLIGHT_SECRET``. Without it
the working directory's ``.battlekit/preflight.key`` is used, created on
first use with owner-only permissions, so a token issued by one process
validates in the next. Callers that give no working directory fall back to a
random per-process secret.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import BaseModel, ValidationError

from ..config import STATE_DIR_NAME
from ..models import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

SECRET_ENV_VAR = "BATTLEKIT_PREFLIGHT_SECRET"
TOKEN_TTL = timedelta(minutes=5)
MAX_CLOCK_SKEW = timedelta(seconds=30)
SECRET_FILE_NAME = "preflight.key"

_PROCESS_SECRET = secrets.token_bytes(32)


class TokenPayload(BaseModel):
    """Decoded token contents."""

    task_id: str
    timestamp: str


def secret_path(working_dir: Path) -> Path:
    return Path(working_dir) / STATE_DIR_NAME / SECRET_FILE_NAME


def load_or_create_secret(working_dir: Path) -> bytes:
    """Read the working directory's signing secret, creating it on first use."""
    path = secret_path(working_dir)
    try:
        return path.read_bytes().strip()
    except FileNotFoundError:
        pass

    path.parent.mkdir(parents=True, exist_ok=True)
    secret = secrets.token_hex(32).encode("ascii")
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        # Another process created it first
        return path.read_bytes().strip()
    with os.fdopen(fd, "wb") as f:
        f.write(secret)
    logger.info(f"Created preflight signing secret at {path}")
    return secret


def _secret(secret: bytes | str | None, working_dir: Path | None = None) -> bytes:
    if secret is None:
        secret = os.environ.get(SECRET_ENV_VAR) or None
    if secret is None and working_dir is not None:
        secret = load_or_create_secret(working_dir)
    if secret is None:
        secret = _PROCESS_SECRET
    if isinstance(secret, str):
        secret = secret.encode()
    return secret


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _sign(body: str, secret: bytes) -> str:
    return _b64encode(hmac.new(secret, body.encode(), hashlib.sha256).digest())


def generate_preflight_token(
    task_id: str,
    timestamp: str | None = None,
    secret: bytes | str | None = None,
    working_dir: Path | None = None,
) -> str:
    """Issue a token for a task.

    Args:
        task_id: Task preflight ran for.
        timestamp: Issue time (ISO-8601). Defaults to now.
        secret: Signing secret. Defaults to the configured secret.
        working_dir: Directory whose persisted secret is used when no secret
            is given or configured.

    Returns:
        Token string.
    """
    payload = {"task_id": task_id, "timestamp": timestamp or utc_now()}
    body = _b64encode(json.dumps(payload, separators=(",", ":")).encode())
    return f"{body}.{_sign(body, _secret(secret, working_dir))}"


def validate_preflight_token(
    token: str,
    secret: bytes | str | None = None,
    now: datetime | None = None,
    working_dir: Path | None = None,
) -> TokenPayload | None:
    """Validate a token.

    ``secret`` and ``working_dir`` select the secret as for
    generate_preflight_token.

    Returns:
        The payload, or None if the token is malformed, unsigned, tampered
        with, older than five minutes or issued in the future.
    """
    body, sep, signature = token.partition(".")
    if not sep or not body or not signature:
        return None

    if not hmac.compare_digest(signature.encode(), _sign(body, _secret(secret, working_dir)).encode()):
        logger.warning("Rejected preflight token with invalid signature")
        return None

    try:
        payload = TokenPayload.model_validate_json(_b64decode(body))
        issued = parse_timestamp(payload.timestamp)
    except (binascii.Error, ValidationError, ValueError):
        return None

    now = now or datetime.now(timezone.utc)
    age = now - issued
    if age > TOKEN_TTL or age < -MAX_CLOCK_SKEW:
        return None

    return payload
