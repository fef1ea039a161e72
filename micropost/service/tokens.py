from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from typing import Any, Optional

from micropost.logging import get_logger
from micropost.service.errors import (
    InvalidTokenError,
    TokenExpiredError,
    TokenNotYetValidError,
)
from micropost.storage.models import Clock, User, utc_now

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32
_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "iat", "exp", "iss", "aud")


def strip_bearer(token: Optional[str]) -> str:
    """Drop a leading ``Bearer `` (any case) and surrounding whitespace."""
    if not token:
        return ""
    token = token.strip()
    if token[:7].lower() == "bearer ":
        token = token[7:].strip()
    return token


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def read_unverified_claims(token: str) -> Optional[dict[str, Any]]:
    """Decode the payload without checking the signature.

    Only for bookkeeping such as picking a blacklist expiry; never for
    authorization decisions.
    """
    parts = strip_bearer(token).split(".")
    if len(parts) != 3:
        return None
    try:
        payload = json.loads(_decode_segment(parts[1]))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def read_unverified_expiry(token: str) -> Optional[int]:
    claims = read_unverified_claims(token) or {}
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return int(exp)


class TokenCodec:
    """HS256 access tokens carrying subject id, email and roles."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_seconds: int = 3600,
        clock: Clock = utc_now,
    ) -> None:
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"token signing secret must be at least {MIN_SECRET_LENGTH} characters"
            )
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, user: User) -> dict[str, Any]:
        now = int(self.clock().timestamp())
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "roles": list(user.roles),
            "iat": now,
            "exp": now + self.ttl_seconds,
            "iss": self.issuer,
            "aud": self.audience,
            # unique per token so two tokens minted in the same second hash differently
            "jti": str(uuid.uuid4()),
        }
        return {
            "access_token": self.encode(payload),
            "token_type": "Bearer",
            "expires_in": self.ttl_seconds,
        }

    def verify(self, token: Optional[str]) -> dict[str, Any]:
        """Return the claims of a valid token.

        Raises:
            InvalidTokenError: malformed, wrong algorithm, bad signature,
                wrong issuer/audience or missing claims
            TokenExpiredError: now is past ``exp``
            TokenNotYetValidError: ``nbf`` lies in the future
        """
        token = strip_bearer(token)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError() from None

        # Pin the algorithm so a forged header cannot choose how we verify
        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidTokenError()
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError() from None
        if not isinstance(payload, dict) or any(c not in payload for c in _REQUIRED_CLAIMS):
            raise InvalidTokenError()
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise InvalidTokenError()

        now = self.clock().timestamp()
        try:
            exp_ts = float(payload["exp"])
            nbf = payload.get("nbf")
            nbf_ts = float(nbf) if nbf is not None else None
        except (TypeError, ValueError):
            raise InvalidTokenError() from None
        if now > exp_ts:
            raise TokenExpiredError()
        if nbf_ts is not None and nbf_ts > now:
            raise TokenNotYetValidError()
        return payload
