from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union

from guardian.logging import get_logger
from guardian.service.errors import Denied, ErrorKind
from guardian.storage.models import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    tenant_id: str
    session_id: str
    issued_at: datetime
    expires_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "sub": self.user_id,
            "clientId": self.tenant_id,
            "jti": self.session_id,
            "iat": int(self.issued_at.timestamp()),
            "exp": int(self.expires_at.timestamp()),
        }


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode((segment + padding).encode("ascii"))


class TokenCodec:
    """Signs and verifies HS512 bearer tokens bound to a session id.

    The codec is stateless: whether the session behind a valid token is still
    usable is decided by the session manager.
    """

    ALGORITHM = "HS512"
    _HEADER = {"alg": ALGORITHM, "typ": "JWT"}

    def __init__(
        self,
        secret: str,
        ttl_minutes: int,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._key = secret.encode()
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha512).digest()
        return _encode_segment(digest)

    def issue(
        self,
        user_id: str,
        tenant_id: str,
        session_id: str,
        now: Optional[datetime] = None,
    ) -> str:
        issued = (now or self._clock()).replace(microsecond=0)
        claims = TokenClaims(
            user_id=user_id,
            tenant_id=tenant_id,
            session_id=session_id,
            issued_at=issued,
            expires_at=issued + self.ttl,
        )
        header_enc = _encode_segment(json.dumps(self._HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def expires_at(self, issued_at: datetime) -> datetime:
        return issued_at.replace(microsecond=0) + self.ttl

    def verify(
        self, token: str, now: Optional[datetime] = None
    ) -> Union[TokenClaims, Denied]:
        if not token or not isinstance(token, str):
            return self._reject(ErrorKind.TOKEN_MALFORMED, "empty token")
        parts = token.split(".")
        if len(parts) != 3:
            return self._reject(ErrorKind.TOKEN_MALFORMED, "wrong segment count")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, UnicodeError, ValueError):
            return self._reject(ErrorKind.TOKEN_MALFORMED, "header not decodable")
        if not isinstance(header, dict):
            return self._reject(ErrorKind.TOKEN_MALFORMED, "header not an object")
        if header.get("alg") != self.ALGORITHM:
            return self._reject(ErrorKind.TOKEN_SIGNATURE_INVALID, "unexpected algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return self._reject(ErrorKind.TOKEN_SIGNATURE_INVALID, "signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeError, ValueError):
            return self._reject(ErrorKind.TOKEN_MALFORMED, "payload not decodable")
        claims = self._claims_from_payload(payload)
        if claims is None:
            return self._reject(ErrorKind.TOKEN_MALFORMED, "missing or invalid claims")

        current = now or self._clock()
        if claims.expires_at <= current:
            return self._reject(ErrorKind.TOKEN_EXPIRED, "token expired")
        return claims

    @staticmethod
    def _claims_from_payload(payload: Any) -> Optional[TokenClaims]:
        if not isinstance(payload, dict):
            return None
        sub = payload.get("sub")
        tenant = payload.get("clientId")
        jti = payload.get("jti")
        iat = payload.get("iat")
        exp = payload.get("exp")
        if not all(isinstance(v, str) and v for v in (sub, tenant, jti)):
            return None
        if not all(isinstance(v, int) and not isinstance(v, bool) for v in (iat, exp)):
            return None
        try:
            issued_at = datetime.fromtimestamp(iat, tz=timezone.utc)
            expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
        return TokenClaims(
            user_id=sub,
            tenant_id=tenant,
            session_id=jti,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    @staticmethod
    def _reject(kind: ErrorKind, reason: str) -> Denied:
        logger.info("token_rejected", kind=kind.value, reason=reason)
        return Denied(kind, reason)


__all__ = ["TokenClaims", "TokenCodec"]
