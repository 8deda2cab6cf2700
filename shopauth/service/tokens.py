from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional, Tuple

from shopauth.logging import get_logger
from shopauth.service.errors import InvalidTokenError, ServerError, TokenExpiredError
from shopauth.storage.models import Account, RefreshTokenRecord, utcnow

if TYPE_CHECKING:
    from shopauth.service.auth import AccountRepository

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
_TOKEN_TYPES = frozenset({ACCESS, REFRESH})


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _timestamp(value: datetime) -> float:
    # Truncated to the millisecond; never later than the real issue instant
    return math.floor(value.timestamp() * 1000) / 1000


@dataclass(frozen=True)
class TokenClaims:
    account_id: str
    token_type: str
    iat: float
    exp: float
    jti: Optional[str] = None
    role: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        account_id = payload.get("id")
        token_type = payload.get("type")
        iat = payload.get("iat")
        exp = payload.get("exp")
        if not isinstance(account_id, str) or not account_id:
            raise InvalidTokenError("token is missing the account id claim")
        if token_type not in _TOKEN_TYPES:
            raise InvalidTokenError("token is missing a valid type claim")
        if not isinstance(iat, (int, float)) or not isinstance(exp, (int, float)):
            raise InvalidTokenError("token is missing iat/exp claims")
        jti = payload.get("jti")
        role = payload.get("role")
        return cls(
            account_id=account_id,
            token_type=token_type,
            iat=float(iat),
            exp=float(exp),
            jti=jti if isinstance(jti, str) else None,
            role=role if isinstance(role, str) else None,
        )

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, int(self.exp - now.timestamp()))


class TokenCodec:
    """Compact HS256 ``header.payload.signature`` tokens bound to one secret.

    Access and refresh tokens each get their own codec (and secret), so a
    token of one kind never verifies under the other's codec.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        leeway_seconds: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.leeway = timedelta(seconds=leeway_seconds)
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps({**payload, "iss": self.issuer}, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, verify_exp: bool = True) -> TokenClaims:
        """Verify signature, issuer and expiry, then return the claims.

        Raises:
            InvalidTokenError: malformed, wrong algorithm, bad signature or claims
            TokenExpiredError: ``now >= exp + leeway``
        """
        if not token or not isinstance(token, str):
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed token")

        # Reject algorithm confusion (none/RS256 downgrade) before anything else
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed token header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=getattr(header, "get", lambda _k: None)("alg"))
            raise InvalidTokenError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("invalid token signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError("malformed token payload")
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token payload")
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("unexpected token issuer")

        claims = TokenClaims.from_payload(payload)
        if verify_exp:
            now = self._clock()
            if now.timestamp() >= claims.exp + self.leeway.total_seconds():
                raise TokenExpiredError()
        return claims


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "Bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


class TokenIssuer:
    """Mints access/refresh pairs and records each refresh token on its account."""

    def __init__(
        self,
        access_codec: TokenCodec,
        refresh_codec: TokenCodec,
        repository: "AccountRepository",
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.access_codec = access_codec
        self.refresh_codec = refresh_codec
        self.repository = repository
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    def mint_access(self, account: Account) -> Tuple[str, datetime]:
        now = self._clock()
        expires_at = now + self.access_ttl
        token = self.access_codec.encode(
            {
                "id": account.id,
                "role": account.role,
                "type": ACCESS,
                "jti": uuid.uuid4().hex,
                "iat": _timestamp(now),
                "exp": _timestamp(expires_at),
            }
        )
        return token, expires_at

    def mint_refresh(self, account: Account) -> Tuple[str, datetime, datetime]:
        now = self._clock()
        expires_at = now + self.refresh_ttl
        token = self.refresh_codec.encode(
            {
                "id": account.id,
                "type": REFRESH,
                # Distinguishes two refresh tokens minted for one account in the same instant
                "jti": uuid.uuid4().hex,
                "iat": _timestamp(now),
                "exp": _timestamp(expires_at),
            }
        )
        return token, now, expires_at

    async def issue(
        self, account: Account, *, device_fingerprint: Optional[str] = None
    ) -> IssuedTokens:
        access_token, access_exp = self.mint_access(account)
        refresh_token, created_at, refresh_exp = self.mint_refresh(account)
        record = RefreshTokenRecord(
            token_value=refresh_token,
            created_at=created_at,
            expires_at=refresh_exp,
            device_fingerprint=device_fingerprint,
            is_active=True,
        )
        stored = await self.repository.append_refresh_token(
            account.id, record, now=created_at
        )
        if not stored:
            # Never hand out a refresh token that has no backing record
            raise ServerError("unable to record refresh token")
        logger.info(
            "tokens_issued",
            account_id=account.id,
            device_fingerprint=device_fingerprint,
            access_expires_at=access_exp.isoformat(),
        )
        return IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )
