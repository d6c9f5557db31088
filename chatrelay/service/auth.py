from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from chatrelay.config import Settings
from chatrelay.logging import get_logger
from chatrelay.service.errors import AuthenticationError, ConflictError
from chatrelay.storage.errors import ConstraintViolation
from chatrelay.storage.models import User
from chatrelay.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def create_user(self, username: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]: ...


@dataclass
class AuthContext:
    user_id: str
    username: str
    token_id: Optional[str] = None


@dataclass(frozen=True)
class IssuedToken:
    access_token: str
    expires_in: int
    user: User


def token_digest(token: str) -> str:
    """Cache key material for a credential; the raw token is never stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthService:
    """Password accounts and HS256 access tokens backed by a token cache.

    When Redis is configured a token must also be present in the cache to
    be accepted, which lets logout revoke it early. Cache errors are logged
    and treated as a hit.
    """

    def __init__(
        self, store: AuthStore, cache: Optional[RedisCache], settings: Settings
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    @property
    def token_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    async def register(self, username: str, password: str) -> IssuedToken:
        try:
            user = self.store.create_user(username)
        except ConstraintViolation as exc:
            raise ConflictError("username already taken", detail=exc.detail) from exc
        self.store.save_password(user.id, self._pwd_hasher.hash(password), PASSWORD_ALGO)
        self.logger.info("user_registered", user_id=user.id)
        return await self._issue(user)

    async def login(self, username: str, password: str) -> IssuedToken:
        user = self.store.get_user_by_username(username)
        if not user or not self.verify_password(user.id, password):
            self.logger.warning("login_failed", username=username)
            raise AuthenticationError("invalid username or password")
        return await self._issue(user)

    async def logout(self, authorization: Optional[str]) -> None:
        token = self._extract_bearer(authorization)
        if not token or not self.cache:
            return
        try:
            await self.cache.evict_token(token_digest(token))
        except Exception as exc:
            self.logger.warning("token_evict_failed", error=str(exc))

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self._decode_jwt(token)
        if not payload:
            return None
        if self.cache:
            try:
                if not await self.cache.is_token_cached(token_digest(token)):
                    self.logger.info("access_token_not_cached", jti=payload.get("jti"))
                    return None
            except Exception as exc:
                self.logger.warning(
                    "token_cache_check_failed", jti=payload.get("jti"), error=str(exc)
                )
        user = self.store.get_user(str(payload.get("sub")))
        if not user:
            return None
        return AuthContext(user_id=user.id, username=user.username, token_id=payload.get("jti"))

    async def _issue(self, user: User) -> IssuedToken:
        now = int(time.time())
        ttl = self.token_ttl_seconds
        token = self._encode_jwt(
            {
                "sub": user.id,
                "username": user.username,
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "iat": now,
                "exp": now + ttl,
                "jti": str(uuid.uuid4()),
            }
        )
        if self.cache:
            try:
                await self.cache.cache_token(token_digest(token), ttl)
            except Exception as exc:
                self.logger.warning("token_cache_write_failed", user_id=user.id, error=str(exc))
        return IssuedToken(access_token=token, expires_in=ttl, user=user)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
