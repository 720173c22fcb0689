"""Bearer token issuing and validation.

Tokens are HS256 JWTs carrying ``user_id``. Logout is the only way to revoke
one before it expires: the token goes into a :class:`TokenBlacklist` for the
rest of its lifetime. The blacklist lives in process memory and is forgotten
on restart.
"""
from datetime import datetime, timedelta, timezone
from threading import RLock
from jose import jwt, JWTError, ExpiredSignatureError
from crowdfund.errors import AppError, ErrorCode
import logging
import time
import uuid

logger = logging.getLogger(__name__)


class TokenBlacklist:
    """Token -> expiry timestamp, purged lazily."""

    def __init__(self, clock=time.time, purge_interval=60):
        self._entries = {}
        self._lock = RLock()
        self._clock = clock
        self.purge_interval = purge_interval
        self._last_purge = clock()

    def add(self, token, ttl_seconds):
        with self._lock:
            now = self._clock()
            # Entries never presented again are dropped here.
            if now - self._last_purge >= self.purge_interval:
                self.purge_expired()
            self._entries[token] = now + ttl_seconds

    def contains(self, token) -> bool:
        with self._lock:
            expires_at = self._entries.get(token)
            if expires_at is None:
                return False
            if expires_at <= self._clock():
                del self._entries[token]
                return False
            return True

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            self._last_purge = now
            expired = [t for t, exp in self._entries.items() if exp <= now]
            for token in expired:
                del self._entries[token]
            return len(expired)

    def __len__(self):
        with self._lock:
            return len(self._entries)


class TokenService:

    def __init__(self, secret, algorithm='HS256', ttl_hours=24,
                 blacklist=None):
        self.secret = secret
        self.algorithm = algorithm
        self.ttl = timedelta(hours=ttl_hours)
        self.blacklist = blacklist if blacklist is not None else (
            TokenBlacklist())

    @classmethod
    def from_config(cls, config, blacklist=None):
        return cls(
            secret=config['JWT_SECRET'],
            algorithm=config.get('JWT_ALGORITHM', 'HS256'),
            ttl_hours=config.get('TOKEN_TTL_HOURS', 24),
            blacklist=blacklist,
        )

    def _encode(self, claims, ttl):
        now = datetime.now(timezone.utc)
        payload = dict(claims)
        payload['iat'] = now
        payload['exp'] = now + ttl
        payload['jti'] = uuid.uuid4().hex
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def issue(self, user_id: int) -> str:
        return self._encode({'user_id': int(user_id)}, self.ttl)

    def _decode(self, token, verify_exp=True):
        if not token:
            raise AppError(ErrorCode.UNAUTHORIZED, 'missing token')
        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={'verify_exp': verify_exp})
        except ExpiredSignatureError as e:
            raise AppError(ErrorCode.TOKEN_EXPIRED, 'token expired', e)
        except JWTError as e:
            raise AppError(ErrorCode.INVALID_TOKEN, 'invalid token', e)

    def validate(self, token) -> int:
        if token and self.blacklist.contains(token):
            raise AppError(ErrorCode.INVALID_TOKEN, 'token has been revoked')
        claims = self._decode(token)
        user_id = claims.get('user_id')
        if not isinstance(user_id, int):
            raise AppError(ErrorCode.INVALID_TOKEN, 'invalid token claims')
        return user_id

    def refresh(self, token) -> str:
        """Re-issue a signed token, even one that has already expired."""
        if token and self.blacklist.contains(token):
            raise AppError(ErrorCode.INVALID_TOKEN, 'token has been revoked')
        claims = self._decode(token, verify_exp=False)
        user_id = claims.get('user_id')
        if not isinstance(user_id, int):
            raise AppError(ErrorCode.INVALID_TOKEN, 'invalid token claims')
        return self.issue(user_id)

    def revoke(self, token):
        self.blacklist.add(token, self.ttl.total_seconds())
        logger.info("Token revoked, blacklist size=%s", len(self.blacklist))

    def issue_purpose_token(self, email, purpose, ttl_hours=24) -> str:
        return self._encode(
            {'email': email, 'purpose': purpose},
            timedelta(hours=ttl_hours))

    def read_purpose_token(self, token, purpose) -> str:
        claims = self._decode(token)
        if claims.get('purpose') != purpose or not claims.get('email'):
            raise AppError(ErrorCode.INVALID_TOKEN, 'invalid token purpose')
        return claims['email']
