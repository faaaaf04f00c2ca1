"""Server half of the session guard: CSRF tokens and session teardown."""

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone

from starlette.responses import Response

from tripreceipts.common.config import CommonSettings
from tripreceipts.common.errors import CsrfMismatchError
from tripreceipts.common.logging import logger
from tripreceipts.common.metrics import csrf_rejections_total, session_teardowns_total
from tripreceipts.services.session_guard.store import ServerSession

CSRF_HEADER = "X-CSRF-Token"


@dataclass(frozen=True)
class CookiePolicy:
    """Attributes of the session cookie; expiry must repeat them exactly."""

    name: str = "session"
    path: str = "/"
    domain: str | None = None
    secure: bool = True
    samesite: str = "none"
    httponly: bool = True

    @classmethod
    def from_settings(cls, config: CommonSettings) -> "CookiePolicy":
        return cls(
            name=config.session_cookie_name,
            domain=config.session_cookie_domain,
            secure=config.session_cookie_secure,
            samesite=config.session_cookie_samesite,
        )

    def apply(self, response: Response, value: str, max_age: int) -> None:
        response.set_cookie(
            self.name,
            value,
            max_age=max_age,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=self.httponly,
            samesite=self.samesite,
        )

    def expire(self, response: Response) -> None:
        response.delete_cookie(
            self.name,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=self.httponly,
            samesite=self.samesite,
        )


class SessionGuard:
    """Issues CSRF tokens bound to server sessions and tears sessions down."""

    def __init__(self, store, ttl_seconds: int = 1800, service_name: str = "after-payment") -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.service_name = service_name

    async def issue_csrf_token(self, session_id: str | None) -> ServerSession:
        """Return the live session's token, or mint a new session and token."""

        if session_id:
            existing = await self.store.get(session_id)
            if existing is not None:
                return existing
        session = ServerSession(
            session_id=secrets.token_urlsafe(32),
            csrf_token=secrets.token_urlsafe(32),
            created_at=datetime.now(timezone.utc),
        )
        await self.store.put(session, self.ttl_seconds)
        return session

    def _reject(self, reason: str) -> CsrfMismatchError:
        csrf_rejections_total.labels(service=self.service_name, reason=reason).inc()
        logger.warning("csrf_rejected reason=%s", reason)
        return CsrfMismatchError(reason)

    async def validate(self, session_id: str | None, token: str | None) -> ServerSession:
        """Check `token` against the session's CSRF token or raise `CsrfMismatchError`."""

        if not token:
            raise self._reject("missing_token")
        if not session_id:
            raise self._reject("missing_session")
        session = await self.store.get(session_id)
        if session is None:
            raise self._reject("unknown_session")
        if not hmac.compare_digest(session.csrf_token.encode(), token.encode()):
            raise self._reject("token_mismatch")
        return session

    async def teardown(self, session_id: str | None) -> bool:
        """Forget the session; True if a live one existed. Safe to repeat."""

        had_session = bool(session_id) and await self.store.delete(session_id)
        session_teardowns_total.labels(service=self.service_name, had_session=str(had_session).lower()).inc()
        logger.info("session_teardown had_session=%s", had_session)
        return had_session
