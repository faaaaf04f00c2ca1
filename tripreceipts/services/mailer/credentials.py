"""Mail relay credentials.

Two interchangeable strategies feed the dispatcher: a plain SMTP
username/password, or an OAuth2 access token obtained by exchanging a
long-lived refresh token. The OAuth2 side owns token caching and makes sure
concurrent senders share one refresh exchange.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

import httpx

from tripreceipts.common.config import CommonSettings
from tripreceipts.common.errors import CredentialRefreshError, MailConfigError
from tripreceipts.common.logging import logger
from tripreceipts.common.metrics import token_refreshes_total
from tripreceipts.common.tracing import traced


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessToken:
    """Short-lived bearer token for the mail relay. Never persisted."""

    value: str
    expires_at: datetime

    def is_expired(self, now: datetime, skew_seconds: int = 0) -> bool:
        return now >= self.expires_at - timedelta(seconds=skew_seconds)


@dataclass(frozen=True)
class SmtpAuth:
    """Transport auth material handed to the dispatcher for one send."""

    mechanism: str
    username: str
    secret: str
    token: AccessToken | None = None


class CredentialBroker:
    """Caches OAuth2 access tokens and refreshes them single-flight."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        token_url: str,
        expiry_skew_seconds: int = 60,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = _utcnow,
        service_name: str = "after-payment",
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.token_url = token_url
        self.expiry_skew_seconds = expiry_skew_seconds
        self.timeout_seconds = timeout_seconds
        self.service_name = service_name
        self._transport = transport
        self._clock = clock
        self._token: AccessToken | None = None
        self._refresh_task: asyncio.Task | None = None

    @property
    def cached_token(self) -> AccessToken | None:
        return self._token

    async def get_access_token(self) -> AccessToken:
        """Return the cached token, refreshing it when missing or expired.

        Callers arriving while a refresh is running await that same exchange.
        A failed exchange raises `CredentialRefreshError` to every waiter and
        is not retried here.
        """

        token = self._token
        if token is not None and not token.is_expired(self._clock(), self.expiry_skew_seconds):
            return token
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh())
            self._refresh_task.add_done_callback(self._refresh_done)
        # A cancelled caller must not cancel the exchange other callers share.
        return await asyncio.shield(self._refresh_task)

    def invalidate(self, token: AccessToken | None = None) -> None:
        """Drop the cached token (only if it is still `token`, when given)."""

        if token is None or self._token == token:
            self._token = None

    def _refresh_done(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter went away.
            task.exception()

    async def _refresh(self) -> AccessToken:
        try:
            with traced("oauth.token_refresh", token_url=self.token_url):
                token = await self._exchange()
        except CredentialRefreshError:
            token_refreshes_total.labels(service=self.service_name, outcome="failed").inc()
            raise
        token_refreshes_total.labels(service=self.service_name, outcome="ok").inc()
        self._token = token
        logger.info("oauth_token_refreshed expires_at=%s", token.expires_at.isoformat())
        return token

    async def _exchange(self) -> AccessToken:
        data = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = await client.post(self.token_url, data=data)
        except httpx.HTTPError as exc:
            logger.error("oauth_token_exchange_failed error=%s", exc)
            raise CredentialRefreshError(f"token endpoint unreachable: {exc}") from exc

        if resp.status_code >= 400:
            logger.error("oauth_token_exchange_rejected status=%s", resp.status_code)
            raise CredentialRefreshError(f"token endpoint rejected refresh: HTTP {resp.status_code}")
        try:
            payload = resp.json()
            value = payload["access_token"]
            expires_in = int(payload.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError) as exc:
            raise CredentialRefreshError(f"malformed token response: {exc}") from exc
        return AccessToken(value=value, expires_at=self._clock() + timedelta(seconds=expires_in))


class CredentialStrategy(Protocol):
    """Capability the dispatcher uses to authenticate one SMTP session."""

    async def get_auth(self) -> SmtpAuth: ...

    def reject(self, auth: SmtpAuth) -> None: ...


class PasswordCredentials:
    """Plain SMTP LOGIN with a configured account."""

    def __init__(self, username: str, password: str) -> None:
        self.username = username
        self.password = password

    async def get_auth(self) -> SmtpAuth:
        return SmtpAuth(mechanism="LOGIN", username=self.username, secret=self.password)

    def reject(self, auth: SmtpAuth) -> None:
        # Static credentials; an operator has to fix them.
        logger.warning("smtp_password_rejected username=%s", auth.username)


class OAuth2Credentials:
    """XOAUTH2 using tokens from a `CredentialBroker`."""

    def __init__(self, broker: CredentialBroker, username: str) -> None:
        self.broker = broker
        self.username = username

    async def get_auth(self) -> SmtpAuth:
        token = await self.broker.get_access_token()
        return SmtpAuth(mechanism="XOAUTH2", username=self.username, secret=token.value, token=token)

    def reject(self, auth: SmtpAuth) -> None:
        self.broker.invalidate(auth.token)


def build_credential_strategy(config: CommonSettings) -> CredentialStrategy:
    """Pick the transport strategy once at startup from settings."""

    oauth_fields = (config.oauth_client_id, config.oauth_client_secret, config.oauth_refresh_token)
    if any(oauth_fields):
        if config.mail_password:
            raise MailConfigError("configure either MAIL_PASSWORD or OAUTH_* credentials, not both")
        if not all(oauth_fields):
            raise MailConfigError("OAUTH_CLIENT_ID, OAUTH_CLIENT_SECRET and OAUTH_REFRESH_TOKEN are all required")
        broker = CredentialBroker(
            client_id=config.oauth_client_id,
            client_secret=config.oauth_client_secret,
            refresh_token=config.oauth_refresh_token,
            token_url=config.oauth_token_url,
            expiry_skew_seconds=config.oauth_expiry_skew_seconds,
            timeout_seconds=config.oauth_timeout_seconds,
            service_name=config.service_name,
        )
        return OAuth2Credentials(broker, username=config.mail_username)
    return PasswordCredentials(config.mail_username, config.mail_password)
