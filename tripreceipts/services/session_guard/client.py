"""Client half of the session guard.

`ReceiptPageSession` drives the receipt page against the HTTP API: it gets a
CSRF token before enabling any state-changing action, runs the email and
download actions, and always tears the session down when the page is left.
Client-held state lives in an explicit `SessionContext` value instead of
ambient globals, so teardown is a pure function of what was stored.
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from tripreceipts.common.logging import logger
from tripreceipts.common.state_machine import is_terminal, validate_transition
from tripreceipts.services.session_guard.guard import CSRF_HEADER

EXPIRED = "Thu, 01 Jan 1970 00:00:00 GMT"


@dataclass(frozen=True)
class CookieSpec:
    """A cookie the client holds, with the attributes needed to expire it."""

    name: str
    path: str = "/"
    domain: str | None = None
    secure: bool = False
    samesite: str | None = None


@dataclass(frozen=True)
class SessionContext:
    """Everything the client stored for this visit."""

    local_storage: dict[str, str] = field(default_factory=dict)
    session_storage: dict[str, str] = field(default_factory=dict)
    cookies: tuple[CookieSpec, ...] = ()

    def with_cookies(self, specs: list[CookieSpec]) -> "SessionContext":
        known = {(c.name, c.path, c.domain): c for c in self.cookies}
        for spec in specs:
            known[(spec.name, spec.path, spec.domain)] = spec
        return replace(self, cookies=tuple(known.values()))

    def with_session_item(self, key: str, value: str) -> "SessionContext":
        return replace(self, session_storage={**self.session_storage, key: value})

    def cleared(self) -> "SessionContext":
        return SessionContext()


def expire_cookies(context: SessionContext) -> list[str]:
    """`Set-Cookie`-style directives expiring every cookie in `context`.

    Each directive repeats the cookie's path, domain, secure and SameSite
    attributes; a mismatch would leave the original cookie in place.
    """

    directives = []
    for cookie in context.cookies:
        parts = [f"{cookie.name}=", f"expires={EXPIRED}", "Max-Age=0", f"path={cookie.path}"]
        if cookie.domain:
            parts.append(f"domain={cookie.domain}")
        if cookie.secure:
            parts.append("secure")
        if cookie.samesite:
            parts.append(f"SameSite={cookie.samesite.capitalize()}")
        directives.append("; ".join(parts))
    return directives


def cookies_from_response(response: httpx.Response) -> list[CookieSpec]:
    specs = []
    for cookie in response.cookies.jar:
        samesite = cookie.get_nonstandard_attr("SameSite") or cookie.get_nonstandard_attr("samesite")
        specs.append(
            CookieSpec(
                name=cookie.name,
                path=cookie.path or "/",
                domain=cookie.domain if cookie.domain_specified else None,
                secure=bool(cookie.secure),
                samesite=samesite,
            )
        )
    return specs


@dataclass
class ActionResult:
    """Outcome of one user action, with the notice shown to the user."""

    ok: bool
    message: str
    data: Any = None


_background_teardowns: set[asyncio.Task] = set()


def _teardown_finished(task: asyncio.Task) -> None:
    _background_teardowns.discard(task)
    if task.cancelled():
        logger.warning("session_teardown_cancelled")
    elif task.exception() is not None:
        logger.error("session_teardown_failed error=%s", task.exception())


class ReceiptPageSession:
    """One visit to the receipt page: UNINITIALIZED, CSRF_READY, ACTION_ENABLED, TORN_DOWN."""

    def __init__(self, client: httpx.AsyncClient, order_id: str | None, context: SessionContext | None = None):
        self.client = client
        self.order_id = order_id
        self.context = context or SessionContext()
        self.state = "UNINITIALIZED"
        self.csrf_token: str | None = None
        self.payment: dict[str, Any] | None = None
        self.error: str | None = None

    def _transition(self, new_state: str) -> None:
        validate_transition(self.state, new_state)
        self.state = new_state

    @property
    def email_enabled(self) -> bool:
        # Fail closed: no token, no button.
        return self.state == "ACTION_ENABLED" and bool(self.csrf_token)

    @property
    def download_enabled(self) -> bool:
        return self.state == "ACTION_ENABLED"

    async def enter(self) -> None:
        """Fetch the CSRF token, then the payment record.

        A page left while either request is in flight stays TORN_DOWN: late
        results are dropped and a session minted meanwhile is logged out.
        """

        if is_terminal(self.state):
            return
        if not self.order_id:
            self.error = "No order ID provided"
            return
        try:
            resp = await self.client.get("/api/payments/csrf-token")
            resp.raise_for_status()
            token = resp.json()["csrfToken"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.warning("csrf_token_fetch_failed order_id=%s error=%s", self.order_id, exc)
            if not is_terminal(self.state):
                self.error = "Failed to prepare the page"
            return
        if is_terminal(self.state):
            logger.info("late_csrf_session_discarded order_id=%s", self.order_id)
            await self._logout()
            return
        self.csrf_token = token
        self.context = self.context.with_cookies(cookies_from_response(resp)).with_session_item("csrfToken", token)
        self._transition("CSRF_READY")

        try:
            resp = await self.client.get(f"/api/after-payments/{self.order_id}")
            resp.raise_for_status()
            payment = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("payment_fetch_failed order_id=%s error=%s", self.order_id, exc)
            if not is_terminal(self.state):
                self.error = "Failed to fetch payment details"
            return
        if is_terminal(self.state):
            return
        self.payment = payment
        self._transition("ACTION_ENABLED")

    async def email_receipt(self) -> ActionResult:
        if not self.email_enabled:
            return ActionResult(False, "Email receipt is not available")
        try:
            resp = await self.client.post(
                f"/api/after-payments/{self.order_id}/email-receipt",
                headers={CSRF_HEADER: self.csrf_token},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("email_receipt_failed order_id=%s error=%s", self.order_id, exc)
            return ActionResult(False, "Failed to send email receipt")
        return ActionResult(True, "Receipt sent to your email!")

    async def download_receipt(self) -> ActionResult:
        """Download the PDF; a stream that stops before `%%EOF` counts as failed."""

        if not self.download_enabled:
            return ActionResult(False, "Download is not available")
        filename = f"receipt_{self.order_id}.pdf"
        try:
            async with self.client.stream("GET", f"/api/after-payments/{self.order_id}/download-receipt") as resp:
                resp.raise_for_status()
                disposition = resp.headers.get("content-disposition", "")
                body = b"".join([chunk async for chunk in resp.aiter_bytes()])
        except httpx.HTTPError as exc:
            logger.warning("download_receipt_failed order_id=%s error=%s", self.order_id, exc)
            return ActionResult(False, "Failed to download receipt")
        if not disposition.startswith("attachment") or not body.rstrip().endswith(b"%%EOF"):
            logger.warning("download_receipt_truncated order_id=%s bytes=%s", self.order_id, len(body))
            return ActionResult(False, "Failed to download receipt")
        return ActionResult(True, filename, data=body)

    async def _logout(self) -> None:
        """Best-effort `POST /api/logout`; the client cookie jar is emptied either way."""

        try:
            resp = await self.client.post("/api/logout")
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("logout_failed order_id=%s error=%s", self.order_id, exc)
        finally:
            self.client.cookies.clear()

    async def teardown(self) -> list[str]:
        """Clear storage, expire cookies, and log out on the server.

        Runs at most once; the page is TORN_DOWN before the network call, so
        nothing state-changing is possible afterwards even if logout fails.
        Returns the cookie-expiry directives that were applied.
        """

        if is_terminal(self.state):
            return []
        directives = expire_cookies(self.context)
        self.context = self.context.cleared()
        self.csrf_token = None
        self._transition("TORN_DOWN")
        await self._logout()
        logger.info("session_cleared order_id=%s cookies=%s", self.order_id, len(directives))
        return directives

    def leave(self) -> asyncio.Task:
        """Start teardown in the background; navigation does not wait for it."""

        task = asyncio.create_task(self.teardown())
        _background_teardowns.add(task)
        task.add_done_callback(_teardown_finished)
        return task
