"""Receipt email composition and delivery through the SMTP relay."""

import asyncio
import base64
import html
from email.message import EmailMessage
from email.utils import formataddr

import aiosmtplib

from tripreceipts.common.config import CommonSettings
from tripreceipts.common.errors import CredentialRefreshError, DispatchError
from tripreceipts.common.logging import logger
from tripreceipts.common.metrics import receipt_email_duration_seconds
from tripreceipts.common.tracing import traced
from tripreceipts.services.after_payment.schemas import PaymentRecord
from tripreceipts.services.mailer.credentials import CredentialStrategy, SmtpAuth
from tripreceipts.services.receipts.content import receipt_fields

GREETING = "Thank you for your payment!"
SIGN_OFF = "We look forward to serving you!"


class MailDispatcher:
    """Sends one receipt email per call over a fresh SMTP session.

    Sessions are never pooled: OAuth2 tokens are short-lived, so each send
    authenticates with whatever the credential strategy hands out right now.
    Nothing here retries; the caller decides whether a user may try again.
    """

    def __init__(
        self,
        strategy: CredentialStrategy,
        host: str,
        port: int,
        sender_address: str,
        sender_name: str = "",
        start_tls: bool = True,
        timeout_seconds: float = 15.0,
        smtp_factory=aiosmtplib.SMTP,
        service_name: str = "after-payment",
    ) -> None:
        self.strategy = strategy
        self.host = host
        self.port = port
        self.sender_address = sender_address
        self.sender_name = sender_name
        self.start_tls = start_tls
        self.timeout_seconds = timeout_seconds
        self.smtp_factory = smtp_factory
        self.service_name = service_name

    @classmethod
    def from_settings(cls, config: CommonSettings, strategy: CredentialStrategy) -> "MailDispatcher":
        return cls(
            strategy,
            host=config.mail_host,
            port=config.mail_port,
            sender_address=config.mail_sender_address or config.mail_username,
            sender_name=config.mail_sender_name,
            start_tls=config.mail_start_tls,
            timeout_seconds=config.mail_timeout_seconds,
            service_name=config.service_name,
        )

    def compose(self, record: PaymentRecord) -> EmailMessage:
        """Build the fixed-template receipt message for `record`."""

        fields = receipt_fields(record)
        text_lines = ["Payment Confirmation", "", GREETING, ""]
        text_lines += [f"{label}: {value}" for label, value in fields]
        text_lines += ["", SIGN_OFF]

        html_rows = "\n".join(
            f"<p><strong>{html.escape(label)}:</strong> {html.escape(value)}</p>" for label, value in fields
        )
        html_body = (
            "<h2>Payment Confirmation</h2>\n"
            f"<p>{GREETING}</p>\n"
            f"{html_rows}\n"
            f"<p>{SIGN_OFF}</p>\n"
        )

        message = EmailMessage()
        message["From"] = formataddr((self.sender_name, self.sender_address))
        message["To"] = str(record.customer.email)
        message["Subject"] = f"Payment Confirmation - {record.order_id}"
        message.set_content("\n".join(text_lines) + "\n")
        message.add_alternative(html_body, subtype="html")
        return message

    async def send_receipt(self, record: PaymentRecord) -> None:
        """Send exactly one receipt email or raise `DispatchError`."""

        message = self.compose(record)
        with receipt_email_duration_seconds.labels(service=self.service_name).time():
            try:
                auth = await self.strategy.get_auth()
            except CredentialRefreshError as exc:
                raise DispatchError(f"could not obtain mail credentials: {exc}", order_id=record.order_id) from exc

            smtp = self.smtp_factory(
                hostname=self.host,
                port=self.port,
                start_tls=self.start_tls,
                timeout=self.timeout_seconds,
            )
            try:
                with traced("smtp.send", host=self.host, mechanism=auth.mechanism):
                    async with smtp:
                        await self._authenticate(smtp, auth)
                        await smtp.send_message(message)
            except aiosmtplib.SMTPAuthenticationError as exc:
                self.strategy.reject(auth)
                raise DispatchError(
                    f"relay rejected credentials: {exc.code} {exc.message}",
                    order_id=record.order_id,
                    auth_rejected=True,
                ) from exc
            except aiosmtplib.SMTPException as exc:
                raise DispatchError(f"relay error: {exc}", order_id=record.order_id) from exc
            except (OSError, asyncio.TimeoutError) as exc:
                raise DispatchError(f"relay unreachable: {exc}", order_id=record.order_id) from exc

        logger.info("receipt_email_sent order_id=%s to=%s", record.order_id, message["To"])

    async def _authenticate(self, smtp, auth: SmtpAuth) -> None:
        if auth.mechanism != "XOAUTH2":
            await smtp.login(auth.username, auth.secret)
            return

        if smtp.is_ehlo_or_helo_needed:
            await smtp.ehlo()
        raw = f"user={auth.username}\x01auth=Bearer {auth.secret}\x01\x01"
        encoded = base64.b64encode(raw.encode("utf-8"))
        response = await smtp.execute_command(b"AUTH", b"XOAUTH2", encoded)
        if response.code == 334:
            # Error challenge; an empty line ends the exchange with the final status.
            response = await smtp.execute_command(b"")
        if response.code != 235:
            raise aiosmtplib.SMTPAuthenticationError(response.code, response.message)
