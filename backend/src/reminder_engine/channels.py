from __future__ import annotations

import logging
import re
import smtplib
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import make_msgid
from time import monotonic
from typing import Literal, Protocol

from .config import Settings
from .errors import PermanentChannelError, TransientChannelError, UnknownChannelError
from .models import KNOWN_CHANNELS
from .rules import Rule

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["sent", "transient_failure", "permanent_failure"]

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class DeliveryContext:
    subject_id: int
    subject_title: str
    owner_id: int
    due_at: datetime | None
    attempt: int = 1


@dataclass(frozen=True)
class ChannelOutcome:
    status: OutcomeStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    reason: str | None = None
    metadata: dict[str, object] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "sent"

    @classmethod
    def sent(cls, provider_message_id: str | None = None, **metadata: object) -> ChannelOutcome:
        return cls(
            status="sent",
            attempted_at=datetime.now(timezone.utc),
            provider_message_id=provider_message_id,
            metadata=dict(metadata),
        )

    @classmethod
    def transient(cls, error_code: str, reason: str) -> ChannelOutcome:
        return cls(
            status="transient_failure",
            attempted_at=datetime.now(timezone.utc),
            error_code=error_code,
            reason=reason,
        )

    @classmethod
    def permanent(cls, error_code: str, reason: str) -> ChannelOutcome:
        return cls(
            status="permanent_failure",
            attempted_at=datetime.now(timezone.utc),
            error_code=error_code,
            reason=reason,
        )


class ChannelHandler(Protocol):
    channel: str

    def send(self, recipient: str | None, context: DeliveryContext, rule: Rule) -> ChannelOutcome: ...


def render_reminder(context: DeliveryContext) -> tuple[str, str]:
    title = context.subject_title or f"Task #{context.subject_id}"
    if context.due_at is None:
        return f"Reminder: {title}", f"This is a reminder about \"{title}\"."
    due = context.due_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    return f"Reminder: {title}", f"\"{title}\" is due at {due}."


class EmailTransport(Protocol):
    def deliver(self, *, to_address: str, subject: str, body: str) -> str | None: ...


class StubEmailTransport:
    """Records messages instead of sending them."""

    def __init__(self) -> None:
        self.outbox: list[dict[str, str]] = []

    def deliver(self, *, to_address: str, subject: str, body: str) -> str | None:
        self.outbox.append({"to": to_address, "subject": subject, "body": body})
        return f"stub-email-{len(self.outbox)}"


class SmtpEmailTransport:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        from_address: str,
        username: str = "",
        password: str = "",
        starttls: bool = True,
        timeout_seconds: int = 15,
    ) -> None:
        if not host.strip():
            raise ValueError("SMTP host must not be empty")
        if not from_address.strip():
            raise ValueError("SMTP from address must not be empty")
        self._host = host.strip()
        self._port = port
        self._from_address = from_address.strip()
        self._username = username
        self._password = password
        self._starttls = starttls
        self._timeout_seconds = timeout_seconds

    def deliver(self, *, to_address: str, subject: str, body: str) -> str | None:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self._from_address
        message["To"] = to_address
        message["Message-ID"] = make_msgid(domain=self._from_address.rsplit("@", 1)[-1])
        message.set_content(body)
        deadline = monotonic() + self._timeout_seconds
        try:
            with smtplib.SMTP(host=self._host, port=self._port, timeout=self._timeout_seconds) as client:
                _bound_to_deadline(client, deadline)
                client.ehlo()
                if self._starttls:
                    _bound_to_deadline(client, deadline)
                    client.starttls()
                    _bound_to_deadline(client, deadline)
                    client.ehlo()
                if self._username:
                    _bound_to_deadline(client, deadline)
                    client.login(self._username, self._password)
                _bound_to_deadline(client, deadline)
                client.send_message(message)
        except smtplib.SMTPRecipientsRefused as exc:
            raise PermanentChannelError("recipient_refused", "SMTP server refused the recipient") from exc
        except smtplib.SMTPAuthenticationError as exc:
            raise PermanentChannelError("smtp_auth_failed", f"SMTP authentication failed: {exc.smtp_code}") from exc
        except smtplib.SMTPResponseException as exc:
            if 500 <= exc.smtp_code < 600:
                raise PermanentChannelError(f"smtp_{exc.smtp_code}", f"SMTP {exc.smtp_code}") from exc
            raise TransientChannelError(f"smtp_{exc.smtp_code}", f"SMTP {exc.smtp_code}") from exc
        except (smtplib.SMTPException, socket.timeout, TimeoutError, OSError) as exc:
            raise TransientChannelError("smtp_unavailable", f"SMTP delivery failed: {exc.__class__.__name__}") from exc
        return message.get("Message-ID")


def _bound_to_deadline(client: smtplib.SMTP, deadline: float) -> None:
    # timeout_seconds caps the whole conversation, not each socket read.
    remaining = deadline - monotonic()
    if remaining <= 0:
        raise TransientChannelError("smtp_timeout", "SMTP delivery exceeded its deadline")
    if client.sock is not None:
        client.sock.settimeout(remaining)


class EmailChannelHandler:
    channel = "email"

    def __init__(self, transport: EmailTransport) -> None:
        self._transport = transport

    def send(self, recipient: str | None, context: DeliveryContext, rule: Rule) -> ChannelOutcome:
        address = (recipient or "").strip()
        if not address or not _EMAIL_PATTERN.match(address):
            return ChannelOutcome.permanent("invalid_recipient", "Owner has no valid email address")
        subject, body = render_reminder(context)
        try:
            message_id = self._transport.deliver(to_address=address, subject=subject, body=body)
        except TransientChannelError as exc:
            return ChannelOutcome.transient(exc.error_code, exc.message)
        except PermanentChannelError as exc:
            return ChannelOutcome.permanent(exc.error_code, exc.message)
        return ChannelOutcome.sent(message_id, recipient=mask_recipient(address, self.channel))


class StubChannelHandler:
    """Structurally complete channel that accepts sends without a transport."""

    def __init__(self, channel: str, *, enabled: bool) -> None:
        self.channel = channel
        self._enabled = enabled
        self.sent: list[tuple[str, int]] = []

    def send(self, recipient: str | None, context: DeliveryContext, rule: Rule) -> ChannelOutcome:
        if not self._enabled:
            return ChannelOutcome.permanent("channel_disabled", f"{self.channel} delivery is disabled")
        if not recipient:
            return ChannelOutcome.permanent("missing_recipient", f"Owner has no {self.channel} recipient")
        self.sent.append((recipient, rule.id))
        return ChannelOutcome.sent(
            f"stub-{self.channel}-{rule.id}-{len(self.sent)}",
            recipient=mask_recipient(recipient, self.channel),
        )


class ChannelRegistry:
    def __init__(self, handlers: dict[str, ChannelHandler]) -> None:
        unknown = sorted(set(handlers) - set(KNOWN_CHANNELS))
        if unknown:
            raise UnknownChannelError(unknown[0])
        self._handlers = dict(handlers)

    def resolve(self, channel: str) -> ChannelHandler:
        handler = self._handlers.get(channel)
        if handler is None:
            raise UnknownChannelError(channel)
        return handler

    def channels(self) -> tuple[str, ...]:
        return tuple(sorted(self._handlers))


def build_email_transport(settings: Settings) -> EmailTransport:
    if settings.email_transport == "smtp":
        return SmtpEmailTransport(
            host=settings.smtp_host,
            port=settings.smtp_port,
            from_address=settings.smtp_from,
            username=settings.smtp_username,
            password=settings.smtp_password,
            starttls=settings.smtp_starttls,
            timeout_seconds=settings.smtp_timeout_seconds,
        )
    return StubEmailTransport()


def build_channel_registry(settings: Settings, *, email_transport: EmailTransport | None = None) -> ChannelRegistry:
    transport = email_transport or build_email_transport(settings)
    handlers: dict[str, ChannelHandler] = {"email": EmailChannelHandler(transport)}
    for channel in ("sms", "push", "in_app"):
        handlers[channel] = StubChannelHandler(channel, enabled=settings.stub_channels_enabled)
    logger.info(
        "channel registry built email_transport=%s channels=%s",
        settings.email_transport,
        ",".join(sorted(handlers)),
    )
    return ChannelRegistry(handlers)


def mask_recipient(recipient: str, channel: str) -> str:
    normalized = recipient.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel == "sms":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
