"""
Transports that deliver activation credentials to members.

The pipeline only relies on ``send(channel, destination, credential)`` and the
returned ``DeliveryResult``; everything about how a message actually leaves the
building lives here. ``NOTIFIER_BACKEND`` selects the implementation.
"""

from __future__ import annotations

import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Mapping

import requests
from flask import Flask, current_app

from coop_app.models.importer.schema import DeliveryChannel
from coop_app.utils.masking import mask_email, mask_phone_number

NOTIFIER_EXTENSION_KEY = "notifier"


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: str | None = None
    provider_reference: str | None = None

    @classmethod
    def ok(cls, provider_reference: str | None = None) -> "DeliveryResult":
        return cls(success=True, provider_reference=provider_reference)

    @classmethod
    def failed(cls, error: str) -> "DeliveryResult":
        return cls(success=False, error=error)


@dataclass(frozen=True)
class MessageContext:
    recipient_name: str = "Member"
    cooperative_name: str = "SVMPC"
    cooperative_phone: str = "+1-800-SVMPC-1"
    ttl_hours: int = 24

    @classmethod
    def from_config(cls, config: Mapping[str, Any], *, recipient_name: str | None = None) -> "MessageContext":
        return cls(
            recipient_name=recipient_name or "Member",
            cooperative_name=config.get("COOPERATIVE_NAME", "SVMPC"),
            cooperative_phone=config.get("COOPERATIVE_PHONE", "+1-800-SVMPC-1"),
            ttl_hours=int(config.get("ACTIVATION_TOKEN_TTL_HOURS", 24)),
        )


def format_activation_message(credential: str, context: MessageContext) -> str:
    return (
        f"Hello {context.recipient_name},\n\n"
        f"Welcome to {context.cooperative_name}! Your account has been created.\n\n"
        f"Temporary Password: {credential}\n\n"
        f"Log in with your member ID and this password within {context.ttl_hours} hours "
        "to activate your account.\n\n"
        f"Questions? Call {context.cooperative_phone}."
    )


def _masked(channel: DeliveryChannel, destination: str) -> str | None:
    if channel is DeliveryChannel.SMS:
        return mask_phone_number(destination)
    return mask_email(destination)


class Notifier:
    """Base transport. Subclasses handle one or more channels."""

    channels: tuple[DeliveryChannel, ...] = ()

    def send(
        self,
        channel: DeliveryChannel,
        destination: str,
        credential: str,
        *,
        context: MessageContext | None = None,
    ) -> DeliveryResult:
        raise NotImplementedError

    def supports(self, channel: DeliveryChannel) -> bool:
        return channel in self.channels


class LoggingNotifier(Notifier):
    """Development transport: records the delivery in the application log and reports success."""

    channels = (DeliveryChannel.SMS, DeliveryChannel.EMAIL)

    def send(self, channel, destination, credential, *, context=None):
        current_app.logger.info(
            "Activation credential delivered via log notifier",
            extra={
                "notifier_channel": channel.value,
                "notifier_destination": _masked(channel, destination),
            },
        )
        return DeliveryResult.ok()


class SmtpEmailNotifier(Notifier):
    channels = (DeliveryChannel.EMAIL,)

    def __init__(
        self,
        *,
        server: str,
        port: int = 587,
        use_tls: bool = True,
        username: str | None = None,
        password: str | None = None,
        sender: str = "noreply@example.com",
        timeout: int = 10,
    ) -> None:
        self.server = server
        self.port = port
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.sender = sender
        self.timeout = timeout

    def _build_message(self, destination: str, credential: str, context: MessageContext) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = f"Your {context.cooperative_name} account is ready"
        message["From"] = self.sender
        message["To"] = destination
        message.set_content(format_activation_message(credential, context))
        return message

    def send(self, channel, destination, credential, *, context=None):
        if channel is not DeliveryChannel.EMAIL:
            return DeliveryResult.failed(f"SMTP notifier cannot deliver over {channel.value}.")
        context = context or MessageContext()
        message = self._build_message(destination, credential, context)
        try:
            with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username and self.password:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            current_app.logger.warning(
                "SMTP delivery failed",
                extra={"notifier_channel": channel.value, "notifier_destination": mask_email(destination)},
                exc_info=True,
            )
            return DeliveryResult.failed(f"Failed to send email: {exc}")
        return DeliveryResult.ok()


class HttpSmsNotifier(Notifier):
    """Posts messages to an HTTP SMS gateway expecting ``{"to": ..., "message": ...}``."""

    channels = (DeliveryChannel.SMS,)

    def __init__(self, *, url: str, token: str | None = None, timeout: int = 10, session=None) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout
        self.http = session or requests.Session()

    def send(self, channel, destination, credential, *, context=None):
        if channel is not DeliveryChannel.SMS:
            return DeliveryResult.failed(f"SMS gateway cannot deliver over {channel.value}.")
        context = context or MessageContext()
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        payload = {"to": destination, "message": format_activation_message(credential, context)}
        try:
            response = self.http.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            current_app.logger.warning(
                "SMS gateway delivery failed",
                extra={"notifier_channel": channel.value, "notifier_destination": mask_phone_number(destination)},
                exc_info=True,
            )
            return DeliveryResult.failed(f"Failed to send SMS: {exc}")

        reference = None
        if response.headers.get("Content-Type", "").startswith("application/json"):
            # The message is already accepted; an unreadable body only loses the reference.
            try:
                body = response.json()
            except ValueError:
                body = None
                current_app.logger.warning(
                    "SMS gateway returned an unreadable JSON body",
                    extra={"notifier_channel": channel.value, "notifier_status": response.status_code},
                )
            if isinstance(body, dict):
                reference = body.get("id") or body.get("message_id")
        return DeliveryResult.ok(provider_reference=str(reference) if reference else None)


class ChannelRouterNotifier(Notifier):
    """Routes each channel to its own transport."""

    def __init__(self, routes: Mapping[DeliveryChannel, Notifier]) -> None:
        self.routes = dict(routes)
        self.channels = tuple(self.routes)

    def send(self, channel, destination, credential, *, context=None):
        notifier = self.routes.get(channel)
        if notifier is None:
            return DeliveryResult.failed(f"No notifier configured for {channel.value}.")
        return notifier.send(channel, destination, credential, context=context)


def _smtp_from_config(config: Mapping[str, Any]) -> SmtpEmailNotifier:
    return SmtpEmailNotifier(
        server=config.get("MAIL_SERVER") or "localhost",
        port=int(config.get("MAIL_PORT", 587)),
        use_tls=bool(config.get("MAIL_USE_TLS", True)),
        username=config.get("MAIL_USERNAME"),
        password=config.get("MAIL_PASSWORD"),
        sender=config.get("MAIL_FROM", "noreply@example.com"),
    )


def _sms_from_config(config: Mapping[str, Any]) -> HttpSmsNotifier:
    url = config.get("SMS_GATEWAY_URL")
    if not url:
        raise ValueError("SMS_GATEWAY_URL must be set for the SMS notifier.")
    return HttpSmsNotifier(
        url=url,
        token=config.get("SMS_GATEWAY_TOKEN"),
        timeout=int(config.get("SMS_GATEWAY_TIMEOUT_SECONDS", 10)),
    )


def build_notifier(config: Mapping[str, Any]) -> Notifier:
    """Instantiate the transport named by ``NOTIFIER_BACKEND``."""
    backend = str(config.get("NOTIFIER_BACKEND", "log")).strip().lower()
    if backend == "log":
        return LoggingNotifier()
    if backend == "smtp":
        return ChannelRouterNotifier({DeliveryChannel.EMAIL: _smtp_from_config(config)})
    if backend == "sms":
        return ChannelRouterNotifier({DeliveryChannel.SMS: _sms_from_config(config)})
    if backend == "router":
        return ChannelRouterNotifier(
            {
                DeliveryChannel.SMS: _sms_from_config(config),
                DeliveryChannel.EMAIL: _smtp_from_config(config),
            }
        )
    raise ValueError(f"Unknown NOTIFIER_BACKEND '{backend}'.")


def get_notifier(app: Flask | None = None) -> Notifier:
    """Return the app's notifier, building it from configuration on first use."""
    app = app or current_app._get_current_object()
    notifier = app.extensions.get(NOTIFIER_EXTENSION_KEY)
    if notifier is None:
        notifier = build_notifier(app.config)
        app.extensions[NOTIFIER_EXTENSION_KEY] = notifier
    return notifier


def set_notifier(app: Flask, notifier: Notifier) -> None:
    app.extensions[NOTIFIER_EXTENSION_KEY] = notifier
