#!/usr/bin/env python3
"""
Channel Sinks

Pluggable transports the delivery workers hand rendered messages to. A sink
never raises for delivery problems; it returns a SinkResult whose error is
already classified:

- TransientDeliveryError: timeouts, connection errors, 5xx, rate limits
- PermanentDeliveryError: invalid recipient, any other 4xx

Usage:
    registry = SinkRegistry.default()
    sink = registry.get(Channel.EMAIL)
    result = sink.deliver(message, 'user@example.com')
"""

import importlib
import ipaddress
import logging
import os
import smtplib
import socket
import urllib.parse
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from notification.exceptions import (
    DeliveryError,
    PermanentDeliveryError,
    RateLimitException,
    TransientDeliveryError,
)
from notification.models import Channel, RenderedMessage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30


@dataclass
class SinkResult:
    """Outcome of one transport call: (ok, error, retry_after hint)."""
    ok: bool
    error: Optional[DeliveryError] = None
    retry_after: Optional[float] = None

    @classmethod
    def success(cls) -> "SinkResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: DeliveryError) -> "SinkResult":
        return cls(ok=False, error=error, retry_after=getattr(error, 'retry_after', None))


def _is_dry_run_mode() -> bool:
    """Check if sinks should run in dry-run (log-only) mode."""
    return os.environ.get('NOTIFICATION_DRY_RUN', '').lower() in ('true', '1', 'yes')


def _mask_email(email: str) -> str:
    """
    Mask email address for safe logging (PII protection).

    Shows only domain, e.g., "***@example.com"
    """
    if '@' not in email:
        return "***"
    local, domain = email.rsplit('@', 1)
    return f"***@{domain}"


def _safe_url(url: str) -> str:
    """URL without credentials, query or fragment, for logs and stored errors."""
    try:
        parsed = urllib.parse.urlparse(url)
        return f"{parsed.scheme}://{parsed.hostname}{parsed.path}"
    except ValueError:
        return "<unparseable url>"


def _validate_webhook_url(url: str) -> Optional[DeliveryError]:
    """
    Validate webhook URL to prevent SSRF attacks.

    Checks:
    - Scheme is http or https
    - Hostname resolves to public IP (not private/loopback)

    Returns None when the URL is safe to call. An invalid or private target
    is a PermanentDeliveryError; a failed DNS lookup is transient.
    """
    safe = _safe_url(url)
    try:
        parsed = urllib.parse.urlparse(url)

        if parsed.scheme not in ('http', 'https'):
            logger.error(f"Invalid URL scheme: {parsed.scheme}")
            return PermanentDeliveryError(f"Invalid webhook URL scheme: {safe}")

        if not parsed.hostname:
            logger.error("URL missing hostname")
            return PermanentDeliveryError(f"Webhook URL missing hostname: {safe}")

        try:
            addrinfo = socket.getaddrinfo(parsed.hostname, None)
        except socket.gaierror as e:
            logger.warning(f"Could not resolve hostname: {parsed.hostname}")
            return TransientDeliveryError(f"Could not resolve webhook host {parsed.hostname}: {e}")

        for _, _, _, _, sockaddr in addrinfo:
            ip = ipaddress.ip_address(sockaddr[0])
            if ip.is_private or ip.is_loopback or ip.is_reserved or ip.is_link_local:
                logger.error(f"URL resolves to private/reserved IP: {ip}")
                return PermanentDeliveryError(f"Webhook URL resolves to a private address: {safe}")

        return None
    except ValueError as e:
        logger.error(f"URL validation error: {e}")
        return PermanentDeliveryError(f"Invalid webhook URL: {safe}")


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def classify_http_status(status_code: int, detail: str = "", retry_after: Optional[float] = None) -> DeliveryError:
    """Map an HTTP error status to a transient or permanent delivery error."""
    message = f"HTTP {status_code}" + (f": {detail[:200]}" if detail else "")
    if status_code == 429:
        return RateLimitException(message, retry_after=retry_after)
    if status_code >= 500 or status_code == 408:
        return TransientDeliveryError(message, status_code=status_code, retry_after=retry_after)
    return PermanentDeliveryError(message, status_code=status_code)


def _redact_url(text: str, url: Optional[str]) -> str:
    """Strip the credentials and query of `url` from an error message."""
    if not url:
        return text
    try:
        parsed = urllib.parse.urlparse(url)
    except ValueError:
        return text.replace(url, "***")
    text = text.replace(url, _safe_url(url))
    for secret in (parsed.query, parsed.fragment, parsed.password, parsed.username):
        if secret:
            text = text.replace(secret, "***")
    return text


def classify_request_exception(exc: requests.RequestException, url: Optional[str] = None) -> DeliveryError:
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return TransientDeliveryError(_redact_url(f"{type(exc).__name__}: {exc}", url))
    response = getattr(exc, 'response', None)
    if response is not None:
        return classify_http_status(
            response.status_code, response.text, parse_retry_after(response.headers.get('Retry-After'))
        )
    return TransientDeliveryError(_redact_url(f"{type(exc).__name__}: {exc}", url))


class ChannelSink(ABC):
    """
    Abstract base class for all channel transports.

    Any sink can be swapped for another implementing the same channel.
    """

    @property
    @abstractmethod
    def channel(self) -> Channel:
        """Return the channel this sink delivers to."""
        pass

    @abstractmethod
    def deliver(self, message: RenderedMessage, address: str) -> SinkResult:
        """
        Deliver a rendered message to a destination address.

        Args:
            message: Rendered subject/body for this channel
            address: Destination (email, phone number, device token, URL, user id)

        Returns:
            SinkResult with a classified error on failure
        """
        pass

    def validate_config(self) -> bool:
        return True


class EmailSink(ChannelSink):
    """Email delivery via SMTP."""

    def __init__(
        self,
        smtp_server: Optional[str] = None,
        smtp_port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_email: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS
    ):
        self.smtp_server = smtp_server or os.environ.get('SMTP_SERVER', '')
        self.smtp_port = int(smtp_port or os.environ.get('SMTP_PORT', '587'))
        self.username = username or os.environ.get('SMTP_USERNAME', '')
        self.password = password or os.environ.get('SMTP_PASSWORD', '')
        self.from_email = from_email or os.environ.get('FROM_EMAIL', 'noreply@example.com')
        self.timeout = timeout

    @property
    def channel(self) -> Channel:
        return Channel.EMAIL

    def validate_config(self) -> bool:
        return all([self.smtp_server, self.smtp_port, self.username, self.password])

    def _build_message(self, message: RenderedMessage, address: str) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg['From'] = self.from_email
        msg['To'] = address
        msg['Subject'] = message.subject
        subtype = 'html' if message.metadata.get('html') else 'plain'
        msg.attach(MIMEText(message.body, subtype, 'utf-8'))
        return msg

    def deliver(self, message: RenderedMessage, address: str) -> SinkResult:
        if '@' not in address:
            return SinkResult.failure(PermanentDeliveryError(f"Invalid email address: {_mask_email(address)}"))

        if _is_dry_run_mode():
            logger.info(f"[DRY RUN] Email to {_mask_email(address)}: {message.subject}")
            return SinkResult.success()

        if not self.validate_config():
            return SinkResult.failure(PermanentDeliveryError("Email not configured - SMTP settings missing"))

        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
                server.starttls()
                server.login(self.username, self.password)
                server.send_message(self._build_message(message, address))
        except smtplib.SMTPRecipientsRefused as e:
            return SinkResult.failure(PermanentDeliveryError(f"Recipient refused: {e.recipients}"))
        except smtplib.SMTPAuthenticationError as e:
            return SinkResult.failure(PermanentDeliveryError(f"SMTP authentication failed: {e.smtp_code}"))
        except smtplib.SMTPResponseException as e:
            # SMTP 4xx replies are temporary, 5xx are permanent
            if 400 <= e.smtp_code < 500:
                return SinkResult.failure(TransientDeliveryError(f"SMTP {e.smtp_code}", status_code=e.smtp_code))
            return SinkResult.failure(PermanentDeliveryError(f"SMTP {e.smtp_code}", status_code=e.smtp_code))
        except (smtplib.SMTPException, OSError) as e:
            return SinkResult.failure(TransientDeliveryError(f"SMTP transport error: {e}"))

        logger.info(f"Email sent to {_mask_email(address)}")
        return SinkResult.success()


class HttpSink(ChannelSink):
    """Shared HTTP POST handling for webhook and gateway sinks."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS, headers: Optional[Dict[str, str]] = None):
        self.timeout = timeout
        self.headers = {
            'Content-Type': 'application/json',
            'User-Agent': 'Notification-Distribution-Engine/1.0',
        }
        self.headers.update(headers or {})

    def _post(self, url: str, payload: Dict[str, Any]) -> SinkResult:
        try:
            response = requests.post(url, json=payload, headers=self.headers, timeout=self.timeout)
        except requests.RequestException as e:
            return SinkResult.failure(classify_request_exception(e, url))

        if response.status_code >= 400:
            error = classify_http_status(
                response.status_code,
                response.text,
                parse_retry_after(response.headers.get('Retry-After')),
            )
            logger.warning(f"{self.channel.value} POST to {_safe_url(url)} failed: {error}")
            return SinkResult.failure(error)

        return SinkResult.success()


class WebhookSink(HttpSink):
    """Generic webhook: the destination address is the URL itself."""

    @property
    def channel(self) -> Channel:
        return Channel.WEBHOOK

    def deliver(self, message: RenderedMessage, address: str) -> SinkResult:
        url_error = _validate_webhook_url(address)
        if url_error is not None:
            return SinkResult.failure(url_error)

        payload = {
            'subject': message.subject,
            'body': message.body,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'metadata': message.metadata,
        }
        if _is_dry_run_mode():
            logger.info(f"[DRY RUN] Webhook to {_safe_url(address)}: {message.subject}")
            return SinkResult.success()

        result = self._post(address, payload)
        if result.ok:
            logger.info(f"Webhook sent to {_safe_url(address)}")
        return result


class GatewaySink(HttpSink):
    """
    Push or SMS delivery through an HTTP gateway.

    The gateway receives {"to": address, "title": ..., "body": ...}. An API
    key, if set, is sent as a bearer token.
    """

    def __init__(
        self,
        channel: Channel,
        gateway_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS
    ):
        env_prefix = channel.value.upper()
        self._channel = channel
        self.gateway_url = gateway_url or os.environ.get(f'{env_prefix}_GATEWAY_URL', '')
        api_key = api_key or os.environ.get(f'{env_prefix}_GATEWAY_API_KEY', '')
        headers = {'Authorization': f'Bearer {api_key}'} if api_key else None
        super().__init__(timeout=timeout, headers=headers)

    @property
    def channel(self) -> Channel:
        return self._channel

    def validate_config(self) -> bool:
        return bool(self.gateway_url)

    def deliver(self, message: RenderedMessage, address: str) -> SinkResult:
        if not address:
            return SinkResult.failure(PermanentDeliveryError(f"Missing {self._channel.value} destination"))

        if _is_dry_run_mode():
            logger.info(f"[DRY RUN] {self._channel.value} to {address[:4]}***: {message.subject}")
            return SinkResult.success()

        if not self.validate_config():
            return SinkResult.failure(
                PermanentDeliveryError(f"{self._channel.value} gateway not configured")
            )

        payload = {'to': address, 'title': message.subject, 'body': message.body}
        result = self._post(self.gateway_url, payload)
        if result.ok:
            logger.info(f"{self._channel.value} message sent via gateway")
        return result


class InAppSink(ChannelSink):
    """
    Real-time in-app delivery.

    The notification is already in the store; this sink only pushes it to a
    live connection through `publish` if one is configured.
    """

    def __init__(self, publish: Optional[Callable[[str, RenderedMessage], None]] = None):
        self.publish = publish

    @property
    def channel(self) -> Channel:
        return Channel.IN_APP

    def deliver(self, message: RenderedMessage, address: str) -> SinkResult:
        if self.publish is not None:
            try:
                self.publish(address, message)
            except (ConnectionError, TimeoutError) as e:
                return SinkResult.failure(TransientDeliveryError(f"In-app publish failed: {e}"))
        logger.info(f"[IN_APP] User: {address}, Title: {message.subject}")
        return SinkResult.success()


class SinkRegistry:
    """
    Holds one sink per channel.

    Custom sinks can be registered in code or loaded from
    "package.module:ClassName" paths (config ``sinks.custom`` or the
    NOTIFICATION_SINK_MODULES environment variable, comma-separated).
    """

    def __init__(self, sinks: Optional[List[ChannelSink]] = None):
        self._sinks: Dict[Channel, ChannelSink] = {}
        for sink in sinks or []:
            self.register(sink)

    @classmethod
    def default(cls) -> "SinkRegistry":
        return cls([
            InAppSink(),
            EmailSink(),
            GatewaySink(Channel.PUSH),
            GatewaySink(Channel.SMS),
            WebhookSink(),
        ])

    def register(self, sink: ChannelSink) -> None:
        if not isinstance(sink, ChannelSink):
            raise ValueError("Sink must extend ChannelSink")
        self._sinks[sink.channel] = sink
        logger.info(f"Registered {type(sink).__name__} for channel {sink.channel.value}")

    def load_from_module(self, module_path: str) -> ChannelSink:
        """Instantiate and register a sink class given as "module:ClassName"."""
        if ':' not in module_path:
            raise ValueError(f"Sink path must look like 'package.module:ClassName', got {module_path}")
        module_name, class_name = module_path.split(':', 1)
        module = importlib.import_module(module_name)
        sink_class = getattr(module, class_name)
        if not (isinstance(sink_class, type) and issubclass(sink_class, ChannelSink)):
            raise ValueError(f"{module_path} is not a ChannelSink subclass")
        sink = sink_class()
        self.register(sink)
        return sink

    def load_from_environment(self) -> None:
        for module_path in os.environ.get('NOTIFICATION_SINK_MODULES', '').split(','):
            module_path = module_path.strip()
            if module_path:
                self.load_from_module(module_path)

    def get(self, channel: Channel) -> ChannelSink:
        sink = self._sinks.get(channel)
        if sink is None:
            raise ValueError(f"No sink registered for channel: {channel.value}. "
                             f"Available: {', '.join(c.value for c in self._sinks)}")
        return sink

    def has(self, channel: Channel) -> bool:
        return channel in self._sinks

    def channels(self) -> List[Channel]:
        return list(self._sinks)
