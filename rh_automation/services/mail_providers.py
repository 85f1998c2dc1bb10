"""Mail-Provider-Adapter - Ein Adapter pro ``MailProviderType``.

Jeder Adapter bekommt die aufgeloeste Konfiguration und die fertig
gerenderte Nachricht und gibt die Provider-Message-ID zurueck. Fehler
werden als ``ProviderTransportError`` mit ``transient`` klassifiziert:

- transient: Netzwerk, Timeout, Rate-Limit, 5xx → Retry im Gateway
- permanent: Auth, ungueltiger Empfaenger, kaputte Nachricht → kein Retry

Provider:
- smtp: aiosmtplib (implizites TLS oder STARTTLS)
- sendgrid / mailgun: REST via httpx
- supabase: Auth-Admin-API (nur Einladungen, eine Anfrage pro Empfaenger)
- aws_ses: boto3 im Worker-Thread
"""

import asyncio
import logging
import re
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

import aiosmtplib
import boto3
import httpx
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from rh_automation.config import limits, settings
from rh_automation.models import MailConfiguration, MailProviderType
from rh_automation.services.automation_errors import ProviderTransportError

logger = logging.getLogger(__name__)

# SES-Fehlercodes, bei denen ein Retry sinnvoll ist
SES_TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "InternalFailure",
    "RequestTimeout",
})

_TAG_PATTERN = re.compile(r"<[^>]+>")


def html_to_text(html_content: str) -> str:
    """Grober Text-Fallback, wenn das Template keinen Text-Teil hat."""
    text = re.sub(r"<br\s*/?>|</p>|</div>|</h\d>", "\n", html_content, flags=re.IGNORECASE)
    text = _TAG_PATTERN.sub("", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


@dataclass(frozen=True)
class ResolvedMailConfiguration:
    """Zugangsdaten einer MailConfiguration, unabhaengig von der Session."""

    id: uuid.UUID | None
    provider_type: MailProviderType
    from_email: str
    from_name: str
    smtp_host: str | None = None
    smtp_port: int | None = None
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_secure: bool = True
    smtp_require_tls: bool = False
    api_key: str | None = None
    api_secret: str | None = None

    @classmethod
    def from_model(cls, config: MailConfiguration) -> "ResolvedMailConfiguration":
        return cls(
            id=config.id,
            provider_type=MailProviderType(config.provider_type),
            from_email=config.from_email or settings.default_from_email,
            from_name=config.from_name or settings.default_from_name,
            smtp_host=config.smtp_host,
            smtp_port=config.smtp_port,
            smtp_user=config.smtp_user,
            smtp_password=config.smtp_password,
            smtp_secure=bool(config.smtp_secure),
            smtp_require_tls=bool(config.smtp_require_tls),
            api_key=config.api_key,
            api_secret=config.api_secret,
        )

    @property
    def sender(self) -> str:
        return formataddr((self.from_name, self.from_email))

    def __repr__(self) -> str:
        # Keine Zugangsdaten in Logs
        return f"<ResolvedMailConfiguration(id={self.id}, provider={self.provider_type.value})>"


@dataclass(frozen=True)
class OutgoingMessage:
    """Gerenderte Nachricht. ``message_id`` bleibt ueber alle Retries gleich."""

    recipients: tuple[str, ...]
    subject: str
    html: str
    text: str | None = None
    message_id: str = field(default_factory=lambda: make_msgid(domain="rh-analytics.com"))

    @property
    def text_body(self) -> str:
        return self.text if self.text else html_to_text(self.html)


class MailProviderAdapter(ABC):
    """Basis fuer alle Provider."""

    provider_type: MailProviderType

    @abstractmethod
    async def send(self, config: ResolvedMailConfiguration, message: OutgoingMessage) -> str:
        """Sendet die Nachricht. Gibt die Provider-Message-ID zurueck.

        Raises:
            ProviderTransportError: transient oder permanent
        """

    def _permanent(self, message: str) -> ProviderTransportError:
        return ProviderTransportError(message, transient=False, provider=self.provider_type.value)

    def _transient(self, message: str) -> ProviderTransportError:
        return ProviderTransportError(message, transient=True, provider=self.provider_type.value)


# ==================== SMTP ====================


class SmtpAdapter(MailProviderAdapter):
    """Versand via SMTP (aiosmtplib)."""

    provider_type = MailProviderType.SMTP

    def build_message(self, config: ResolvedMailConfiguration, message: OutgoingMessage) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = config.sender
        msg["To"] = ", ".join(message.recipients)
        msg["Subject"] = message.subject
        msg["Message-ID"] = message.message_id
        msg.set_content(message.text_body)
        msg.add_alternative(message.html, subtype="html")
        return msg

    async def send(self, config: ResolvedMailConfiguration, message: OutgoingMessage) -> str:
        if not config.smtp_host:
            raise self._permanent("SMTP-Host nicht konfiguriert")

        msg = self.build_message(config, message)
        port = config.smtp_port or (465 if config.smtp_secure else 587)

        try:
            refused, _ = await aiosmtplib.send(
                msg,
                hostname=config.smtp_host,
                port=port,
                username=config.smtp_user or None,
                password=config.smtp_password or None,
                use_tls=config.smtp_secure,
                start_tls=True if (config.smtp_require_tls and not config.smtp_secure) else None,
                timeout=limits.TIMEOUT_SMTP,
            )
        except aiosmtplib.SMTPAuthenticationError as e:
            raise self._permanent(f"SMTP-Authentifizierung fehlgeschlagen: {e}") from e
        except (aiosmtplib.SMTPRecipientsRefused, aiosmtplib.SMTPSenderRefused) as e:
            raise self._permanent(f"SMTP hat Absender/Empfaenger abgelehnt: {e}") from e
        except (
            aiosmtplib.SMTPConnectError,
            aiosmtplib.SMTPTimeoutError,
            aiosmtplib.SMTPServerDisconnected,
        ) as e:
            raise self._transient(f"SMTP-Verbindung fehlgeschlagen: {e}") from e
        except aiosmtplib.SMTPResponseException as e:
            # 4xx = voruebergehend, 5xx = endgueltig
            if 400 <= e.code < 500:
                raise self._transient(f"SMTP {e.code}: {e.message}") from e
            raise self._permanent(f"SMTP {e.code}: {e.message}") from e
        except aiosmtplib.SMTPException as e:
            raise self._permanent(f"SMTP-Fehler: {e}") from e
        except OSError as e:
            raise self._transient(f"SMTP-Netzwerkfehler: {e}") from e

        if refused:
            # Teilweise abgelehnt: Zustellung an die uebrigen Empfaenger steht
            logger.warning(
                f"SMTP: {len(refused)} von {len(message.recipients)} Empfaengern abgelehnt: "
                f"{', '.join(sorted(refused))}"
            )
        logger.info(f"SMTP: {message.subject!r} an {len(message.recipients)} Empfaenger via {config.smtp_host}")
        return message.message_id


# ==================== HTTP-Provider ====================


class _HttpAdapter(MailProviderAdapter):
    """Gemeinsame Fehlerbehandlung fuer REST-Provider."""

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=limits.TIMEOUT_HTTP_PROVIDER) as client:
                response = await client.post(url, **kwargs)
        except httpx.TimeoutException as e:
            raise self._transient(f"{self.provider_type.value}: Timeout ({e})") from e
        except httpx.TransportError as e:
            raise self._transient(f"{self.provider_type.value}: Netzwerkfehler ({e})") from e

        if response.status_code >= 400:
            raise ProviderTransportError.from_status(
                self.provider_type.value,
                response.status_code,
                response.text[:300],
            )
        return response


class SendGridAdapter(_HttpAdapter):
    """SendGrid v3 Mail Send API."""

    provider_type = MailProviderType.SENDGRID

    def build_payload(self, config: ResolvedMailConfiguration, message: OutgoingMessage) -> dict:
        return {
            "personalizations": [{"to": [{"email": r} for r in message.recipients]}],
            "from": {"email": config.from_email, "name": config.from_name},
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text_body},
                {"type": "text/html", "value": message.html},
            ],
            # Message-ID ist bei SendGrid reserviert, daher als Custom-Arg
            "custom_args": {"message_id": message.message_id},
        }

    async def send(self, config: ResolvedMailConfiguration, message: OutgoingMessage) -> str:
        if not config.api_key:
            raise self._permanent("SendGrid API-Key fehlt")

        response = await self._post(
            f"{settings.sendgrid_base_url.rstrip('/')}/v3/mail/send",
            json=self.build_payload(config, message),
            headers={"Authorization": f"Bearer {config.api_key}"},
        )
        provider_id = response.headers.get("X-Message-Id") or message.message_id
        logger.info(f"SendGrid: {message.subject!r} angenommen ({provider_id})")
        return provider_id


class MailgunAdapter(_HttpAdapter):
    """Mailgun Messages API. ``api_secret`` enthaelt die Sending-Domain."""

    provider_type = MailProviderType.MAILGUN

    def sending_domain(self, config: ResolvedMailConfiguration) -> str:
        if config.api_secret:
            return config.api_secret
        return config.from_email.split("@", 1)[-1]

    async def send(self, config: ResolvedMailConfiguration, message: OutgoingMessage) -> str:
        if not config.api_key:
            raise self._permanent("Mailgun API-Key fehlt")

        domain = self.sending_domain(config)
        response = await self._post(
            f"{settings.mailgun_base_url.rstrip('/')}/v3/{domain}/messages",
            auth=("api", config.api_key),
            data={
                "from": config.sender,
                "to": list(message.recipients),
                "subject": message.subject,
                "html": message.html,
                "text": message.text_body,
                "h:Message-Id": message.message_id,
            },
        )
        try:
            provider_id = response.json().get("id") or message.message_id
        except ValueError:
            provider_id = message.message_id
        logger.info(f"Mailgun: {message.subject!r} angenommen ({provider_id})")
        return provider_id


class SupabaseAdapter(_HttpAdapter):
    """Supabase Auth-Admin ``/invite``.

    Supabase versendet nur Konto-Mails; Betreff und Inhalt werden als
    Metadaten fuer das Supabase-Template mitgegeben. Bereits eingeladene
    Empfaenger werden pro Message-ID gemerkt, damit ein Retry nach einem
    Teilfehler niemanden doppelt einlaedt.
    """

    provider_type = MailProviderType.SUPABASE

    # Obergrenze offener Teil-Zustellungen
    MAX_PENDING_MESSAGES = 1000

    def __init__(self) -> None:
        self._accepted: OrderedDict[str, set[str]] = OrderedDict()

    def accepted_recipients(self, message_id: str) -> frozenset[str]:
        return frozenset(self._accepted.get(message_id, ()))

    def _remember(self, message_id: str, recipient: str) -> None:
        self._accepted.setdefault(message_id, set()).add(recipient)
        self._accepted.move_to_end(message_id)
        while len(self._accepted) > self.MAX_PENDING_MESSAGES:
            self._accepted.popitem(last=False)

    async def send(self, config: ResolvedMailConfiguration, message: OutgoingMessage) -> str:
        service_key = config.api_key or settings.supabase_service_key
        if not settings.supabase_url or not service_key:
            raise self._permanent("Supabase nicht konfiguriert (URL oder Service-Key fehlt)")

        url = f"{settings.supabase_url.rstrip('/')}/auth/v1/invite"
        headers = {"apikey": service_key, "Authorization": f"Bearer {service_key}"}
        already = self.accepted_recipients(message.message_id)
        if already:
            logger.info(f"Supabase: {len(already)} Empfaenger bereits eingeladen ({message.message_id})")

        for recipient in message.recipients:
            if recipient in already:
                continue
            await self._post(
                url,
                headers=headers,
                json={
                    "email": recipient,
                    "data": {
                        "custom_subject": message.subject,
                        "custom_content": message.html,
                        "is_custom_email": True,
                        "message_id": message.message_id,
                    },
                },
            )
            self._remember(message.message_id, recipient)

        self._accepted.pop(message.message_id, None)
        logger.info(f"Supabase: Einladung an {len(message.recipients)} Empfaenger gesendet")
        return message.message_id


# ==================== AWS SES ====================


class AwsSesAdapter(MailProviderAdapter):
    """AWS SES ``SendEmail``. ``api_key``/``api_secret`` = Access-Key/Secret."""

    provider_type = MailProviderType.AWS_SES

    def _client(self, config: ResolvedMailConfiguration):
        return boto3.client(
            "ses",
            region_name=settings.aws_ses_region,
            aws_access_key_id=config.api_key or None,
            aws_secret_access_key=config.api_secret or None,
            config=Config(
                # Retries macht das Gateway, nicht botocore
                retries={"max_attempts": 1, "mode": "standard"},
                connect_timeout=limits.TIMEOUT_HTTP_PROVIDER,
                read_timeout=limits.TIMEOUT_HTTP_PROVIDER,
            ),
        )

    def _send_sync(self, config: ResolvedMailConfiguration, message: OutgoingMessage) -> str:
        client = self._client(config)
        response = client.send_email(
            Source=config.sender,
            Destination={"ToAddresses": list(message.recipients)},
            Message={
                "Subject": {"Data": message.subject, "Charset": "UTF-8"},
                "Body": {
                    "Html": {"Data": message.html, "Charset": "UTF-8"},
                    "Text": {"Data": message.text_body, "Charset": "UTF-8"},
                },
            },
        )
        return response["MessageId"]

    async def send(self, config: ResolvedMailConfiguration, message: OutgoingMessage) -> str:
        try:
            provider_id = await asyncio.to_thread(self._send_sync, config, message)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in SES_TRANSIENT_CODES:
                raise self._transient(f"SES {code}: {e}") from e
            raise self._permanent(f"SES {code}: {e}") from e
        except NoCredentialsError as e:
            raise self._permanent(f"SES Zugangsdaten fehlen: {e}") from e
        except BotoCoreError as e:
            # Verbindungs-/Timeout-Fehler
            raise self._transient(f"SES nicht erreichbar: {e}") from e

        logger.info(f"SES: {message.subject!r} angenommen ({provider_id})")
        return provider_id


def default_adapters() -> dict[MailProviderType, MailProviderAdapter]:
    """Alle eingebauten Adapter, nach Provider-Typ."""
    adapters: list[MailProviderAdapter] = [
        SmtpAdapter(),
        SendGridAdapter(),
        MailgunAdapter(),
        SupabaseAdapter(),
        AwsSesAdapter(),
    ]
    return {adapter.provider_type: adapter for adapter in adapters}
