"""Tests für die Mail-Provider-Adapter (ohne echte Netzwerkzugriffe)."""

import json
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import aiosmtplib
import httpx
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from rh_automation.models import DeliveryStatus, MailProviderType
from rh_automation.services.automation_errors import ProviderTransportError
from rh_automation.services.mail_gateway import MailGateway
from rh_automation.services.mail_providers import (
    AwsSesAdapter,
    MailgunAdapter,
    OutgoingMessage,
    ResolvedMailConfiguration,
    SendGridAdapter,
    SmtpAdapter,
    SupabaseAdapter,
    default_adapters,
    html_to_text,
)
from tests.conftest import MailConfigurationFactory, RecordingSleep

_RealAsyncClient = httpx.AsyncClient
_SMTP_SEND = "rh_automation.services.mail_providers.aiosmtplib.send"


def _config(provider: MailProviderType, **overrides) -> ResolvedMailConfiguration:
    values = {
        "id": None,
        "provider_type": provider,
        "from_email": "noreply@acme.fr",
        "from_name": "Acme RH",
        "smtp_host": "smtp.acme.fr",
        "smtp_port": 465,
        "smtp_user": "mailer",
        "smtp_password": "secret",
        "api_key": "key-123",
    }
    values.update(overrides)
    return ResolvedMailConfiguration(**values)


def _message() -> OutgoingMessage:
    return OutgoingMessage(
        recipients=("ops@x.com", "rh@acme.fr"),
        subject="Nouveau candidat",
        html="<p>Jean Dupont</p>",
    )


def _mock_http(handler):
    """Ersetzt ``httpx.AsyncClient`` durch einen Client mit MockTransport."""

    def factory(**kwargs):
        return _RealAsyncClient(transport=httpx.MockTransport(handler), **kwargs)

    return patch("rh_automation.services.mail_providers.httpx.AsyncClient", side_effect=factory)


class TestHelpers:
    def test_html_to_text(self):
        assert html_to_text("<h2>Bonjour</h2><p>Ligne 1<br>Ligne 2</p>") == "Bonjour\nLigne 1\nLigne 2"

    def test_text_body_falls_back_to_html(self):
        message = OutgoingMessage(recipients=("a@x.com",), subject="S", html="<p>Hallo</p>")
        assert message.text_body == "Hallo"

    def test_repr_hides_secrets(self):
        assert "secret" not in repr(_config(MailProviderType.SMTP))

    def test_default_adapters_cover_all_providers(self):
        assert set(default_adapters()) == set(MailProviderType)


class TestSmtpAdapter:
    """Tests für SMTP via aiosmtplib."""

    def test_build_message_is_multipart(self):
        message = _message()
        msg = SmtpAdapter().build_message(_config(MailProviderType.SMTP), message)

        assert msg["To"] == "ops@x.com, rh@acme.fr"
        assert msg["Message-ID"] == message.message_id
        assert msg.is_multipart()
        assert msg.get_body(("html",)).get_content().strip() == "<p>Jean Dupont</p>"

    @pytest.mark.asyncio
    async def test_send_uses_implicit_tls(self):
        with patch(_SMTP_SEND, new=AsyncMock(return_value=({}, "250 OK"))) as send:
            message_id = await SmtpAdapter().send(_config(MailProviderType.SMTP), _message())

        kwargs = send.call_args.kwargs
        assert kwargs["hostname"] == "smtp.acme.fr"
        assert kwargs["port"] == 465
        assert kwargs["use_tls"] is True
        assert kwargs["start_tls"] is None
        assert message_id.startswith("<")

    @pytest.mark.asyncio
    async def test_starttls_when_required(self):
        config = _config(MailProviderType.SMTP, smtp_port=587, smtp_secure=False, smtp_require_tls=True)
        with patch(_SMTP_SEND, new=AsyncMock(return_value=({}, "250 OK"))) as send:
            await SmtpAdapter().send(config, _message())

        assert send.call_args.kwargs["use_tls"] is False
        assert send.call_args.kwargs["start_tls"] is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, transient",
        [
            (aiosmtplib.SMTPAuthenticationError(535, "bad credentials"), False),
            (aiosmtplib.SMTPConnectError("connection refused"), True),
            (aiosmtplib.SMTPResponseException(451, "try again later"), True),
            (aiosmtplib.SMTPResponseException(554, "rejected"), False),
        ],
    )
    async def test_error_classification(self, error, transient):
        with patch("rh_automation.services.mail_providers.aiosmtplib.send", new=AsyncMock(side_effect=error)):
            with pytest.raises(ProviderTransportError) as exc_info:
                await SmtpAdapter().send(_config(MailProviderType.SMTP), _message())

        assert exc_info.value.transient is transient
        assert exc_info.value.provider == "smtp"

    @pytest.mark.asyncio
    async def test_partially_refused_recipients_are_logged(self, caplog):
        refused = {"rh@acme.fr": aiosmtplib.SMTPResponse(550, "mailbox unavailable")}
        with patch(_SMTP_SEND, new=AsyncMock(return_value=(refused, "250 OK"))):
            with caplog.at_level(logging.WARNING, logger="rh_automation.services.mail_providers"):
                message_id = await SmtpAdapter().send(_config(MailProviderType.SMTP), _message())

        assert message_id.startswith("<")
        assert "1 von 2 Empfaengern abgelehnt: rh@acme.fr" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_host_is_permanent(self):
        with pytest.raises(ProviderTransportError) as exc_info:
            await SmtpAdapter().send(_config(MailProviderType.SMTP, smtp_host=None), _message())
        assert exc_info.value.transient is False


class TestHttpAdapters:
    """Tests für SendGrid, Mailgun und Supabase."""

    @pytest.mark.asyncio
    async def test_sendgrid_payload_and_message_id(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202, headers={"X-Message-Id": "sg-1"})

        message = _message()
        with _mock_http(handler):
            provider_id = await SendGridAdapter().send(_config(MailProviderType.SENDGRID), message)

        assert provider_id == "sg-1"
        request = requests[0]
        assert request.url.path == "/v3/mail/send"
        assert request.headers["Authorization"] == "Bearer key-123"
        payload = json.loads(request.content)
        assert [to["email"] for to in payload["personalizations"][0]["to"]] == ["ops@x.com", "rh@acme.fr"]
        assert payload["custom_args"]["message_id"] == message.message_id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code, transient", [(429, True), (503, True), (401, False), (400, False)])
    async def test_sendgrid_status_classification(self, status_code, transient):
        with _mock_http(lambda request: httpx.Response(status_code, text="error")):
            with pytest.raises(ProviderTransportError) as exc_info:
                await SendGridAdapter().send(_config(MailProviderType.SENDGRID), _message())

        assert exc_info.value.transient is transient
        assert exc_info.value.status_code == status_code

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with _mock_http(handler):
            with pytest.raises(ProviderTransportError) as exc_info:
                await MailgunAdapter().send(_config(MailProviderType.MAILGUN), _message())

        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_mailgun_uses_sending_domain(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "<mg-1@mg.acme.fr>"})

        config = _config(MailProviderType.MAILGUN, api_secret="mg.acme.fr")
        with _mock_http(handler):
            provider_id = await MailgunAdapter().send(config, _message())

        assert provider_id == "<mg-1@mg.acme.fr>"
        assert requests[0].url.path == "/v3/mg.acme.fr/messages"

    def test_mailgun_domain_from_sender(self):
        assert MailgunAdapter().sending_domain(_config(MailProviderType.MAILGUN)) == "acme.fr"

    @pytest.mark.asyncio
    async def test_supabase_without_url_is_permanent(self):
        with patch("rh_automation.services.mail_providers.settings") as mock_settings:
            mock_settings.supabase_url = ""
            mock_settings.supabase_service_key = ""
            with pytest.raises(ProviderTransportError) as exc_info:
                await SupabaseAdapter().send(_config(MailProviderType.SUPABASE, api_key=None), _message())

        assert exc_info.value.transient is False

    @pytest.mark.asyncio
    async def test_supabase_invites_each_recipient(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={})

        with patch("rh_automation.services.mail_providers.settings") as mock_settings:
            mock_settings.supabase_url = "https://proj.supabase.co"
            mock_settings.supabase_service_key = "service"
            with _mock_http(handler):
                await SupabaseAdapter().send(_config(MailProviderType.SUPABASE, api_key=None), _message())

        assert [json.loads(r.content)["email"] for r in requests] == ["ops@x.com", "rh@acme.fr"]
        assert all(r.url.path == "/auth/v1/invite" for r in requests)

    @pytest.mark.asyncio
    async def test_supabase_retry_skips_already_invited(self, session_factory):
        config = MailConfigurationFactory.create(provider_type=MailProviderType.SUPABASE, is_default=True)
        async with session_factory() as session:
            session.add(config)
            await session.commit()

        invited = []
        failed_once = set()

        def handler(request: httpx.Request) -> httpx.Response:
            email = json.loads(request.content)["email"]
            invited.append(email)
            if email == "b@x.com" and email not in failed_once:
                failed_once.add(email)
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json={})

        adapter = SupabaseAdapter()
        gateway = MailGateway(
            session_factory,
            adapters={MailProviderType.SUPABASE: adapter},
            cache_ttl=0,
            sleep=RecordingSleep(),
        )
        message = OutgoingMessage(recipients=("a@x.com", "b@x.com"), subject="Invitation", html="<p>Bienvenue</p>")

        with patch("rh_automation.services.mail_providers.settings") as mock_settings:
            mock_settings.supabase_url = "https://proj.supabase.co"
            mock_settings.supabase_service_key = "service"
            mock_settings.default_from_email = "noreply@acme.fr"
            mock_settings.default_from_name = "Acme RH"
            with _mock_http(handler):
                result = await gateway.send(None, message)

        assert result.status == DeliveryStatus.DELIVERED
        assert result.attempts == 2
        assert invited == ["a@x.com", "b@x.com", "b@x.com"]
        assert adapter.accepted_recipients(message.message_id) == frozenset()


class TestAwsSesAdapter:
    """Tests für AWS SES (boto3-Client gemockt)."""

    def _adapter(self, client: MagicMock) -> AwsSesAdapter:
        adapter = AwsSesAdapter()
        adapter._client = MagicMock(return_value=client)
        return adapter

    @pytest.mark.asyncio
    async def test_send(self):
        client = MagicMock()
        client.send_email.return_value = {"MessageId": "ses-1"}

        provider_id = await self._adapter(client).send(_config(MailProviderType.AWS_SES), _message())

        assert provider_id == "ses-1"
        kwargs = client.send_email.call_args.kwargs
        assert kwargs["Destination"] == {"ToAddresses": ["ops@x.com", "rh@acme.fr"]}
        assert kwargs["Message"]["Body"]["Html"]["Data"] == "<p>Jean Dupont</p>"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code, transient", [("Throttling", True), ("MessageRejected", False)])
    async def test_client_error_classification(self, code, transient):
        client = MagicMock()
        client.send_email.side_effect = ClientError({"Error": {"Code": code, "Message": "x"}}, "SendEmail")

        with pytest.raises(ProviderTransportError) as exc_info:
            await self._adapter(client).send(_config(MailProviderType.AWS_SES), _message())

        assert exc_info.value.transient is transient

    @pytest.mark.asyncio
    async def test_endpoint_error_is_transient(self):
        client = MagicMock()
        client.send_email.side_effect = EndpointConnectionError(endpoint_url="https://email.eu-west-3.amazonaws.com")

        with pytest.raises(ProviderTransportError) as exc_info:
            await self._adapter(client).send(_config(MailProviderType.AWS_SES), _message())

        assert exc_info.value.transient is True
