"""Tests für die Admin-API (Automationen, Mail-Konfigurationen, Vorlagen)."""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import IntegrityError

from rh_automation.api.exception_handlers import describe_integrity_error
from rh_automation.main import app
from rh_automation.models import DeliveryRecord
from rh_automation.services.automation_errors import ProviderTransportError
from tests.conftest import AutomationFactory, CompanyFactory, MailConfigurationFactory


def _automation_payload(**overrides) -> dict:
    payload = {
        "title": "Nouveau candidat",
        "entity_type": "CANDIDATE",
        "trigger_event": "ON_CREATE",
        "recipients": ["ops@x.com", "candidate_email"],
        "mail_template": {
            "subject": "Nouveau candidat : {{name}}",
            "html_content": "<p>{{name}}</p>",
        },
        "conditions": [{"field": "score", "operator": "gte", "value": 80}],
    }
    payload.update(overrides)
    return payload


class TestIntegrityMessages:
    """Fachliche Meldungen fuer DB-Integritaetsfehler."""

    @pytest.mark.parametrize(
        "db_message, expected",
        [
            (
                "UNIQUE constraint failed: mail_configuration_companies.mail_configuration_id, "
                "mail_configuration_companies.company_id",
                "Firma ist dieser Mail-Konfiguration bereits zugeordnet",
            ),
            (
                'duplicate key value violates unique constraint "delivery_records_dedupe_key_key"',
                "Versand fuer dieses Event ist bereits protokolliert",
            ),
            ("FOREIGN KEY constraint failed", "Referenzierte Firma, Vorlage oder Automation existiert nicht"),
            ("UNIQUE constraint failed: companies.name", "Ein Eintrag mit diesen Daten existiert bereits"),
        ],
    )
    def test_describe_integrity_error(self, db_message, expected):
        error = IntegrityError("INSERT ...", {}, Exception(db_message))

        assert describe_integrity_error(error) == expected


class TestHealthEndpoint:
    """Tests für den Health-Check Endpoint."""

    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["automation"]["running"] is False


class TestAutomationsAPI:
    """Tests für /api/automations."""

    @pytest.mark.asyncio
    async def test_create_automation(self, client: AsyncClient):
        response = await client.post("/api/automations", json=_automation_payload())

        assert response.status_code == 201
        data = response.json()
        assert data["title"] == "Nouveau candidat"
        assert data["entity_type"] == "CANDIDATE"
        # Neue Automationen sind standardmaessig inaktiv
        assert data["is_active"] is False
        assert data["sent_count"] == 0
        assert data["conditions"][0]["operator"] == "gte"

    @pytest.mark.asyncio
    async def test_create_rejects_invalid_condition(self, client: AsyncClient):
        payload = _automation_payload(conditions=[{"field": "score", "operator": "between", "value": 1}])

        response = await client.post("/api/automations", json=payload)

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_create_requires_template(self, client: AsyncClient):
        payload = _automation_payload()
        del payload["mail_template"]

        response = await client.post("/api/automations", json=payload)

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_create_requires_recipients(self, client: AsyncClient):
        response = await client.post("/api/automations", json=_automation_payload(recipients=["  "]))

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_create_with_unknown_company(self, client: AsyncClient):
        response = await client.post(
            "/api/automations", json=_automation_payload(company_id=str(uuid.uuid4()))
        )

        assert response.status_code == 404
        assert response.json()["error"] == "company_not_found"

    @pytest.mark.asyncio
    async def test_get_automation_not_found(self, client: AsyncClient):
        response = await client.get(f"/api/automations/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"] == "automation_not_found"

    @pytest.mark.asyncio
    async def test_invalid_uuid(self, client: AsyncClient):
        response = await client.get("/api/automations/invalid-uuid")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_with_filters(self, client: AsyncClient, db_session):
        db_session.add_all([
            AutomationFactory.create(title="A"),
            AutomationFactory.create(title="B", is_active=False),
        ])
        await db_session.commit()

        response = await client.get("/api/automations?is_active=true")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["title"] == "A"
        assert data["page"] == 1

    @pytest.mark.asyncio
    async def test_update_and_toggle(self, client: AsyncClient):
        created = (await client.post("/api/automations", json=_automation_payload())).json()

        response = await client.put(
            f"/api/automations/{created['id']}",
            json={"title": "Candidat qualifié", "conditions": []},
        )
        assert response.status_code == 200
        assert response.json()["title"] == "Candidat qualifié"
        assert response.json()["conditions"] == []

        toggled = await client.put(f"/api/automations/{created['id']}/toggle")
        assert toggled.status_code == 200
        assert toggled.json()["is_active"] is True

    @pytest.mark.asyncio
    async def test_delete_automation(self, client: AsyncClient):
        created = (await client.post("/api/automations", json=_automation_payload())).json()

        response = await client.delete(f"/api/automations/{created['id']}")
        assert response.status_code == 204

        response = await client.get(f"/api/automations/{created['id']}")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_deliveries(self, client: AsyncClient, db_session):
        automation = AutomationFactory.create()
        db_session.add(automation)
        await db_session.flush()
        db_session.add(
            DeliveryRecord(
                dedupe_key=f"{automation.id}:CANDIDATE:x:ON_CREATE:1",
                automation_id=automation.id,
                entity_type="CANDIDATE",
                entity_id=uuid.uuid4(),
                operation="ON_CREATE",
                status="delivered",
                attempts=1,
                recipients=["ops@x.com"],
                subject="Nouveau candidat : Jean Dupont",
            )
        )
        await db_session.commit()

        response = await client.get(f"/api/automations/{automation.id}/deliveries")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["status"] == "delivered"
        assert data["items"][0]["subject"] == "Nouveau candidat : Jean Dupont"

    @pytest.mark.asyncio
    async def test_stats(self, client: AsyncClient, db_session):
        company = CompanyFactory.create()
        active = AutomationFactory.create(company=company)
        active.sent_count, active.success_count, active.failed_count = 6, 5, 1
        inactive = AutomationFactory.create(company=company, is_active=False)
        inactive.sent_count, inactive.success_count = 2, 2
        other = AutomationFactory.create()
        other.sent_count, other.failed_count = 4, 4
        db_session.add_all([company, active, inactive, other])
        await db_session.commit()

        response = await client.get(f"/api/automations/stats?company_id={company.id}")

        assert response.status_code == 200
        assert response.json() == {
            "total_automations": 2,
            "active_automations": 1,
            "total_sent": 8,
            "total_success": 7,
            "total_failed": 1,
            "success_rate": 87.5,
        }

        overall = (await client.get("/api/automations/stats")).json()
        assert overall["total_automations"] == 3
        assert overall["success_rate"] == 58.33

    @pytest.mark.asyncio
    async def test_stats_without_sends(self, client: AsyncClient):
        response = await client.get("/api/automations/stats")

        assert response.status_code == 200
        assert response.json()["total_sent"] == 0
        assert response.json()["success_rate"] == 0.0


class TestEntityEventsAPI:
    """Tests für /api/automations/events."""

    @pytest.mark.asyncio
    async def test_unavailable_without_engine(self, client: AsyncClient):
        response = await client.post(
            "/api/automations/events",
            json={"entity_type": "CANDIDATE", "operation": "ON_UPDATE", "entity_ids": [str(uuid.uuid4())]},
        )

        assert response.status_code == 503
        assert response.json()["error"] == "automation_unavailable"

    @pytest.mark.asyncio
    async def test_events_accepted(self, client: AsyncClient, automation_engine):
        app.state.automation_engine = automation_engine
        ids = [str(uuid.uuid4()) for _ in range(3)]

        response = await client.post(
            "/api/automations/events",
            json={"entity_type": "CANDIDATE", "operation": "ON_UPDATE", "entity_ids": ids},
        )
        await automation_engine.drain()

        assert response.status_code == 202
        assert response.json() == {"accepted": 3, "dropped": 0}

    @pytest.mark.asyncio
    async def test_events_require_ids(self, client: AsyncClient, automation_engine):
        app.state.automation_engine = automation_engine

        response = await client.post(
            "/api/automations/events",
            json={"entity_type": "CANDIDATE", "operation": "ON_UPDATE", "entity_ids": []},
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"


class TestMailConfigurationsAPI:
    """Tests für /api/mail-configurations."""

    @pytest.mark.asyncio
    async def test_create_hides_secrets(self, client: AsyncClient):
        response = await client.post(
            "/api/mail-configurations",
            json={
                "provider_type": "smtp",
                "smtp_host": "smtp.acme.fr",
                "smtp_port": 465,
                "smtp_user": "mailer",
                "smtp_password": "secret",
                "from_email": "noreply@acme.fr",
                "is_default": True,
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["has_smtp_password"] is True
        assert data["has_api_key"] is False
        assert "smtp_password" not in data
        assert "secret" not in response.text

    @pytest.mark.asyncio
    async def test_provider_fields_required(self, client: AsyncClient):
        response = await client.post(
            "/api/mail-configurations",
            json={"provider_type": "sendgrid", "from_email": "noreply@acme.fr"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_sender_address(self, client: AsyncClient):
        response = await client.post(
            "/api/mail-configurations",
            json={"provider_type": "smtp", "smtp_host": "smtp.acme.fr", "from_email": "not-an-email"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_default_cannot_be_scoped(self, client: AsyncClient):
        response = await client.post(
            "/api/mail-configurations",
            json={
                "provider_type": "smtp",
                "smtp_host": "smtp.acme.fr",
                "from_email": "noreply@acme.fr",
                "is_default": True,
                "company_id": str(uuid.uuid4()),
            },
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_new_default_replaces_old(self, client: AsyncClient, db_session):
        old = MailConfigurationFactory.create(is_default=True)
        db_session.add(old)
        await db_session.commit()

        response = await client.post(
            "/api/mail-configurations",
            json={
                "provider_type": "smtp",
                "smtp_host": "smtp.neu.fr",
                "from_email": "neu@acme.fr",
                "is_default": True,
            },
        )
        assert response.status_code == 201

        listed = (await client.get("/api/mail-configurations")).json()
        defaults = [c for c in listed if c["is_default"]]
        assert len(defaults) == 1
        assert defaults[0]["from_email"] == "neu@acme.fr"

    @pytest.mark.asyncio
    async def test_assign_companies(self, client: AsyncClient, db_session):
        company = CompanyFactory.create()
        config = MailConfigurationFactory.create()
        db_session.add_all([company, config])
        await db_session.commit()

        response = await client.put(
            f"/api/mail-configurations/{config.id}/companies",
            json={"company_ids": [str(company.id)]},
        )

        assert response.status_code == 200
        assert response.json()["company_ids"] == [str(company.id)]

    @pytest.mark.asyncio
    async def test_assign_company_twice_conflicts(self, client: AsyncClient, db_session):
        company = CompanyFactory.create()
        first = MailConfigurationFactory.create(company=company)
        second = MailConfigurationFactory.create()
        db_session.add_all([company, first, second])
        await db_session.commit()

        response = await client.put(
            f"/api/mail-configurations/{second.id}/companies",
            json={"company_ids": [str(company.id)]},
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_assign_unknown_company(self, client: AsyncClient, db_session):
        config = MailConfigurationFactory.create()
        db_session.add(config)
        await db_session.commit()

        response = await client.put(
            f"/api/mail-configurations/{config.id}/companies",
            json={"company_ids": [str(uuid.uuid4())]},
        )

        assert response.status_code == 404
        assert response.json()["error"] == "company_not_found"

    @pytest.mark.asyncio
    async def test_update_not_found(self, client: AsyncClient):
        response = await client.put(f"/api/mail-configurations/{uuid.uuid4()}", json={"is_active": False})

        assert response.status_code == 404
        assert response.json()["error"] == "mail_configuration_not_found"

    @pytest.mark.asyncio
    async def test_toggle_configuration(self, client: AsyncClient, db_session):
        config = MailConfigurationFactory.create()
        db_session.add(config)
        await db_session.commit()

        off = await client.put(f"/api/mail-configurations/{config.id}/toggle", json={"is_active": False})
        assert off.status_code == 200
        assert off.json()["is_active"] is False

        on = await client.put(f"/api/mail-configurations/{config.id}/toggle", json={"is_active": True})
        assert on.json()["is_active"] is True

    @pytest.mark.asyncio
    async def test_activate_conflicting_configuration(self, client: AsyncClient, db_session):
        company = CompanyFactory.create()
        active = MailConfigurationFactory.create(company=company)
        dormant = MailConfigurationFactory.create(company=company, is_active=False)
        db_session.add_all([company, active, dormant])
        await db_session.commit()

        response = await client.put(f"/api/mail-configurations/{dormant.id}/toggle", json={"is_active": True})

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_delete_configuration(self, client: AsyncClient, db_session):
        company = CompanyFactory.create()
        config = MailConfigurationFactory.create()
        db_session.add_all([company, config])
        await db_session.commit()
        await client.put(f"/api/mail-configurations/{config.id}/companies", json={"company_ids": [str(company.id)]})

        response = await client.delete(f"/api/mail-configurations/{config.id}")

        assert response.status_code == 204
        assert (await client.get("/api/mail-configurations")).json() == []
        again = await client.delete(f"/api/mail-configurations/{config.id}")
        assert again.status_code == 404


class TestMailConfigurationTestSend:
    """Tests für POST /api/mail-configurations/test."""

    @pytest.mark.asyncio
    async def test_sends_through_gateway(self, client: AsyncClient, db_session, automation_engine, fake_adapter):
        app.state.automation_engine = automation_engine
        config = MailConfigurationFactory.create(is_default=True)
        db_session.add(config)
        await db_session.commit()

        response = await client.post("/api/mail-configurations/test", json={"email": "admin@acme.fr"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["provider_type"] == "smtp"
        assert data["attempts"] == 1

        assert len(fake_adapter.sent) == 1
        used_config, message = fake_adapter.sent[0]
        assert used_config.id == config.id
        assert message.recipients == ("admin@acme.fr",)
        assert message.subject.startswith("Test de configuration mail")
        assert data["message_id"] == message.message_id

    @pytest.mark.asyncio
    async def test_fails_without_configuration(self, client: AsyncClient, automation_engine, fake_adapter):
        app.state.automation_engine = automation_engine

        response = await client.post("/api/mail-configurations/test", json={"email": "admin@acme.fr"})

        assert response.status_code == 400
        assert response.json()["error"] == "mail_test_failed"
        assert "Keine aktive Mail-Konfiguration" in response.json()["message"]
        assert fake_adapter.attempts == []

    @pytest.mark.asyncio
    async def test_permanent_provider_error(self, client: AsyncClient, db_session, automation_engine, fake_adapter):
        app.state.automation_engine = automation_engine
        fake_adapter.failures = [ProviderTransportError("535 bad credentials", transient=False, provider="smtp")]
        db_session.add(MailConfigurationFactory.create(is_default=True))
        await db_session.commit()

        response = await client.post("/api/mail-configurations/test", json={"email": "admin@acme.fr"})

        assert response.status_code == 400
        assert "535 bad credentials" in response.json()["message"]

    @pytest.mark.asyncio
    async def test_unknown_company(self, client: AsyncClient, automation_engine):
        app.state.automation_engine = automation_engine

        response = await client.post(
            "/api/mail-configurations/test",
            json={"email": "admin@acme.fr", "company_id": str(uuid.uuid4())},
        )

        assert response.status_code == 404
        assert response.json()["error"] == "company_not_found"

    @pytest.mark.asyncio
    async def test_invalid_address(self, client: AsyncClient, automation_engine):
        app.state.automation_engine = automation_engine

        response = await client.post("/api/mail-configurations/test", json={"email": "kein-mail"})

        assert response.status_code == 422


class TestMailTemplatesAPI:
    """Tests für /api/mail-templates."""

    @pytest.mark.asyncio
    async def test_content_change_bumps_version(self, client: AsyncClient):
        created = await client.post(
            "/api/mail-templates",
            json={
                "type": "custom",
                "name": "Relance",
                "subject": "Relance : {{name}}",
                "html_content": "<p>Bonjour {{name}}</p>",
            },
        )
        assert created.status_code == 201
        template = created.json()
        assert template["version"] == 1
        assert template["status"] == "draft"

        renamed = await client.put(f"/api/mail-templates/{template['id']}", json={"name": "Relance J+7"})
        assert renamed.json()["version"] == 1

        changed = await client.put(
            f"/api/mail-templates/{template['id']}",
            json={"subject": "Relance J+7 : {{name}}", "status": "active"},
        )
        assert changed.status_code == 200
        assert changed.json()["version"] == 2
        assert changed.json()["status"] == "active"

    @pytest.mark.asyncio
    async def test_list_filters_by_type(self, client: AsyncClient):
        for template_type in ("custom", "welcome"):
            await client.post(
                "/api/mail-templates",
                json={
                    "type": template_type,
                    "name": template_type,
                    "subject": "Sujet",
                    "html_content": "<p>Texte</p>",
                },
            )

        response = await client.get("/api/mail-templates?type=welcome")

        assert response.status_code == 200
        assert [t["type"] for t in response.json()] == ["welcome"]

    @pytest.mark.asyncio
    async def test_update_not_found(self, client: AsyncClient):
        response = await client.put(f"/api/mail-templates/{uuid.uuid4()}", json={"name": "X"})

        assert response.status_code == 404
        assert response.json()["error"] == "mail_template_not_found"

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, client: AsyncClient):
        for name, template_status in (("Brouillon", "draft"), ("Actif", "active")):
            await client.post(
                "/api/mail-templates",
                json={
                    "type": "custom",
                    "name": name,
                    "subject": "Sujet",
                    "html_content": "<p>Texte</p>",
                    "status": template_status,
                },
            )

        response = await client.get("/api/mail-templates?status=active")

        assert response.status_code == 200
        assert [t["name"] for t in response.json()] == ["Actif"]

    @pytest.mark.asyncio
    async def test_preview_renders_without_sending(self, client: AsyncClient, fake_adapter):
        created = await client.post(
            "/api/mail-templates",
            json={
                "type": "custom",
                "name": "Relance",
                "subject": "Relance : {{name}}",
                "html_content": "<p>Bonjour {{name}}, poste {{poste}} - {{system_name}}</p>",
                "text_content": "Bonjour {{name}}",
            },
        )
        template_id = created.json()["id"]

        response = await client.post(
            f"/api/mail-templates/{template_id}/preview",
            json={"variables": {"name": "Jean & Co"}},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["subject"] == "Relance : Jean & Co"
        assert data["html_content"].startswith("<p>Bonjour Jean &amp; Co, poste {{poste}} - ")
        assert "{{system_name}}" not in data["html_content"]
        assert data["text_content"] == "Bonjour Jean & Co"
        assert data["unresolved"] == ["poste"]
        assert fake_adapter.attempts == []

    @pytest.mark.asyncio
    async def test_preview_not_found(self, client: AsyncClient):
        response = await client.post(f"/api/mail-templates/{uuid.uuid4()}/preview", json={})

        assert response.status_code == 404
        assert response.json()["error"] == "mail_template_not_found"

    @pytest.mark.asyncio
    async def test_delete_template(self, client: AsyncClient):
        created = await client.post(
            "/api/mail-templates",
            json={"type": "custom", "name": "Alt", "subject": "Sujet", "html_content": "<p>Texte</p>"},
        )
        template_id = created.json()["id"]

        response = await client.delete(f"/api/mail-templates/{template_id}")

        assert response.status_code == 204
        assert (await client.get("/api/mail-templates")).json() == []
        again = await client.delete(f"/api/mail-templates/{template_id}")
        assert again.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_template_in_use(self, client: AsyncClient, db_session):
        created = await client.post(
            "/api/mail-templates",
            json={"type": "custom", "name": "Relance", "subject": "Sujet", "html_content": "<p>Texte</p>"},
        )
        template_id = created.json()["id"]
        automation = AutomationFactory.create()
        automation.mail_template_id = uuid.UUID(template_id)
        db_session.add(automation)
        await db_session.commit()

        response = await client.delete(f"/api/mail-templates/{template_id}")

        assert response.status_code == 409
        assert response.json()["error"] == "mail_template_in_use"
        assert len((await client.get("/api/mail-templates")).json()) == 1
