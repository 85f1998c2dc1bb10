"""Initiale Datenbank-Struktur der Mail-Automatisierung.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    # Firmen (Mandanten)
    op.create_table(
        "companies",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("locale", sa.String(20)),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("first_name", sa.String(100)),
        sa.Column("last_name", sa.String(100)),
        sa.Column("role", sa.String(30), nullable=False, server_default="hr"),
        sa.Column(
            "company_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
        ),
        *_timestamps(),
    )
    op.create_index("ix_users_company_id", "users", ["company_id"])

    op.create_table(
        "projects",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("job_description", sa.Text()),
        sa.Column("status", sa.String(30), nullable=False, server_default="active"),
        sa.Column(
            "company_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "created_by",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
    )
    op.create_index("ix_projects_company_id", "projects", ["company_id"])

    op.create_table(
        "candidates",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320)),
        sa.Column("phone", sa.String(100)),
        sa.Column("score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("summary", sa.Text()),
        sa.Column("ranking", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "project_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        *_timestamps(),
    )
    op.create_index("ix_candidates_project_id", "candidates", ["project_id"])

    op.create_table(
        "analyses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("score", sa.Float()),
        sa.Column("summary", sa.Text()),
        sa.Column("recommendation", sa.String(30)),
        sa.Column(
            "candidate_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("candidates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "project_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        *_timestamps(),
    )
    op.create_index("ix_analyses_candidate_id", "analyses", ["candidate_id"])
    op.create_index("ix_analyses_project_id", "analyses", ["project_id"])

    # Vorlagen
    op.create_table(
        "mail_templates",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("subject", sa.String(500), nullable=False),
        sa.Column("html_content", sa.Text(), nullable=False),
        sa.Column("text_content", sa.Text()),
        sa.Column("variables", postgresql.JSONB()),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "company_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
    )
    op.create_index("ix_mail_templates_company_id", "mail_templates", ["company_id"])

    # Automationen
    op.create_table(
        "mail_automations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("trigger_event", sa.String(20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "company_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
        ),
        sa.Column("recipients", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("mail_template", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column(
            "mail_template_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("mail_templates.id", ondelete="SET NULL"),
        ),
        sa.Column("conditions", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("template_variables", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index(
        "ix_mail_automations_lookup",
        "mail_automations",
        ["entity_type", "trigger_event", "is_active"],
    )
    op.create_index("ix_mail_automations_company_id", "mail_automations", ["company_id"])

    # Mail-Konfigurationen
    op.create_table(
        "mail_configurations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider_type", sa.String(20), nullable=False, server_default="smtp"),
        sa.Column(
            "company_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
        ),
        sa.Column("smtp_host", sa.String(255)),
        sa.Column("smtp_port", sa.Integer()),
        sa.Column("smtp_user", sa.String(255)),
        sa.Column("smtp_password", sa.String(500)),
        sa.Column("smtp_secure", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("smtp_require_tls", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("api_key", sa.String(500)),
        sa.Column("api_secret", sa.String(500)),
        sa.Column("from_email", sa.String(320), nullable=False),
        sa.Column("from_name", sa.String(255), nullable=False, server_default="RH Analytics Pro"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_mail_configurations_company_id", "mail_configurations", ["company_id"])

    op.create_table(
        "mail_configuration_companies",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "mail_configuration_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("mail_configurations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "company_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("companies.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "mail_configuration_id", "company_id", name="uq_mail_configuration_company"
        ),
    )
    op.create_index(
        "ix_mail_configuration_companies_company_id",
        "mail_configuration_companies",
        ["company_id"],
    )

    # Versand-Protokoll
    op.create_table(
        "automation_deliveries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "automation_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("mail_automations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("operation", sa.String(20), nullable=False),
        sa.Column("dedupe_key", sa.String(255), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="dispatched"),
        sa.Column("error", sa.Text()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("provider_type", sa.String(20)),
        sa.Column("message_id", sa.String(255)),
        sa.Column("recipients", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("subject", sa.String(500)),
        *_timestamps(),
    )
    op.create_index(
        "ix_automation_deliveries_automation_id", "automation_deliveries", ["automation_id"]
    )
    op.create_index(
        "ix_automation_deliveries_entity", "automation_deliveries", ["entity_type", "entity_id"]
    )
    op.create_index("ix_automation_deliveries_status", "automation_deliveries", ["status"])


def downgrade() -> None:
    op.drop_table("automation_deliveries")
    op.drop_table("mail_configuration_companies")
    op.drop_table("mail_configurations")
    op.drop_table("mail_automations")
    op.drop_table("mail_templates")
    op.drop_table("analyses")
    op.drop_table("candidates")
    op.drop_table("projects")
    op.drop_table("users")
    op.drop_table("companies")
