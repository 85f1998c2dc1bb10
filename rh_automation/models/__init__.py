"""SQLAlchemy Models für die Mail-Automatisierung."""

from rh_automation.models.analysis import Analysis
from rh_automation.models.candidate import Candidate
from rh_automation.models.company import Company
from rh_automation.models.delivery_record import DeliveryRecord, DeliveryStatus
from rh_automation.models.mail_automation import (
    AutomationEntityType,
    AutomationTrigger,
    MailAutomation,
)
from rh_automation.models.mail_configuration import (
    MailConfiguration,
    MailConfigurationCompany,
    MailProviderType,
)
from rh_automation.models.mail_template import MailTemplate, MailTemplateStatus, MailTemplateType
from rh_automation.models.project import Project
from rh_automation.models.user import User

# Entitaeten, deren Commits Automationen ausloesen
TRACKED_MODELS = (Candidate, Project, Analysis, User)

__all__ = [
    "Analysis",
    "AutomationEntityType",
    "AutomationTrigger",
    "Candidate",
    "Company",
    "DeliveryRecord",
    "DeliveryStatus",
    "MailAutomation",
    "MailConfiguration",
    "MailConfigurationCompany",
    "MailProviderType",
    "MailTemplate",
    "MailTemplateStatus",
    "MailTemplateType",
    "Project",
    "TRACKED_MODELS",
    "User",
]
