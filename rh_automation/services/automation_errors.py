"""Exceptions der Automation-Engine.

Keine dieser Exceptions verlaesst die Engine: der Orchestrator faengt sie pro
Automation ab und uebersetzt sie in einen DeliveryRecord-Status bzw. Log.
"""


class AutomationError(Exception):
    """Basis-Exception fuer Automation-Fehler."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationMissing(AutomationError):
    """Keine aktive Mail-Konfiguration fuer die Firma (und kein globaler Default)."""

    def __init__(self, company_id=None):
        self.company_id = company_id
        scope = f"Firma {company_id}" if company_id else "globalen Versand"
        super().__init__(f"Keine aktive Mail-Konfiguration fuer {scope}")


class ConditionEvaluationError(AutomationError):
    """Bedingung ist fehlerhaft definiert (unbekannter Operator, falscher Wert)."""

    def __init__(self, message: str, condition: dict | None = None):
        self.condition = condition
        super().__init__(message)


class TemplateRenderError(AutomationError):
    """Unerwarteter Fehler beim Rendern (fehlende Tokens sind KEIN Fehler)."""


class ProviderTransportError(AutomationError):
    """Fehler beim Provider-Versand.

    ``transient=True``: Netzwerk, Timeout, Rate-Limit → Retry mit Backoff.
    ``transient=False``: Auth, ungueltiger Empfaenger, kaputte Nachricht → kein Retry.
    """

    def __init__(
        self,
        message: str,
        transient: bool,
        provider: str | None = None,
        status_code: int | None = None,
    ):
        self.transient = transient
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)

    @classmethod
    def from_status(cls, provider: str, status_code: int, detail: str = "") -> "ProviderTransportError":
        """Klassifiziert einen HTTP-Status: 408/429/5xx transient, sonst permanent."""
        transient = status_code in (408, 429) or status_code >= 500
        message = f"{provider} HTTP {status_code}"
        if detail:
            message = f"{message}: {detail[:300]}"
        return cls(message, transient=transient, provider=provider, status_code=status_code)
