"""API-Routen der Mail-Automatisierung.

Die Router werden in ``rh_automation.main`` direkt aus ihren Modulen importiert.
"""

from rh_automation.api.exception_handlers import (
    AppException,
    AutomationUnavailableException,
    ConflictException,
    InvalidConfigurationException,
    MailTestFailedException,
    NotFoundException,
    register_exception_handlers,
)

__all__ = [
    "AppException",
    "AutomationUnavailableException",
    "ConflictException",
    "InvalidConfigurationException",
    "MailTestFailedException",
    "NotFoundException",
    "register_exception_handlers",
]
