"""Business-Logik Services der Mail-Automatisierung."""
