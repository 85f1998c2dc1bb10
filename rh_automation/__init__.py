"""Mail-Automatisierung fuer RH Analytics Pro."""
