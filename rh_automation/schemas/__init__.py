"""Pydantic Schemas fuer die Admin-API."""
