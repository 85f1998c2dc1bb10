"""Pagination Schemas für die Admin-API."""

from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    """Seite einer Liste (Automationen, DeliveryRecords, ...)."""

    items: list[T]
    total: int = Field(description="Gesamtanzahl der Einträge")
    page: int = Field(description="Aktuelle Seite")
    per_page: int = Field(description="Einträge pro Seite")
    pages: int = Field(description="Gesamtanzahl der Seiten")

    @classmethod
    def create(cls, items: list[T], total: int, page: int, per_page: int) -> "PaginatedResponse[T]":
        pages = (total + per_page - 1) // per_page if per_page > 0 else 0
        return cls(items=items, total=total, page=page, per_page=per_page, pages=pages)
