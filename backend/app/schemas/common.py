from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    message: str
    data: T | None = None


class Pagination(BaseModel):
    page: int
    limit: int
    total_items: int
    total_pages: int


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    error: Any | None = None
