"""Common schemas used across the API."""

from typing import Any, List

from pydantic import BaseModel, Field


class PaginationParams(BaseModel):
    """Offset/limit parameters for list endpoints."""

    offset: int = Field(default=0, ge=0, description="Index of the first item")
    limit: int = Field(default=20, ge=1, le=100, description="Items per page (max 100)")


class PageResponse(BaseModel):
    """Offset/limit window of a larger result set."""

    items: List[Any] = Field(description="Items in this window")
    total: int = Field(description="Total number of matching items")
    offset: int
    limit: int
    has_next: bool
    has_prev: bool


class MessageResponse(BaseModel):
    """Simple message response."""

    message: str
