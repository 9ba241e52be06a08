"""
Schemas shared by every router: the error envelope and pagination block.
"""
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """`{code, message, details}` envelope for every 4xx/5xx (see deadman/core/errors.py)."""
    model_config = ConfigDict(from_attributes=True)

    code: str = Field(description='Machine-readable, e.g. "HANDOVER_NOT_ACTIVE".')
    message: str
    details: Optional[dict[str, Any]] = None


class PaginationOut(BaseModel):
    limit: int
    offset: int
    total: int
    has_more: bool = Field(description="True when another page follows this one.")
