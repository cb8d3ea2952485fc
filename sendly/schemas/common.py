from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 200


class PaginationMeta(BaseModel):
    total: int = Field(ge=0)
    limit: int = Field(ge=1, le=MAX_PAGE_SIZE)
    offset: int = Field(ge=0)
    count: int = Field(ge=0)
    has_next: bool

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"total": 57, "limit": 20, "offset": 20, "count": 20, "has_next": True}
        }
    )


def build_pagination(*, total: int, limit: int, offset: int, count: int) -> PaginationMeta:
    return PaginationMeta(
        total=total,
        limit=limit,
        offset=offset,
        count=count,
        has_next=offset + count < total,
    )


class FieldIssueOut(BaseModel):
    field: str
    message: str
    type: str | None = None


class InsufficientCreditsDetailsOut(BaseModel):
    required_credits: int
    available_credits: int
    missing_credits: int


class ErrorBodyOut(BaseModel):
    code: str = Field(description="Stable machine-readable code, e.g. `insufficient_credits`.")
    message: str
    request_id: str
    path: str
    details: InsufficientCreditsDetailsOut | list[FieldIssueOut] | dict[str, Any] | None = None


class ErrorOut(BaseModel):
    error: ErrorBodyOut
