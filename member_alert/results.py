from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")

TENANT_CONTEXT_MISSING = "Tenant context is not available."


class ErrorKind(str, enum.Enum):
    validation = "validation"
    authorization = "authorization"
    not_found = "not_found"
    upstream = "upstream"
    integrity = "integrity"
    unexpected = "unexpected"


@dataclass(frozen=True)
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, kind: ErrorKind = ErrorKind.unexpected) -> "Result":
        return cls(ok=False, error=error, kind=kind)

    @classmethod
    def validation(cls, error: str) -> "Result":
        return cls.failure(error, ErrorKind.validation)

    @classmethod
    def unauthorized(cls, error: str) -> "Result":
        return cls.failure(error, ErrorKind.authorization)

    @classmethod
    def not_found(cls, error: str) -> "Result":
        return cls.failure(error, ErrorKind.not_found)

    @classmethod
    def no_tenant_context(cls) -> "Result":
        return cls.failure(TENANT_CONTEXT_MISSING, ErrorKind.authorization)


@dataclass(frozen=True)
class PagedResult(Generic[T]):
    items: list[T] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 50

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


def normalize_page(page: int, page_size: int, default_size: int = 50) -> tuple[int, int]:
    page = int(page or 1)
    page_size = int(page_size or 0)
    if page < 1:
        page = 1
    if page_size <= 0:
        page_size = default_size
    return page, page_size
