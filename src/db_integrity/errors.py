"""Error codes and result models shared by every component.

Public operations never raise for expected failures -- they return an
``IntegrityResult`` whose ``error`` carries a closed ``ErrorCode`` plus the
migration id/version involved, so callers (and the CLI) can render exactly
what failed.

Usage:
    from db_integrity.errors import ErrorCode, IntegrityResult

    result = await engine.run_migrations()
    if not result.success:
        print(result.error.code, result.error.migration_id, result.error.message)
"""

from enum import Enum
from typing import Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")

Scalar = str | int | float | bool | None


class ErrorCode(str, Enum):
    """Closed set of failure codes."""

    SCHEMA_ANALYSIS_FAILED = "SCHEMA_ANALYSIS_FAILED"
    MIGRATION_INIT_FAILED = "MIGRATION_INIT_FAILED"
    MIGRATION_LOAD_FAILED = "MIGRATION_LOAD_FAILED"
    MIGRATION_EXECUTION_FAILED = "MIGRATION_EXECUTION_FAILED"
    MIGRATION_OUT_OF_ORDER = "MIGRATION_OUT_OF_ORDER"
    MIGRATION_LOCK_FAILED = "MIGRATION_LOCK_FAILED"
    CHECKSUM_MISMATCH = "CHECKSUM_MISMATCH"
    ROLLBACK_EXECUTION_FAILED = "ROLLBACK_EXECUTION_FAILED"
    MIGRATION_GENERATION_FAILED = "MIGRATION_GENERATION_FAILED"
    DRIFT_MIGRATION_GENERATION_FAILED = "DRIFT_MIGRATION_GENERATION_FAILED"
    FORM_MIGRATION_GENERATION_FAILED = "FORM_MIGRATION_GENERATION_FAILED"


class IntegrityError(BaseModel):
    """Structured description of a failure."""

    code: ErrorCode
    message: str
    migration_id: str | None = None
    version: str | None = None
    details: dict[str, Scalar] = Field(default_factory=dict)

    def format(self) -> str:
        """Format as a single human-readable line."""
        where = ""
        if self.migration_id:
            where = f" [{self.migration_id}"
            if self.version:
                where += f" @ {self.version}"
            where += "]"
        return f"{self.code.value}{where}: {self.message}"


class IntegrityResult(BaseModel, Generic[T]):
    """Result of a public operation (success flag, payload, error)."""

    success: bool
    data: T | None = None
    error: IntegrityError | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> "IntegrityResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        error: "IntegrityError | IntegrityException",
        data: T | None = None,
    ) -> "IntegrityResult[T]":
        if isinstance(error, IntegrityException):
            error = error.to_error()
        return cls(success=False, data=data, error=error)


class IntegrityException(Exception):
    """Raised internally; converted to an ``IntegrityResult`` at API boundaries."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        migration_id: str | None = None,
        version: str | None = None,
        details: dict[str, Scalar] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.migration_id = migration_id
        self.version = version
        self.details = details or {}

    def to_error(self) -> IntegrityError:
        return IntegrityError(
            code=self.code,
            message=self.message,
            migration_id=self.migration_id,
            version=self.version,
            details=self.details,
        )
