"""
Exception hierarchy for schema-engine.

Every error carries a machine-readable `code` so API clients can branch on it
without parsing English messages. Row-level processing failures never surface
here: the orchestrator records them on the run item instead.
"""
from __future__ import annotations

from typing import Any, List, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette import status


class SchemaEngineError(Exception):
    """Base class for all application-level errors."""
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class NotFoundError(SchemaEngineError):
    http_status = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class RuleNotFoundError(NotFoundError):
    code = "RULE_NOT_FOUND"

    def __init__(self, rule_id: int):
        super().__init__(f"Rule {rule_id} does not exist.", {"rule_id": rule_id})


class RunNotFoundError(NotFoundError):
    code = "RUN_NOT_FOUND"

    def __init__(self, run_id: int):
        super().__init__(f"Run {run_id} does not exist.", {"run_id": run_id})


class PageNotFoundError(NotFoundError):
    code = "PAGE_NOT_FOUND"

    def __init__(self, page_id: int):
        super().__init__(f"Page {page_id} does not exist.", {"page_id": page_id})


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class NoActiveRuleError(SchemaEngineError):
    """Configuration gap: nothing in any tier matches the page."""
    http_status = status.HTTP_409_CONFLICT
    code = "NO_ACTIVE_RULE"

    def __init__(self, domain: Optional[str], page_type: Optional[str], category: Optional[str]):
        super().__init__(
            message=(
                f'No active rule found for domain "{domain or "-"}", page type '
                f'"{page_type or "-"}", category "{category or "-"}". '
                "Create or activate a rule for this domain."
            ),
            details={"domain": domain, "page_type": page_type, "category": category},
        )


class ActivationConflictError(SchemaEngineError):
    http_status = status.HTTP_409_CONFLICT
    code = "ACTIVATION_CONFLICT"

    def __init__(self, rule_id: int, scope: str):
        super().__init__(
            message=f"Rule {rule_id} could not be activated: another rule was activated for the same scope.",
            details={"rule_id": rule_id, "scope": scope},
        )


class ActiveRuleDeleteError(SchemaEngineError):
    http_status = status.HTTP_409_CONFLICT
    code = "ACTIVE_RULE_DELETE"

    def __init__(self, rule_id: int):
        super().__init__(
            message=f"Rule {rule_id} is active. Deactivate it before deleting.",
            details={"rule_id": rule_id},
        )


class BackupIndexError(SchemaEngineError):
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "BACKUP_INDEX"

    def __init__(self, rule_id: int, index: int, available: int):
        super().__init__(
            message=f"Rule {rule_id} has no backup at position {index}.",
            details={"rule_id": rule_id, "index": index, "available": available},
        )


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

class RowValidationError(SchemaEngineError):
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "ROW_VALIDATION"

    def __init__(self, errors: List[str], valid_rows: int = 0):
        self.errors = list(errors)
        if errors:
            message = f"Found {len(errors)} validation error(s). Fix the listed rows before starting a run."
        else:
            message = "Add at least one complete row before starting a run."
        super().__init__(message, {"errors": self.errors, "valid_rows": valid_rows})


class EmptyBatchError(SchemaEngineError):
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "EMPTY_BATCH"

    def __init__(self, message: str = "Batch must contain at least one row."):
        super().__init__(message)


class BatchTooLargeError(SchemaEngineError):
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "BATCH_TOO_LARGE"

    def __init__(self, max_rows: int, received: int):
        super().__init__(
            message=f"Batch exceeds maximum size of {max_rows} rows. Received {received}.",
            details={"max_rows": max_rows, "received": received},
        )


class RunCreationError(SchemaEngineError):
    code = "RUN_CREATION"

    def __init__(self, message: str):
        super().__init__(f"Run could not be created: {message}")


class RunStateError(SchemaEngineError):
    http_status = status.HTTP_409_CONFLICT
    code = "RUN_STATE"

    def __init__(self, run_id: int, current: str, wanted: str):
        super().__init__(
            message=f"Run {run_id} is {current}; cannot move it to {wanted}.",
            details={"run_id": run_id, "status": current, "wanted": wanted},
        )


class StatusRegressionError(SchemaEngineError):
    code = "STATUS_REGRESSION"

    def __init__(self, item_id: int, field: str, current: str, wanted: str):
        super().__init__(
            message=f"Run item {item_id}: {field} is already {current} and cannot change to {wanted}.",
            details={"item_id": item_id, "field": field, "status": current, "wanted": wanted},
        )


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class DuplicatePageError(SchemaEngineError):
    http_status = status.HTTP_409_CONFLICT
    code = "DUPLICATE_PAGE"

    def __init__(self, path: str, page_id: int):
        super().__init__(
            message=f"A page already exists at {path}.",
            details={"path": path, "page_id": page_id},
        )


class CollaboratorError(SchemaEngineError):
    """HTML fetch or schema generation failed for a page."""
    http_status = status.HTTP_502_BAD_GATEWAY
    code = "COLLABORATOR_FAILED"


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

async def schema_engine_exception_handler(request: Request, exc: SchemaEngineError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return structured 422 with machine-readable field errors."""
    field_errors = []
    for error in exc.errors():
        field_errors.append({
            "field": ".".join(str(loc) for loc in error["loc"] if loc != "body"),
            "message": error["msg"],
            "type": error["type"],
        })
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "code": "VALIDATION_ERROR",
            "message": "Request validation failed.",
            "details": {"errors": field_errors},
        },
    )
