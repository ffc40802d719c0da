from __future__ import annotations
from enum import Enum
from typing import Optional, List
from datetime import datetime, timezone
from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import String, Text

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to values SQLite hands back without an offset."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def iso_utc(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None

# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------

class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

class ItemResult(str, Enum):
    PENDING = "pending"
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    ERROR = "error"

class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"

class ValidationStatus(str, Enum):
    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    SKIPPED = "skipped"
    ERROR = "error"

TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED.value, RunStatus.FAILED.value})

# ---------------------------------------------------------------------------
# Taxonomy (admin-edited elsewhere, read-only to the engine)
# ---------------------------------------------------------------------------

class PageTypeDefinition(SQLModel, table=True):
    __tablename__ = "page_type_definitions"
    id: str = Field(primary_key=True)
    label: str
    domain: str = Field(index=True)
    description: Optional[str] = None
    sort_order: int = Field(default=0)
    active: bool = Field(default=True)

class CategoryDefinition(SQLModel, table=True):
    __tablename__ = "page_category_definitions"
    id: str = Field(primary_key=True)
    page_type_id: str = Field(index=True)
    label: str
    description: Optional[str] = None
    sort_order: int = Field(default=0)
    active: bool = Field(default=True)

# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def scope_key(domain: Optional[str], page_type: Optional[str], category: Optional[str]) -> str:
    """Stable key for a (domain, page_type, category) triple; None parts become '*'."""
    return "|".join(p if p else "*" for p in (domain, page_type, category))

class Rule(SQLModel, table=True):
    __tablename__ = "rules"
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    body: str = Field(default="", sa_column=Column(Text, nullable=False))
    domain: Optional[str] = Field(default=None, index=True)
    page_type: Optional[str] = Field(default=None)
    category: Optional[str] = Field(default=None)
    is_active: bool = Field(default=False, index=True)

    # scope_key is always set; active_scope mirrors it only while the rule is
    # active, so the unique constraint allows one active rule per triple
    scope_key: str = Field(default="*|*|*", index=True)
    active_scope: Optional[str] = Field(default=None, sa_column=Column(String, unique=True, nullable=True))

    # newest first, at most three {content, timestamp} entries
    backups: List[dict] = Field(sa_column=Column(JSON), default_factory=list)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------

class Page(SQLModel, table=True):
    __tablename__ = "pages"
    id: Optional[int] = Field(default=None, primary_key=True)
    domain: str = Field(index=True)
    path: str = Field(sa_column=Column(String, unique=True, nullable=False, index=True))
    page_type: Optional[str] = None
    category: Optional[str] = None
    status: str = Field(default="not_started")

    html: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    html_fetched_at: Optional[datetime] = None
    jsonld: dict = Field(sa_column=Column(JSON), default_factory=dict)
    rule_id: Optional[int] = Field(default=None, foreign_key="rules.id")
    validation_issues: list = Field(sa_column=Column(JSON), default_factory=list)

    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

# ---------------------------------------------------------------------------
# Batch runs
# ---------------------------------------------------------------------------

class BatchRun(SQLModel, table=True):
    __tablename__ = "batch_runs"
    id: Optional[int] = Field(default=None, primary_key=True)
    label: str
    total_rows: int = Field(default=0)
    status: str = Field(default=RunStatus.PENDING.value, index=True)
    overwrite: bool = Field(default=True)
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

class RunItem(SQLModel, table=True):
    __tablename__ = "batch_run_items"
    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: int = Field(foreign_key="batch_runs.id", index=True)
    row_number: int
    domain: str
    path: str
    page_type: str
    category: str
    page_id: Optional[int] = None
    rule_id: Optional[int] = None

    result: str = Field(default=ItemResult.PENDING.value)
    error_message: Optional[str] = None
    html_status: str = Field(default=StepStatus.PENDING.value)
    schema_status: str = Field(default=StepStatus.PENDING.value)
    validation_status: str = Field(default=ValidationStatus.PENDING.value)
    validation_error_count: int = Field(default=0)
    validation_warning_count: int = Field(default=0)
    validation_issues: list = Field(sa_column=Column(JSON), default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)
