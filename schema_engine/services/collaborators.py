"""Contracts for the work the orchestrator hands off per row.

The orchestrator only depends on these protocols. Default implementations
live in services/pages.py, services/fetch.py, services/providers.py and
services/validate.py; tests swap in fakes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from schema_engine.models import Rule, ValidationStatus


@dataclass
class PageUpsert:
    page_id: int
    was_created: bool


@dataclass
class ValidationOutcome:
    status: str = ValidationStatus.SKIPPED.value
    error_count: int = 0
    warning_count: int = 0
    issues: List[dict] = field(default_factory=list)


class PageUpserter(Protocol):
    async def upsert_page(
        self,
        session: AsyncSession,
        domain: str,
        path: str,
        page_type: Optional[str],
        category: Optional[str],
        overwrite: bool,
    ) -> PageUpsert:
        """Create or reuse the page at `path`; raise DuplicatePageError when overwrite is off."""
        ...


class HtmlFetcher(Protocol):
    async def fetch_html(self, session: AsyncSession, page_id: int) -> None:
        """Store fresh HTML on the page or raise."""
        ...


class SchemaGenerator(Protocol):
    async def generate_schema(self, session: AsyncSession, page_id: int, rule: Rule) -> None:
        """Generate and store JSON-LD for the page using the rule's body, or raise."""
        ...


class SchemaValidator(Protocol):
    async def validate(self, session: AsyncSession, page_id: int) -> ValidationOutcome:
        ...


@dataclass
class Collaborators:
    pages: PageUpserter
    fetcher: HtmlFetcher
    generator: SchemaGenerator
    validator: SchemaValidator


def default_collaborators() -> Collaborators:
    from schema_engine.services.fetch import HttpHtmlFetcher
    from schema_engine.services.pages import SqlPageUpserter
    from schema_engine.services.providers import ProviderSchemaGenerator
    from schema_engine.services.validate import JsonLdValidator

    return Collaborators(
        pages=SqlPageUpserter(),
        fetcher=HttpHtmlFetcher(),
        generator=ProviderSchemaGenerator(),
        validator=JsonLdValidator(),
    )
