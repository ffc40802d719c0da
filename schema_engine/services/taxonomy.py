# schema_engine/services/taxonomy.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schema_engine.models import CategoryDefinition, PageTypeDefinition
from schema_engine.services.settings import get_settings

logger = logging.getLogger(__name__)


def _norm(s: str | None) -> str:
    return (s or "").strip()


def _lc(s: str | None) -> str:
    return _norm(s).lower()


@dataclass(frozen=True)
class PageType:
    id: str
    label: str
    domain: str
    active: bool = True
    description: Optional[str] = None
    sort_order: int = 0


@dataclass(frozen=True)
class Category:
    id: str
    label: str
    page_type_id: str
    active: bool = True
    description: Optional[str] = None
    sort_order: int = 0


class TaxonomyProvider(Protocol):
    def list_domains(self) -> List[str]: ...
    def list_page_types(self, active_only: bool = True) -> List[PageType]: ...
    def list_categories(self, active_only: bool = True) -> List[Category]: ...


T = TypeVar("T", PageType, Category)


def ci_match(value: str | None, options: Iterable[T]) -> Optional[T]:
    """Case-insensitive match of `value` against option ids first, then labels."""
    tgt = _lc(value)
    if not tgt:
        return None
    opts = list(options)
    for opt in opts:
        if _lc(opt.id) == tgt:
            return opt
    for opt in opts:
        if _lc(opt.label) == tgt:
            return opt
    return None


@dataclass(frozen=True)
class TaxonomySnapshot:
    """Immutable view of domains -> page types -> categories at one point in time."""
    domains: Tuple[str, ...] = ()
    page_types: Tuple[PageType, ...] = ()
    categories: Tuple[Category, ...] = field(default_factory=tuple)

    def list_domains(self) -> List[str]:
        return list(self.domains)

    def list_page_types(self, active_only: bool = True) -> List[PageType]:
        return [pt for pt in self.page_types if pt.active or not active_only]

    def list_categories(self, active_only: bool = True) -> List[Category]:
        return [c for c in self.categories if c.active or not active_only]

    def match_domain(self, value: str | None) -> Optional[str]:
        tgt = _lc(value)
        if not tgt:
            return None
        for d in self.domains:
            if d.lower() == tgt:
                return d
        return None

    def page_types_for_domain(self, domain: str | None, active_only: bool = True) -> List[PageType]:
        return [pt for pt in self.list_page_types(active_only) if pt.domain == domain]

    def categories_for_page_type(self, page_type_id: str | None, active_only: bool = True) -> List[Category]:
        return [c for c in self.list_categories(active_only) if c.page_type_id == page_type_id]

    def page_type_label(self, page_type_id: str) -> str:
        for pt in self.page_types:
            if pt.id == page_type_id:
                return pt.label
        return page_type_id

    def category_label(self, category_id: str) -> str:
        for c in self.categories:
            if c.id == category_id:
                return c.label
        return category_id

    def to_dict(self) -> dict:
        return {
            "domains": list(self.domains),
            "page_types": [pt.__dict__ for pt in self.page_types],
            "categories": [c.__dict__ for c in self.categories],
        }


async def load_snapshot(session: AsyncSession) -> TaxonomySnapshot:
    s = await get_settings(session)
    pts = await session.execute(
        select(PageTypeDefinition).order_by(PageTypeDefinition.sort_order, PageTypeDefinition.label)
    )
    cats = await session.execute(
        select(CategoryDefinition).order_by(CategoryDefinition.sort_order, CategoryDefinition.label)
    )
    return TaxonomySnapshot(
        domains=tuple(s.domains or ()),
        page_types=tuple(
            PageType(id=r.id, label=r.label, domain=r.domain, active=r.active,
                     description=r.description, sort_order=r.sort_order)
            for r in pts.scalars().all()
        ),
        categories=tuple(
            Category(id=r.id, label=r.label, page_type_id=r.page_type_id, active=r.active,
                     description=r.description, sort_order=r.sort_order)
            for r in cats.scalars().all()
        ),
    )


class TaxonomyCache:
    """Holds the current TaxonomySnapshot for whoever composes the engine.

    `reload()` swaps the whole snapshot in a single assignment, so readers see
    either the old taxonomy or the new one, never a mix.
    """

    def __init__(self, snapshot: Optional[TaxonomySnapshot] = None):
        self._snapshot = snapshot
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def snapshot(self) -> TaxonomySnapshot:
        return self._snapshot or TaxonomySnapshot()

    async def reload(self, session: AsyncSession) -> TaxonomySnapshot:
        async with self._lock:
            snap = await load_snapshot(session)
            self._snapshot = snap
        logger.info(
            "Taxonomy reloaded: %d domains, %d page types, %d categories",
            len(snap.domains), len(snap.page_types), len(snap.categories),
        )
        return snap

    async def get(self, session: AsyncSession) -> TaxonomySnapshot:
        if self._snapshot is None:
            return await self.reload(session)
        return self._snapshot


async def seed_taxonomy(
    session: AsyncSession,
    page_types: Sequence[dict],
    categories: Sequence[dict],
) -> None:
    """Insert or replace taxonomy rows (admin import, tests)."""
    for row in page_types:
        await session.merge(PageTypeDefinition(**row))
    for row in categories:
        await session.merge(CategoryDefinition(**row))
    await session.commit()
