from __future__ import annotations
import logging
from typing import Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from schema_engine.errors import DuplicatePageError, PageNotFoundError
from schema_engine.models import Page, utcnow
from schema_engine.services.collaborators import PageUpsert
from schema_engine.services.normalize import normalize_path

logger = logging.getLogger(__name__)

async def get_page(session: AsyncSession, page_id: int) -> Page:
    page = await session.get(Page, page_id)
    if page is None:
        raise PageNotFoundError(page_id)
    return page

async def find_page_by_path(session: AsyncSession, path: str) -> Optional[Page]:
    res = await session.execute(select(Page).where(Page.path == normalize_path(path)))
    return res.scalars().first()

class SqlPageUpserter:
    """Pages are unique by normalized path; an existing page is re-used only when overwrite is on."""

    async def upsert_page(self, session: AsyncSession, domain: str, path: str,
                          page_type: Optional[str], category: Optional[str], overwrite: bool) -> PageUpsert:
        path = normalize_path(path)
        existing = await find_page_by_path(session, path)
        if existing is None:
            page = Page(domain=domain, path=path, page_type=page_type, category=category)
            session.add(page)
            try:
                await session.commit()
            except IntegrityError:
                # another writer created the same path in between
                await session.rollback()
                existing = await find_page_by_path(session, path)
                if existing is None:
                    raise
            else:
                await session.refresh(page)
                logger.info("Created page %s (ID: %s)", path, page.id)
                return PageUpsert(page_id=page.id, was_created=True)

        if not overwrite:
            raise DuplicatePageError(path, existing.id)

        existing.domain = domain
        existing.page_type = page_type
        existing.category = category
        existing.updated_at = utcnow()
        session.add(existing)
        await session.commit()
        logger.info("Found existing page %s (ID: %s) - will update", path, existing.id)
        return PageUpsert(page_id=existing.id, was_created=False)
