# tests/conftest.py
import pytest
import pytest_asyncio

from schema_engine.db import init_db, make_session_factory
from schema_engine.services.taxonomy import seed_taxonomy

PAGE_TYPES = [
    {"id": "news", "label": "News", "domain": "Corporate", "sort_order": 1},
    {"id": "about", "label": "About", "domain": "Corporate", "sort_order": 2},
    {"id": "beers", "label": "Beers", "domain": "Beer", "sort_order": 1},
    {"id": "retired", "label": "Retired", "domain": "Beer", "sort_order": 9, "active": False},
]
CATEGORIES = [
    {"id": "community", "label": "Community", "page_type_id": "news"},
    {"id": "press", "label": "Press Release", "page_type_id": "news"},
    {"id": "drink_brands", "label": "Drink Brands", "page_type_id": "beers"},
    {"id": "seasonal", "label": "Seasonal", "page_type_id": "beers", "active": False},
]



@pytest_asyncio.fixture
async def session_factory(tmp_path):
    factory = make_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    bind = factory.kw["bind"]
    await init_db(bind=bind)
    yield factory
    await bind.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest_asyncio.fixture
async def seeded(session):
    await seed_taxonomy(session, PAGE_TYPES, CATEGORIES)
    return session
