from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from schema_engine.config import LOG_LEVEL, STALE_RUN_MINUTES
from schema_engine.db import AsyncSessionLocal, init_db
from schema_engine.engine import build_engine
from schema_engine.errors import SchemaEngineError, schema_engine_exception_handler, validation_exception_handler
from schema_engine.services.runs import reconcile_stale_runs
from schema_engine.web.routers import batch, rules, taxonomy

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

APP_NAME = "schema-engine"
app = FastAPI(title=f"{APP_NAME} API")

app.add_exception_handler(SchemaEngineError, schema_engine_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)

app.state.engine = build_engine(AsyncSessionLocal)

app.include_router(taxonomy.router)
app.include_router(rules.router, prefix="/admin")
app.include_router(batch.router)

logger.info("Mounted routers: %s", [taxonomy.__name__, rules.__name__, batch.__name__])

@app.on_event("startup")
async def startup_event():
    await init_db()
    async with AsyncSessionLocal() as session:
        await app.state.engine.taxonomy.reload(session)
        # runs left running by an earlier process
        await reconcile_stale_runs(session, STALE_RUN_MINUTES)

@app.get("/")
async def index():
    return {"name": APP_NAME, "ok": True}
