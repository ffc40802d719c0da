from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from schema_engine.config import RUN_CONCURRENCY
from schema_engine.services.collaborators import Collaborators, default_collaborators
from schema_engine.services.events import ChangeFeed
from schema_engine.services.resolver import RuleResolver
from schema_engine.services.rules import ScopeLocks
from schema_engine.services.runs import BatchRunOrchestrator
from schema_engine.services.taxonomy import TaxonomyCache

@dataclass
class Engine:
    """Everything with process lifetime: taxonomy cache, resolver, change feed, orchestrator, activation locks."""
    taxonomy: TaxonomyCache
    resolver: RuleResolver
    feed: ChangeFeed
    orchestrator: BatchRunOrchestrator
    rule_locks: ScopeLocks = field(default_factory=ScopeLocks)

def build_engine(session_factory: async_sessionmaker,
                 collaborators: Optional[Collaborators] = None,
                 concurrency: int = RUN_CONCURRENCY) -> Engine:
    resolver = RuleResolver()
    feed = ChangeFeed()
    orchestrator = BatchRunOrchestrator(
        session_factory,
        collaborators or default_collaborators(),
        resolver=resolver,
        feed=feed,
        concurrency=concurrency,
    )
    return Engine(taxonomy=TaxonomyCache(), resolver=resolver, feed=feed, orchestrator=orchestrator)

def get_engine(request: Request) -> Engine:
    return request.app.state.engine
