# tests/test_runs.py
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from schema_engine.errors import (
    BatchTooLargeError,
    CollaboratorError,
    EmptyBatchError,
    RunCreationError,
    RunStateError,
    StatusRegressionError,
)
from schema_engine.models import BatchRun, RunItem, as_utc, utcnow
from schema_engine.services import rules as store
from schema_engine.services.collaborators import Collaborators, ValidationOutcome
from schema_engine.services.events import KIND_ITEM, KIND_RUN, ChangeFeed
from schema_engine.services.normalize import NormalizedRow
from schema_engine.services.pages import SqlPageUpserter, get_page
from schema_engine.services.runs import (
    BatchRunOrchestrator,
    cleanup_old_runs,
    create_run,
    delete_run,
    get_run,
    get_run_items,
    reconcile_stale_runs,
    run_to_dict,
)

class FakeFetcher:
    def __init__(self, fail_paths=()):
        self.fail_paths = set(fail_paths)
        self.calls = []
        self.on_fetch = None

    async def fetch_html(self, session, page_id):
        page = await get_page(session, page_id)
        self.calls.append(page.path)
        if self.on_fetch:
            self.on_fetch(page)
        if page.path in self.fail_paths:
            raise CollaboratorError(f"HTML fetch failed for {page.path}: HTTP 500")
        page.html = f"<html><title>{page.path}</title></html>"
        session.add(page)
        await session.commit()

class FakeGenerator:
    def __init__(self):
        self.calls = []

    async def generate_schema(self, session, page_id, rule):
        self.calls.append((page_id, rule.id))
        page = await get_page(session, page_id)
        page.jsonld = {"@context": "https://schema.org", "@type": "WebPage", "name": page.path}
        session.add(page)
        await session.commit()

class FakeValidator:
    async def validate(self, session, page_id):
        return ValidationOutcome(status="valid", warning_count=1,
                                 issues=[{"severity": "warning", "message": "Consider adding: description"}])

async def _items(session_factory, run_id):
    async with session_factory() as s:
        return await get_run_items(s, run_id)

def _rows(n, prefix="/p"):
    return [NormalizedRow(row_number=i, domain="Corporate", path=f"{prefix}{i}", page_type="news", category="community")
            for i in range(1, n + 1)]

def _orchestrator(session_factory, fetcher=None, concurrency=1, feed=None):
    collab = Collaborators(pages=SqlPageUpserter(), fetcher=fetcher or FakeFetcher(),
                           generator=FakeGenerator(), validator=FakeValidator())
    return BatchRunOrchestrator(session_factory, collab, feed=feed or ChangeFeed(), concurrency=concurrency)

async def _global_rule(session):
    rule = await store.create_rule(session, "Global", "Describe the page as a WebPage.")
    return await store.activate_rule(session, rule.id)

@pytest.mark.asyncio
async def test_create_run_persists_one_item_per_row(session):
    run = await create_run(session, "  ", _rows(3))
    assert run.status == "pending"
    assert run.total_rows == 3
    assert run.label.startswith("Batch ")
    items = await get_run_items(session, run.id)
    assert [i.row_number for i in items] == [1, 2, 3]
    assert all(i.result == "pending" and i.html_status == "pending" for i in items)

@pytest.mark.asyncio
async def test_create_run_rejects_empty_and_oversized(session):
    with pytest.raises(EmptyBatchError):
        await create_run(session, "x", [])
    with pytest.raises(BatchTooLargeError):
        await create_run(session, "x", _rows(3), max_rows=2)

@pytest.mark.asyncio
async def test_create_run_rolls_back_on_bad_row(session):
    rows = _rows(2) + [{"row_number": None, "domain": "Corporate", "path": "/z", "page_type": "news", "category": "community"}]
    with pytest.raises(RunCreationError):
        await create_run(session, "broken", rows)
    assert (await session.execute(select(func.count()).select_from(BatchRun))).scalar_one() == 0
    assert (await session.execute(select(func.count()).select_from(RunItem))).scalar_one() == 0

@pytest.mark.asyncio
async def test_failed_fetch_does_not_stop_the_run(session_factory, session):
    await _global_rule(session)
    run = await create_run(session, "ten rows", _rows(10))
    fetcher = FakeFetcher(fail_paths={"/p5"})
    orch = _orchestrator(session_factory, fetcher)

    done = await orch.process(run.id)
    assert done.status == "completed"
    assert done.total_rows == 10

    items = await _items(session_factory, run.id)
    assert len(items) == 10
    row5 = items[4]
    assert row5.result == "created"
    assert row5.html_status == "failed"
    assert "HTML fetch" in row5.error_message
    for it in items[5:]:
        assert it.result == "created"
        assert it.html_status == "success"
        assert it.schema_status == "success"
        assert it.validation_status == "valid"
        assert it.validation_warning_count == 1
    assert fetcher.calls == [f"/p{i}" for i in range(1, 11)]

@pytest.mark.asyncio
async def test_existing_pages_are_skipped_without_overwrite(session_factory, session):
    await _global_rule(session)
    await SqlPageUpserter().upsert_page(session, "Corporate", "/p1", "news", "community", True)
    run = await create_run(session, "dupes", _rows(2), overwrite=False)
    fetcher = FakeFetcher()
    await _orchestrator(session_factory, fetcher).process(run.id)

    first, second = await _items(session_factory, run.id)
    assert first.result == "skipped_duplicate"
    assert first.page_id is not None
    assert first.validation_status == "skipped"
    assert first.html_status == "pending"
    assert second.result == "created"
    assert fetcher.calls == ["/p2"]

@pytest.mark.asyncio
async def test_existing_pages_are_updated_with_overwrite(session_factory, session):
    await _global_rule(session)
    await SqlPageUpserter().upsert_page(session, "Corporate", "/p1", "news", "community", True)
    run = await create_run(session, "again", _rows(1), overwrite=True)
    await _orchestrator(session_factory).process(run.id)
    (item,) = await _items(session_factory, run.id)
    assert item.result == "updated"
    assert item.schema_status == "success"

@pytest.mark.asyncio
async def test_missing_rule_fails_schema_step_only(session_factory, session):
    run = await create_run(session, "no rule", _rows(1))
    await _orchestrator(session_factory).process(run.id)
    (item,) = await _items(session_factory, run.id)
    assert item.result == "created"
    assert item.html_status == "success"
    assert item.schema_status == "failed"
    assert "Schema" in item.error_message
    assert item.validation_status == "valid"

@pytest.mark.asyncio
async def test_concurrent_processing_completes_every_row(session_factory, session):
    await _global_rule(session)
    run = await create_run(session, "parallel", _rows(6))
    done = await _orchestrator(session_factory, concurrency=3).process(run.id)
    assert done.status == "completed"
    items = await _items(session_factory, run.id)
    assert all(i.schema_status == "success" for i in items)

@pytest.mark.asyncio
async def test_status_changes_are_published_in_step_order(session_factory, session):
    await _global_rule(session)
    run = await create_run(session, "watched", _rows(2))
    feed = ChangeFeed()
    sub = feed.subscribe(run.id)
    await _orchestrator(session_factory, feed=feed).process(run.id)

    deltas = []
    while sub.pending():
        deltas.append(await sub.get())
    assert deltas[0].kind == KIND_RUN and deltas[0].data["status"] == "running"
    assert deltas[-1].kind == KIND_RUN and deltas[-1].data["status"] == "completed"

    first_item = [d.data for d in deltas if d.kind == KIND_ITEM and d.data["row_number"] == 1]
    states = [(d["result"], d["html_status"], d["schema_status"], d["validation_status"]) for d in first_item]
    assert states == [
        ("created", "pending", "pending", "pending"),
        ("created", "success", "pending", "pending"),
        ("created", "success", "success", "pending"),
        ("created", "success", "success", "valid"),
    ]
    assert [d.seq for d in deltas] == sorted(d.seq for d in deltas)

@pytest.mark.asyncio
async def test_status_fields_never_regress(session_factory, session):
    run = await create_run(session, "regress", _rows(1))
    orch = _orchestrator(session_factory)
    (item,) = await get_run_items(session, run.id)
    await orch._set_item(session, item, html_status="success")
    with pytest.raises(StatusRegressionError):
        await orch._set_item(session, item, html_status="failed")
    with pytest.raises(StatusRegressionError):
        await orch._set_item(session, item, html_status="pending")

@pytest.mark.asyncio
async def test_cancel_stops_remaining_rows(session_factory, session):
    await _global_rule(session)
    run = await create_run(session, "cancel me", _rows(4))
    fetcher = FakeFetcher()
    orch = _orchestrator(session_factory, fetcher)
    fetcher.on_fetch = lambda page: orch.cancel(run.id)

    done = await orch.process(run.id)
    assert done.status == "failed"
    assert "not processed" in done.error_message
    items = await _items(session_factory, run.id)
    assert items[0].result == "created"
    assert [i.result for i in items[1:]] == ["pending"] * 3

@pytest.mark.asyncio
async def test_process_requires_pending_run(session_factory, session):
    await _global_rule(session)
    run = await create_run(session, "once", _rows(1))
    orch = _orchestrator(session_factory)
    await orch.process(run.id)
    with pytest.raises(RunStateError):
        await orch.process(run.id)

@pytest.mark.asyncio
async def test_delete_cleanup_and_reconcile(session):
    running = await create_run(session, "stuck", _rows(1))
    running.status = "running"
    running.started_at = utcnow() - timedelta(hours=3)
    old = await create_run(session, "old", _rows(1))
    old.status = "completed"
    old.created_at = utcnow() - timedelta(days=45)
    session.add_all([running, old])
    await session.commit()

    with pytest.raises(RunStateError):
        await delete_run(session, running.id)

    removed = await cleanup_old_runs(session, 30)
    assert [r["id"] for r in removed] == [old.id]

    feed = ChangeFeed()
    sub = feed.subscribe(running.id)
    assert await reconcile_stale_runs(session, 60, active_ids=[running.id], feed=feed) == []
    assert await reconcile_stale_runs(session, 60, feed=feed) == [running.id]
    assert (await sub.get(timeout=1)).data["status"] == "failed"

    await session.refresh(running)
    assert running.status == "failed"
    await delete_run(session, running.id)
    assert (await session.execute(select(func.count()).select_from(RunItem))).scalar_one() == 0

class UnstorableIssuesValidator(FakeValidator):
    """Returns issues the JSON column cannot serialize for one path."""
    def __init__(self, bad_path):
        self.bad_path = bad_path

    async def validate(self, session, page_id):
        page = await get_page(session, page_id)
        if page.path == self.bad_path:
            return ValidationOutcome(status="valid", issues=[{"at": datetime.now(timezone.utc)}])
        return await super().validate(session, page_id)

@pytest.mark.asyncio
async def test_row_that_cannot_be_saved_does_not_abort_the_run(session_factory, session):
    await _global_rule(session)
    run = await create_run(session, "bad issues", _rows(4))
    orch = _orchestrator(session_factory)
    orch.c.validator = UnstorableIssuesValidator("/p2")

    done = await orch.process(run.id)
    assert done.status == "completed"

    items = await _items(session_factory, run.id)
    bad = items[1]
    assert bad.result == "created"
    assert bad.schema_status == "success"
    assert bad.validation_status == "error"
    assert "Row" in bad.error_message
    for it in items[2:]:
        assert it.validation_status == "valid"

class FailingRowOrchestrator(BatchRunOrchestrator):
    def __init__(self, *args, fail_item_id=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_item_id = fail_item_id

    async def _process_row(self, item_id, overwrite):
        if item_id == self.fail_item_id:
            raise RuntimeError("database went away")
        await asyncio.sleep(0.02)
        await super()._process_row(item_id, overwrite)

@pytest.mark.asyncio
async def test_failed_worker_lets_the_others_settle_first(session_factory, session):
    await _global_rule(session)
    run = await create_run(session, "one bad worker", _rows(5))
    first = (await get_run_items(session, run.id))[0]
    collab = Collaborators(pages=SqlPageUpserter(), fetcher=FakeFetcher(),
                           generator=FakeGenerator(), validator=FakeValidator())
    orch = FailingRowOrchestrator(session_factory, collab, concurrency=3, fail_item_id=first.id)

    with pytest.raises(RuntimeError):
        await orch.process(run.id)

    async with session_factory() as s:
        finished = await get_run(s, run.id)
    assert finished.status == "failed"
    assert "1 row(s) not processed" in finished.error_message

    items = await _items(session_factory, run.id)
    assert items[0].result == "pending"
    assert all(i.validation_status == "valid" for i in items[1:])
    before = [(i.result, i.validation_status, i.updated_at) for i in items]
    await asyncio.sleep(0.1)
    after = [(i.result, i.validation_status, i.updated_at) for i in await _items(session_factory, run.id)]
    assert after == before

@pytest.mark.asyncio
async def test_run_timestamps_survive_a_reload(session_factory, session):
    await _global_rule(session)
    run = await create_run(session, "timed", _rows(1))
    await _orchestrator(session_factory).process(run.id)

    async with session_factory() as s:
        reloaded = await get_run(s, run.id)
        (item,) = await get_run_items(s, run.id)
    assert reloaded.created_at is not None
    assert as_utc(reloaded.started_at) <= as_utc(reloaded.finished_at)
    assert as_utc(item.updated_at).tzinfo is not None

    data = run_to_dict(reloaded)
    for key in ("created_at", "started_at", "finished_at"):
        assert data[key].endswith("+00:00")
