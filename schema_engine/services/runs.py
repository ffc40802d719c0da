"""Batch runs: creation, the per-row processing pipeline, and housekeeping.

A run owns one item per submitted row. `BatchRunOrchestrator.process` walks
the items through page upsert -> HTML fetch -> schema generation ->
validation, committing and publishing every status change as it happens.
A failing row is recorded on its item and never stops the run.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schema_engine.config import MAX_BATCH_ROWS, RUN_CONCURRENCY
from schema_engine.errors import (
    BatchTooLargeError,
    DuplicatePageError,
    EmptyBatchError,
    RunCreationError,
    RunNotFoundError,
    RunStateError,
    StatusRegressionError,
)
from schema_engine.models import (
    BatchRun,
    ItemResult,
    RunItem,
    RunStatus,
    StepStatus,
    TERMINAL_RUN_STATUSES,
    ValidationStatus,
    as_utc,
    iso_utc,
    utcnow,
)
from schema_engine.services.collaborators import Collaborators
from schema_engine.services.events import KIND_ITEM, KIND_RUN, ChangeFeed
from schema_engine.services.resolver import RuleResolver
from schema_engine.services.settings import get_settings

logger = logging.getLogger(__name__)

STATUS_FIELDS = ("result", "html_status", "schema_status", "validation_status")
PENDING = "pending"


def _v(x: Any) -> Any:
    return x.value if isinstance(x, Enum) else x


def _field(row: Any, name: str) -> Any:
    if isinstance(row, dict):
        return row.get(name)
    return getattr(row, name, None)


def run_to_dict(run: BatchRun) -> dict:
    return {
        "id": run.id,
        "label": run.label,
        "total_rows": run.total_rows,
        "status": run.status,
        "overwrite": run.overwrite,
        "error_message": run.error_message,
        "created_at": iso_utc(run.created_at),
        "started_at": iso_utc(run.started_at),
        "finished_at": iso_utc(run.finished_at),
    }


def item_to_dict(item: RunItem) -> dict:
    return {
        "id": item.id,
        "run_id": item.run_id,
        "row_number": item.row_number,
        "domain": item.domain,
        "path": item.path,
        "page_type": item.page_type,
        "category": item.category,
        "page_id": item.page_id,
        "rule_id": item.rule_id,
        "result": item.result,
        "error_message": item.error_message,
        "html_status": item.html_status,
        "schema_status": item.schema_status,
        "validation_status": item.validation_status,
        "validation_error_count": item.validation_error_count,
        "validation_warning_count": item.validation_warning_count,
        "validation_issues": list(item.validation_issues or []),
    }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def get_run(session: AsyncSession, run_id: int) -> BatchRun:
    run = await session.get(BatchRun, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


async def get_run_items(session: AsyncSession, run_id: int) -> List[RunItem]:
    res = await session.execute(
        select(RunItem).where(RunItem.run_id == run_id).order_by(RunItem.row_number, RunItem.id)
    )
    return list(res.scalars().all())


async def count_items(session: AsyncSession, run_id: int, pending_only: bool = False) -> int:
    stmt = select(func.count()).select_from(RunItem).where(RunItem.run_id == run_id)
    if pending_only:
        stmt = stmt.where(RunItem.result == PENDING)
    res = await session.execute(stmt)
    return int(res.scalar_one())


async def list_runs(session: AsyncSession, limit: int = 50, status: Optional[str] = None) -> List[BatchRun]:
    stmt = select(BatchRun).order_by(BatchRun.created_at.desc(), BatchRun.id.desc()).limit(limit)
    if status:
        stmt = stmt.where(BatchRun.status == status)
    res = await session.execute(stmt)
    return list(res.scalars().all())


# ---------------------------------------------------------------------------
# Creation and housekeeping
# ---------------------------------------------------------------------------

async def create_run(
    session: AsyncSession,
    label: Optional[str],
    rows: Sequence[Any],
    overwrite: Optional[bool] = None,
    max_rows: int = MAX_BATCH_ROWS,
) -> BatchRun:
    """Persist a pending run and one pending item per row in a single transaction."""
    if not rows:
        raise EmptyBatchError()
    if len(rows) > max_rows:
        raise BatchTooLargeError(max_rows, len(rows))
    if overwrite is None:
        overwrite = (await get_settings(session)).overwrite_existing

    label = (label or "").strip() or f"Batch {utcnow():%Y-%m-%d %H:%M}"
    try:
        run = BatchRun(label=label, total_rows=len(rows), overwrite=overwrite)
        session.add(run)
        await session.flush()
        session.add_all([
            RunItem(
                run_id=run.id,
                row_number=int(_field(r, "row_number")),
                domain=_field(r, "domain"),
                path=_field(r, "path"),
                page_type=_field(r, "page_type"),
                category=_field(r, "category"),
            )
            for r in rows
        ])
        await session.commit()
    except (SQLAlchemyError, TypeError, ValueError) as e:
        await session.rollback()
        logger.error("Run creation rolled back: %s", e)
        raise RunCreationError(str(e))

    await session.refresh(run)
    logger.info("Run %s created with %d rows (%s)", run.id, run.total_rows, run.label)
    return run


async def delete_run(session: AsyncSession, run_id: int) -> None:
    """Irreversible; removes the run and every item it owns."""
    run = await get_run(session, run_id)
    if run.status == RunStatus.RUNNING:
        raise RunStateError(run_id, run.status, "deleted")
    await session.execute(delete(RunItem).where(RunItem.run_id == run_id))
    await session.delete(run)
    await session.commit()
    logger.info("Deleted run %s (%s)", run_id, run.label)


async def cleanup_old_runs(session: AsyncSession, days: int) -> List[dict]:
    """Delete completed runs created more than `days` ago, with their items."""
    cutoff = utcnow() - timedelta(days=days)
    res = await session.execute(
        select(BatchRun).where(BatchRun.status == RunStatus.COMPLETED.value, BatchRun.created_at < cutoff)
    )
    runs = list(res.scalars().all())
    removed = [{"id": r.id, "label": r.label, "total_rows": r.total_rows} for r in runs]
    if runs:
        ids = [r.id for r in runs]
        await session.execute(delete(RunItem).where(RunItem.run_id.in_(ids)))
        await session.execute(delete(BatchRun).where(BatchRun.id.in_(ids)))
        await session.commit()
    logger.info("Cleaned up %d completed runs older than %d days", len(removed), days)
    return removed


async def reconcile_stale_runs(
    session: AsyncSession,
    max_age_minutes: int,
    active_ids: Iterable[int] = (),
    feed: Optional[ChangeFeed] = None,
) -> List[int]:
    """Fail runs stuck in `running` longer than `max_age_minutes` that no worker owns."""
    cutoff = utcnow() - timedelta(minutes=max_age_minutes)
    skip = set(active_ids)
    res = await session.execute(select(BatchRun).where(BatchRun.status == RunStatus.RUNNING.value))
    failed: List[int] = []
    for run in res.scalars().all():
        began = as_utc(run.started_at or run.created_at)
        if run.id in skip or began is None or began >= cutoff:
            continue
        run.status = RunStatus.FAILED.value
        run.error_message = f"No progress for over {max_age_minutes} minutes; marked failed"
        run.finished_at = utcnow()
        session.add(run)
        failed.append(run.id)
    if failed:
        await session.commit()
        if feed is not None:
            for run_id in failed:
                feed.publish(run_id, KIND_RUN, {"status": RunStatus.FAILED.value})
        logger.warning("Reconciled stale runs: %s", failed)
    return failed


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class BatchRunOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        collaborators: Collaborators,
        resolver: Optional[RuleResolver] = None,
        feed: Optional[ChangeFeed] = None,
        concurrency: int = RUN_CONCURRENCY,
    ):
        self.session_factory = session_factory
        self.c = collaborators
        self.resolver = resolver or RuleResolver()
        self.feed = feed or ChangeFeed()
        self.concurrency = max(1, concurrency)
        self._cancel: Dict[int, asyncio.Event] = {}
        self._tasks: Dict[int, asyncio.Task] = {}

    # -- background control -------------------------------------------------

    def start(self, run_id: int) -> asyncio.Task:
        """Schedule `process(run_id)` on the running loop and return the task."""
        self._cancel.setdefault(run_id, asyncio.Event())
        task = asyncio.create_task(self.process(run_id), name=f"batch-run-{run_id}")
        self._tasks[run_id] = task

        def _done(t: asyncio.Task) -> None:
            self._tasks.pop(run_id, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error("Run %s aborted: %s", run_id, t.exception())

        task.add_done_callback(_done)
        return task

    def active_runs(self) -> List[int]:
        return list(self._tasks)

    def cancel(self, run_id: int) -> bool:
        """Stop scheduling unstarted rows; rows already dispatched finish on their own."""
        event = self._cancel.get(run_id)
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for run %s", run_id)
        return True

    # -- pipeline -----------------------------------------------------------

    async def process(self, run_id: int) -> BatchRun:
        cancel = self._cancel.setdefault(run_id, asyncio.Event())
        try:
            async with self.session_factory() as session:
                run = await get_run(session, run_id)
                if run.status != RunStatus.PENDING:
                    raise RunStateError(run_id, run.status, RunStatus.RUNNING.value)
                run.status = RunStatus.RUNNING.value
                run.started_at = utcnow()
                session.add(run)
                await session.commit()
                self.feed.publish(run_id, KIND_RUN, run_to_dict(run))
                overwrite = run.overwrite

                res = await session.execute(
                    select(RunItem.id)
                    .where(RunItem.run_id == run_id, RunItem.result == PENDING)
                    .order_by(RunItem.row_number, RunItem.id)
                )
                item_ids = list(res.scalars().all())
            logger.info("Processing run %s: %d items", run_id, len(item_ids))

            try:
                if self.concurrency == 1:
                    for item_id in item_ids:
                        if cancel.is_set():
                            break
                        await self._process_row(item_id, overwrite)
                else:
                    sem = asyncio.Semaphore(self.concurrency)

                    async def worker(item_id: int) -> None:
                        async with sem:
                            if not cancel.is_set():
                                await self._process_row(item_id, overwrite)

                    # every worker settles before the run is finished, even when one of them fails
                    results = await asyncio.gather(*(worker(i) for i in item_ids), return_exceptions=True)
                    failures = [r for r in results if isinstance(r, Exception)]
                    if failures:
                        raise failures[0]
            except asyncio.CancelledError:
                await self._finish(run_id, "Processing was interrupted")
                raise
            except Exception as e:
                logger.exception("Run %s: orchestrator failure", run_id)
                await self._finish(run_id, f"Orchestrator error: {e}")
                raise

            if cancel.is_set():
                return await self._finish(run_id, "Cancelled before all rows were processed", cancelled=True)
            return await self._finish(run_id, None)
        finally:
            self._cancel.pop(run_id, None)

    async def _finish(self, run_id: int, error: Optional[str], cancelled: bool = False) -> BatchRun:
        async with self.session_factory() as session:
            run = await get_run(session, run_id)
            if run.status in TERMINAL_RUN_STATUSES:
                return run
            pending = await count_items(session, run_id, pending_only=True)
            if pending == 0 and (error is None or cancelled):
                run.status = RunStatus.COMPLETED.value
            else:
                run.status = RunStatus.FAILED.value
                if error and pending:
                    error = f"{error} ({pending} row(s) not processed)"
                run.error_message = error or f"{pending} row(s) were not processed"
            run.finished_at = utcnow()
            session.add(run)
            await session.commit()
            self.feed.publish(run_id, KIND_RUN, run_to_dict(run))
            logger.info("Run %s %s", run_id, run.status)
            return run

    async def _set_item(self, session: AsyncSession, item: RunItem, **changes: Any) -> None:
        """Apply, commit, and publish one change to an item. Status fields move off pending once."""
        for name, value in changes.items():
            value = _v(value)
            if name in STATUS_FIELDS:
                current = getattr(item, name)
                if current != PENDING and current != value:
                    raise StatusRegressionError(item.id, name, current, value)
            setattr(item, name, value)
        item.updated_at = utcnow()
        session.add(item)
        await session.commit()
        self.feed.publish(item.run_id, KIND_ITEM, item_to_dict(item))

    async def _recover(self, session: AsyncSession, item: RunItem) -> None:
        await session.rollback()
        await session.refresh(item)

    @staticmethod
    def _note(item: RunItem, step: str, exc: BaseException) -> str:
        msg = f"{step}: {getattr(exc, 'message', None) or str(exc) or exc.__class__.__name__}"
        return f"{item.error_message}; {msg}" if item.error_message else msg

    async def _process_row(self, item_id: int, overwrite: bool) -> None:
        async with self.session_factory() as session:
            item = await session.get(RunItem, item_id)
            if item is None or item.result != PENDING:
                return
            row_number, run_id = item.row_number, item.run_id
            logger.info("Processing row %s: %s", row_number, item.path)
            try:
                await self._run_steps(session, item, overwrite)
            except Exception as e:
                logger.exception("Row %s of run %s could not be recorded", row_number, run_id)
                await self._recover(session, item)
                await self._fail_open_steps(session, item, e)

    async def _fail_open_steps(self, session: AsyncSession, item: RunItem, exc: Exception) -> None:
        """Close whatever is still pending on a row whose step results could not be saved."""
        changes: Dict[str, Any] = {"error_message": self._note(item, "Row", exc)}
        if item.result == PENDING:
            changes["result"] = ItemResult.ERROR
            changes["validation_status"] = ValidationStatus.SKIPPED
        else:
            for name in ("html_status", "schema_status"):
                if getattr(item, name) == PENDING:
                    changes[name] = StepStatus.FAILED
            if item.validation_status == PENDING:
                changes["validation_status"] = ValidationStatus.ERROR
        await self._set_item(session, item, **changes)

    async def _run_steps(self, session: AsyncSession, item: RunItem, overwrite: bool) -> None:
        item_id = item.id
        # 1. page
        try:
            up = await self.c.pages.upsert_page(
                session, item.domain, item.path, item.page_type, item.category, overwrite
            )
        except DuplicatePageError as e:
            await self._recover(session, item)
            await self._set_item(
                session, item,
                result=ItemResult.SKIPPED_DUPLICATE,
                page_id=e.details.get("page_id"),
                validation_status=ValidationStatus.SKIPPED,
                error_message=e.message,
            )
            return
        except Exception as e:
            logger.error("Error processing row %s: %s", item_id, e)
            await self._recover(session, item)
            await self._set_item(
                session, item,
                result=ItemResult.ERROR,
                validation_status=ValidationStatus.SKIPPED,
                error_message=self._note(item, "Page", e),
            )
            return

        page_id = up.page_id
        await self._set_item(
            session, item,
            result=ItemResult.CREATED if up.was_created else ItemResult.UPDATED,
            page_id=page_id,
        )

        # 2. html
        try:
            await self.c.fetcher.fetch_html(session, page_id)
        except Exception as e:
            logger.warning("HTML fetch failed for %s: %s", item.path, e)
            await self._recover(session, item)
            await self._set_item(session, item, html_status=StepStatus.FAILED,
                                 error_message=self._note(item, "HTML fetch", e))
        else:
            await self._set_item(session, item, html_status=StepStatus.SUCCESS)

        # 3. schema; attempted even when the fetch failed, the generator decides
        try:
            rule = await self.resolver.resolve_required(session, item.domain, item.page_type, item.category)
            await self.c.generator.generate_schema(session, page_id, rule)
        except Exception as e:
            logger.warning("Schema generation failed for %s: %s", item.path, e)
            await self._recover(session, item)
            await self._set_item(session, item, schema_status=StepStatus.FAILED,
                                 error_message=self._note(item, "Schema", e))
        else:
            await self._set_item(session, item, schema_status=StepStatus.SUCCESS, rule_id=rule.id)

        # 4. validation
        try:
            outcome = await self.c.validator.validate(session, page_id)
        except Exception as e:
            logger.warning("Validation failed for %s: %s", item.path, e)
            await self._recover(session, item)
            await self._set_item(session, item, validation_status=ValidationStatus.ERROR,
                                 error_message=self._note(item, "Validation", e))
        else:
            await self._set_item(
                session, item,
                validation_status=outcome.status,
                validation_error_count=outcome.error_count,
                validation_warning_count=outcome.warning_count,
                validation_issues=list(outcome.issues or []),
            )
