from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from .engine import RoleGrantor, VerificationEngine, apply_role_grants, log_outcomes
from .errors import UnknownIdentityError
from .identity import shorten_identity
from .models import BatchRunReport, ReconciliationResult, RoleGrantReport

logger = logging.getLogger("chain_role_bot.scheduler")

NotifyCallback = Callable[[ReconciliationResult, RoleGrantReport], Awaitable[None]]


class BatchScheduler:
    def __init__(
        self,
        *,
        engine: VerificationEngine,
        store,
        role_grantor: RoleGrantor,
        batch_size: int = 50,
        interval_seconds: float = 300.0,
        batch_delay_seconds: float = 0.1,
        max_identities_per_run: int = 500,
        on_newly_satisfied: NotifyCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.store = store
        self.role_grantor = role_grantor
        self.batch_size = max(1, int(batch_size))
        self.interval_seconds = max(1.0, float(interval_seconds))
        self.batch_delay_seconds = max(0.0, float(batch_delay_seconds))
        self.max_identities_per_run = max(1, int(max_identities_per_run))
        self.on_newly_satisfied = on_newly_satisfied
        self._sleep = sleep
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self.last_report: BatchRunReport | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="verification_batch_scheduler")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Batch verification run failed")
            await self._sleep(self.interval_seconds)

    async def run_once(self) -> BatchRunReport:
        if self._running:
            logger.info("Batch verification already in progress; skipping this tick")
            return BatchRunReport(skipped=True)

        self._running = True
        started = time.monotonic()
        report = BatchRunReport()
        try:
            identities = await self.store.all_identities()
            if len(identities) > self.max_identities_per_run:
                report.deferred = len(identities) - self.max_identities_per_run
                identities = identities[: self.max_identities_per_run]
            batches = [
                identities[index : index + self.batch_size]
                for index in range(0, len(identities), self.batch_size)
            ]
            for batch_index, batch in enumerate(batches):
                results = await asyncio.gather(
                    *(self._process_identity(identity) for identity in batch),
                    return_exceptions=True,
                )
                for identity, outcome in zip(batch, results):
                    report.processed += 1
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    if isinstance(outcome, UnknownIdentityError):
                        # Unlinked after the run listed it.
                        logger.info("Skipping %s: no longer linked", shorten_identity(identity))
                        continue
                    if isinstance(outcome, BaseException):
                        report.failed += 1
                        report.failed_identities.append(identity)
                        await self._record_failure(identity, outcome)
                        continue
                    result, grants = outcome
                    report.newly_satisfied += len(result.transitions)
                    report.roles_granted += len(grants.granted)
                if batch_index < len(batches) - 1 and self.batch_delay_seconds > 0:
                    await self._sleep(self.batch_delay_seconds)
        finally:
            self._running = False

        report.duration_seconds = time.monotonic() - started
        self.last_report = report
        logger.info(
            "Batch verification finished: processed=%s newly=%s failed=%s roles=%s deferred=%s in %.2fs",
            report.processed,
            report.newly_satisfied,
            report.failed,
            report.roles_granted,
            report.deferred,
            report.duration_seconds,
        )
        return report

    async def _process_identity(self, identity: str) -> tuple[ReconciliationResult, RoleGrantReport]:
        result = await self.engine.reconcile(identity)
        grants = await apply_role_grants(self.role_grantor, result)
        await log_outcomes(self.store, result, grants)
        if result.transitions and self.on_newly_satisfied is not None:
            await self.on_newly_satisfied(result, grants)
        return result, grants

    async def _record_failure(self, identity: str, error: BaseException) -> None:
        logger.error(
            "Batch verification failed for %s: %s",
            shorten_identity(identity),
            error,
            exc_info=error,
        )
        try:
            await self.store.record_outcome(
                status="failure",
                identity=identity,
                target_id="*",
                target_name="batch",
                detail=f"{type(error).__name__}: {error}",
            )
        except Exception:
            logger.exception("Could not record batch failure for %s", shorten_identity(identity))
