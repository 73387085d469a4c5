from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterator
from typing import Callable, Optional, Protocol
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from ..core.errors import AccrualError, CycleCancelledError
from .accrual import AccrualResult
from .repository import LedgerRepository


logger = logging.getLogger(__name__)

_BATCH_DONE = object()


class Resolver(Protocol):
    def resolve(
        self, order_id: int, cancel: Optional[threading.Event] = None
    ) -> AccrualResult: ...


class ReconciliationWorker:
    """Periodically reconciles pending ledger entries with the accrual authority.

    Each cycle claims up to ``batch_size`` pending rows in one transaction,
    resolves them one by one on a producer thread and applies the results to
    the still-open transaction as they arrive. The transaction commits only
    after the whole batch has been attempted; shutdown or any error rolls it
    back and the rows become claimable again.

    Without row locks the claim is a committed lease instead, and results are
    written in one short transaction once the batch is done. Aborting a cycle
    sets its cancel event, which also interrupts accrual back-off pauses.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: Resolver,
        *,
        batch_size: int = 10,
        interval: float = 115.0,
        queue_size: int = 16,
        lease_seconds: float = 3600.0,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = client
        self.batch_size = batch_size
        self.interval = interval
        self.queue_size = queue_size
        self.lease_seconds = lease_seconds
        self._stop = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._cycle_cancel: Optional[threading.Event] = None

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    # Lifetime -----------------------------------------------------------
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self._run, name="reconciliation-worker", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        cancel = self._cycle_cancel
        if cancel is not None:
            cancel.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        logger.info(
            "reconciliation.worker.started",
            extra={"interval": self.interval, "batch_size": self.batch_size},
        )
        while not self._stop.wait(self.interval):
            try:
                self.run_cycle()
            except CycleCancelledError:
                logger.info("reconciliation.cycle.cancelled")
            except SQLAlchemyError:
                logger.exception("reconciliation.cycle.failed")
            except Exception:
                logger.exception("reconciliation.cycle.aborted")
        logger.info("reconciliation.worker.stopped")

    # Cycle --------------------------------------------------------------
    def run_cycle(self) -> int:
        if self._stop.is_set():
            raise CycleCancelledError("Worker is stopping")

        with self._session_factory() as session:
            repository = LedgerRepository(session)
            owner = uuid4().hex
            claimed = repository.claim_pending(
                self.batch_size, owner=owner, lease_seconds=self.lease_seconds
            )
            if not claimed:
                session.rollback()
                logger.debug("reconciliation.cycle.empty")
                return 0

            order_ids = [entry.order_id for entry in claimed]
            logger.info(
                "reconciliation.cycle.claimed",
                extra={"count": len(order_ids), "order_ids": order_ids},
            )

            results: queue.Queue = queue.Queue(maxsize=self.queue_size)
            cancel = threading.Event()
            self._cycle_cancel = cancel
            if self._stop.is_set():
                cancel.set()
            producer = threading.Thread(
                target=self._resolve_batch,
                args=(order_ids, results, cancel),
                name="reconciliation-resolver",
                daemon=True,
            )
            producer.start()

            try:
                applied = repository.apply_resolutions(claimed, self._drain(results))
                if self._stop.is_set():
                    raise CycleCancelledError("Worker stopped before commit")
                repository.release_claim(owner)
                session.commit()
            except BaseException:
                cancel.set()
                session.rollback()
                self._release_after_failure(repository, owner)
                raise
            finally:
                producer.join()
                self._cycle_cancel = None

            logger.info(
                "reconciliation.cycle.committed",
                extra={"claimed": len(order_ids), "applied": applied},
            )
            return applied

    @staticmethod
    def _release_after_failure(repository: LedgerRepository, owner: str) -> None:
        # An unreleased lease only delays the rows until it expires.
        try:
            repository.release_claim(owner)
            repository.session.commit()
        except SQLAlchemyError:
            repository.session.rollback()
            logger.exception("reconciliation.release.failed", extra={"owner": owner})

    def _drain(self, results: queue.Queue) -> Iterator[AccrualResult]:
        while True:
            try:
                item = results.get(timeout=0.5)
            except queue.Empty:
                if self._stop.is_set():
                    raise CycleCancelledError("Worker stopped while resolving")
                continue
            if item is _BATCH_DONE:
                return
            if isinstance(item, Exception):
                raise item
            if self._stop.is_set():
                raise CycleCancelledError("Worker stopped while applying results")
            yield item

    def _resolve_batch(
        self,
        order_ids: list[int],
        results: queue.Queue,
        cancel: threading.Event,
    ) -> None:
        try:
            for order_id in order_ids:
                if self._stop.is_set() or cancel.is_set():
                    break
                try:
                    result = self._client.resolve(order_id, cancel)
                except AccrualError as exc:
                    # Left untouched; a later cycle claims it again.
                    logger.warning(
                        "reconciliation.order.unresolved",
                        extra={"order_id": order_id, "error": str(exc)},
                    )
                    continue
                if not self._offer(results, result, cancel):
                    return
        except Exception as exc:
            logger.exception("reconciliation.resolver.failed")
            self._offer(results, exc, cancel)
        finally:
            self._offer(results, _BATCH_DONE, cancel)

    @staticmethod
    def _offer(results: queue.Queue, item: object, cancel: threading.Event) -> bool:
        while not cancel.is_set():
            try:
                results.put(item, timeout=0.5)
                return True
            except queue.Full:
                continue
        return False
