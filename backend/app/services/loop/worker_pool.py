"""
Loop Worker Pool

Bounded background execution, decoupled from the request that triggered
it. Each task opens its own database session and carries a cancellation
token the engine checks before writing to the catalog.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from ...models.loop_models import ExecutionResult
from .cancellation import cancellations
from .collaborators import Collaborators
from .execution_engine import ExecutionEngine


logger = logging.getLogger(__name__)


class LoopWorkerPool:
    """
    Usage:
        pool = LoopWorkerPool(SessionLocal, collaborators)
        future = pool.submit_execution(opportunity_id)
        pool.cancel(opportunity_id)
        pool.shutdown()
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        collaborators: Collaborators,
        max_workers: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.collaborators = collaborators
        self.max_workers = max_workers or collaborators.settings.worker_pool_size
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="loop-worker")
        self._lock = threading.Lock()
        self._futures: Dict[str, Future] = {}

    def submit_execution(self, opportunity_id: str) -> Future:
        """Queue an execution. A second submit for the same id returns the first future."""
        with self._lock:
            existing = self._futures.get(opportunity_id)
            if existing is not None and not existing.done():
                return existing
            token = cancellations.register(opportunity_id)
            future = self._executor.submit(self._run, opportunity_id, token)
            self._futures[opportunity_id] = future
            future.add_done_callback(lambda _: self._forget(opportunity_id))
            return future

    def cancel(self, opportunity_id: str) -> bool:
        """Signal a queued or running execution. False once its write has begun."""
        token = cancellations.get(opportunity_id)
        if token is None:
            return False
        return token.cancel()

    def in_flight(self) -> int:
        with self._lock:
            return sum(1 for f in self._futures.values() if not f.done())

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _run(self, opportunity_id: str, token) -> ExecutionResult:
        db = self.session_factory()
        try:
            engine = ExecutionEngine(db, self.collaborators)
            result = engine.execute(opportunity_id, token=token)
            logger.info(
                f"Background execution of {opportunity_id}: "
                f"success={result.success} status={result.status}"
            )
            return result
        except Exception as e:
            db.rollback()
            logger.error(f"Background execution of {opportunity_id} failed: {e}")
            raise
        finally:
            db.close()
            cancellations.discard(opportunity_id)

    def _forget(self, opportunity_id: str) -> None:
        with self._lock:
            future = self._futures.get(opportunity_id)
            if future is not None and future.done():
                self._futures.pop(opportunity_id, None)


_worker_pool: Optional[LoopWorkerPool] = None
_pool_lock = threading.Lock()


def set_worker_pool(pool: Optional[LoopWorkerPool]) -> None:
    global _worker_pool
    with _pool_lock:
        _worker_pool = pool


def get_worker_pool() -> Optional[LoopWorkerPool]:
    """FastAPI dependency; None outside the app lifespan, so cycles execute inline."""
    with _pool_lock:
        return _worker_pool
