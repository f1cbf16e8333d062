"""
Bounded collaborator calls.

call_with_timeout() enforces the fast-path timeout on blocking collaborator
calls; retry_with_backoff() retries transient failures a fixed number of
times with exponential backoff. SingleFlightCall wraps a write so that
retrying it never starts a second copy while an earlier one is still
running in the pool.
"""
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Callable, Generic, Optional, Tuple, Type, TypeVar

from .errors import CollaboratorTimeoutError, TransientCollaboratorError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Shared pool for timeout-bounded calls. Sized for concurrent tenant cycles.
_CALL_POOL = ThreadPoolExecutor(max_workers=16, thread_name_prefix="collaborator-call")


def _wait(future: "Future[T]", fn: Callable[..., T], timeout: float) -> T:
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        name = getattr(fn, "__qualname__", repr(fn))
        raise CollaboratorTimeoutError(f"{name} exceeded {timeout:.1f}s")


def call_with_timeout(fn: Callable[..., T], timeout: float, *args, **kwargs) -> T:
    """
    Run fn(*args, **kwargs) and wait at most `timeout` seconds.

    Raises CollaboratorTimeoutError on expiry. Exceptions raised by fn are
    re-raised unchanged. A call that started keeps running after the
    timeout; only a still-queued one is cancelled.
    """
    future = _CALL_POOL.submit(fn, *args, **kwargs)
    try:
        return _wait(future, fn, timeout)
    except CollaboratorTimeoutError:
        future.cancel()
        raise


class SingleFlightCall(Generic[T]):
    """
    Timeout-bounded call that is safe to hand to retry_with_backoff().

    Each invocation waits at most `timeout` seconds. If the previous
    attempt timed out and is still running, the next invocation waits on
    that same attempt instead of submitting another; a new attempt is only
    submitted once the previous one has raised.

    Usage:
        write = SingleFlightCall(catalog.apply, timeout, entity_ref, change)
        retry_with_backoff(write, attempts=3, base_delay=0.5)
        if write.in_flight:
            ...  # outcome unknown; the write may still land
    """

    def __init__(self, fn: Callable[..., T], timeout: float, *args, **kwargs):
        self.fn = fn
        self.timeout = timeout
        self.args = args
        self.kwargs = kwargs
        self._future: Optional["Future[T]"] = None
        self.submissions = 0

    @property
    def in_flight(self) -> bool:
        return self._future is not None and not self._future.done()

    def __call__(self) -> T:
        if self._future is None or (self._future.done() and self._future.exception() is not None):
            self._future = _CALL_POOL.submit(self.fn, *self.args, **self.kwargs)
            self.submissions += 1
        return _wait(self._future, self.fn, self.timeout)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the current attempt finishes; False if it is still running."""
        if self._future is None:
            return True
        try:
            self._future.exception(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True


def retry_with_backoff(
    fn: Callable[[], T],
    attempts: int,
    base_delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (TransientCollaboratorError,),
    description: str = "collaborator call",
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Call fn until it succeeds or `attempts` calls have failed.

    Delay doubles after each failure: base, 2*base, 4*base, ...
    The last error is re-raised once attempts are exhausted.
    """
    sleep = sleep or time.sleep
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            last_error = e
            if attempt == attempts:
                break
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                f"{description} failed (attempt {attempt}/{attempts}): {e}; retrying in {delay:.2f}s"
            )
            sleep(delay)

    logger.error(f"{description} failed after {attempts} attempts: {last_error}")
    raise last_error
