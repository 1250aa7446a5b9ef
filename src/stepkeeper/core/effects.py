"""
Fire-and-forget execution of store and scheduler calls.

Session transitions are synchronous; the I/O they trigger is queued here and
executed by a single worker task in submission order, so a save issued before
a load is always visible to that load. Transient failures (PersistenceError,
SchedulerError) are retried with exponential backoff; once retries run out the
failure is logged and handed to the effect's ``on_error`` callback. Nothing
raised by an effect ever propagates back into the caller.

Callers with no running event loop get a single attempt and no backoff, so a
synchronous transition is never held up by retry sleeps.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Type

from stepkeeper.errors import PersistenceError, SchedulerError
from stepkeeper.logger import get_logger

logger = get_logger(__name__)

RETRYABLE: Tuple[Type[BaseException], ...] = (PersistenceError, SchedulerError)


@dataclass
class Effect:
    name: str
    factory: Callable[[], Awaitable[Any]]
    on_result: Optional[Callable[[Any], None]] = None
    on_error: Optional[Callable[[BaseException], None]] = None


class EffectRunner:
    """Serial async effect queue with bounded, logged retries."""

    def __init__(self, max_retries: int = 3, backoff_seconds: float = 0.5):
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.failures: List[Tuple[str, BaseException]] = []
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inline = False

    def submit(
        self,
        name: str,
        factory: Callable[[], Awaitable[Any]],
        *,
        on_result: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        """
        Queue an effect for execution.

        Args:
            name: Label used in logs
            factory: Zero-arg callable returning a fresh awaitable per attempt
            on_result: Called with the awaitable's result on success
            on_error: Called with the final error once retries are exhausted
        """
        effect = Effect(name, factory, on_result, on_error)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (plain synchronous caller): one attempt, no backoff.
            asyncio.run(self._run_inline(effect))
            self._queue = None
            self._worker = None
            self._loop = None
            return

        self._ensure_worker(loop)
        self._queue.put_nowait(effect)

    async def drain(self) -> None:
        """Wait until every queued effect has finished (successfully or not)."""
        if self._queue is not None and self._loop is asyncio.get_running_loop():
            await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def close(self) -> None:
        """Stop the worker; effects still queued are dropped."""
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._queue = None
        self._loop = None

    # -- Internal ------------------------------------------------------------

    def _ensure_worker(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._loop is not loop or self._queue is None:
            self._loop = loop
            self._queue = asyncio.Queue()
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._run_loop())

    async def _run_inline(self, effect: Effect) -> None:
        # Follow-up effects submitted by handlers land on this temporary loop.
        self._inline = True
        try:
            await self._execute(effect)
            await self.drain()
        finally:
            self._inline = False

    async def _run_loop(self) -> None:
        queue = self._queue
        while True:
            effect = await queue.get()
            try:
                await self._execute(effect)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Effect runner error in {effect.name}: {e}")
            finally:
                queue.task_done()

    async def _execute(self, effect: Effect) -> None:
        attempt = 0
        max_retries = 0 if self._inline else self.max_retries
        while True:
            try:
                result = await effect.factory()
            except RETRYABLE as e:
                if attempt < max_retries:
                    delay = self.backoff_seconds * (2**attempt)
                    attempt += 1
                    logger.warning(
                        f"{effect.name} failed ({e}); retry {attempt}/{max_retries} "
                        f"in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error(f"{effect.name} failed after {attempt} retries: {e}")
                self._fail(effect, e)
                return
            except Exception as e:
                logger.error(f"{effect.name} failed: {e}")
                self._fail(effect, e)
                return

            if effect.on_result is not None:
                try:
                    effect.on_result(result)
                except Exception as e:
                    logger.error(f"Result handler for {effect.name} failed: {e}")
            return

    def _fail(self, effect: Effect, error: BaseException) -> None:
        self.failures.append((effect.name, error))
        if effect.on_error is not None:
            try:
                effect.on_error(error)
            except Exception as e:
                logger.error(f"Error handler for {effect.name} failed: {e}")
