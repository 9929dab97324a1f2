"""
Background retry scheduler for failed async operations.

Entries are keyed by a caller-supplied correlation id and picked up by a periodic
tick. Each entry moves through Pending -> Running -> (removed | Pending | dropped).
A failure at the attempt limit drops the entry and records a dead-letter event.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


RetryOperation = Callable[[], Awaitable[Any]]


@dataclass
class PendingRetryEntry:
    id: str
    operation: RetryOperation
    last_error: Optional[BaseException]
    enqueued_at: datetime
    attempt: int = 1
    running: bool = False
    not_before: Optional[datetime] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def is_due(self, now: datetime) -> bool:
        return self.not_before is None or now >= self.not_before


@dataclass
class _TickStats:
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    dropped: int = 0


class RetryManager:
    """
    Runs queued retry operations on a fixed interval until each one succeeds
    or exhausts max_attempts.

    The entry map is the only shared state. It is guarded by a threading.Lock
    whose critical sections never await.
    """

    def __init__(
        self,
        *,
        tick_interval_seconds: float = 30.0,
        max_attempts: int = 3,
        base_delay_seconds: float = 0.0,
        max_delay_seconds: float = 300.0,
        dead_letter_sink: Optional[Any] = None,
        on_exhausted: Optional[Callable[[PendingRetryEntry], None]] = None,
    ):
        self.tick_interval_seconds = tick_interval_seconds
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.dead_letter_sink = dead_letter_sink
        self.on_exhausted = on_exhausted

        self._entries: Dict[str, PendingRetryEntry] = {}
        self._lock = threading.Lock()
        self._timer_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def add_to_retry(
        self,
        operation: RetryOperation,
        triggering_error: BaseException,
        correlation_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Insert or replace the pending entry for correlation_id; runs on the next tick.

        context is carried on the entry untouched, for the on_exhausted callback.
        """
        entry = PendingRetryEntry(
            id=correlation_id,
            operation=operation,
            last_error=triggering_error,
            enqueued_at=datetime.now(timezone.utc),
            context=dict(context or {}),
        )
        with self._lock:
            replaced = correlation_id in self._entries
            self._entries[correlation_id] = entry

        if replaced:
            logger.info(f"[RETRY_REPLACED][{correlation_id}] Pending retry replaced")
        logger.warning(
            f"[RETRY_SCHEDULED][{correlation_id}] Operation scheduled for retry "
            f"(max {self.max_attempts} attempts): {triggering_error}"
        )

    def pending_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_entry(self, correlation_id: str) -> Optional[PendingRetryEntry]:
        with self._lock:
            return self._entries.get(correlation_id)

    def snapshot(self) -> List[PendingRetryEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.enqueued_at)

    def _claim_due_entries(self) -> List[PendingRetryEntry]:
        now = datetime.now(timezone.utc)
        claimed: List[PendingRetryEntry] = []
        with self._lock:
            for entry in self._entries.values():
                if entry.running or not entry.is_due(now):
                    continue
                entry.running = True
                claimed.append(entry)
        return claimed

    def _backoff_delay(self, attempt: int) -> float:
        if self.base_delay_seconds <= 0:
            return 0.0
        return min(self.base_delay_seconds * (2 ** max(attempt - 2, 0)), self.max_delay_seconds)

    async def _execute(self, entry: PendingRetryEntry, stats: _TickStats) -> None:
        logger.info(f"[RETRY_ATTEMPT][{entry.id}] Retrying operation (attempt {entry.attempt}/{self.max_attempts})")
        error: Optional[BaseException] = None
        try:
            result = await entry.operation()
            if result is False:
                error = RuntimeError("retry operation reported failure")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc

        dropped_entry: Optional[PendingRetryEntry] = None
        with self._lock:
            current = self._entries.get(entry.id)
            if current is not entry:
                # Replaced while in flight: the newer entry owns the id now
                entry.running = False
                logger.info(f"[RETRY_SUPERSEDED][{entry.id}] Outcome discarded, entry was replaced")
                return

            if error is None:
                del self._entries[entry.id]
                stats.succeeded += 1
            else:
                entry.attempt += 1
                entry.last_error = error
                entry.running = False
                if entry.attempt > self.max_attempts:
                    del self._entries[entry.id]
                    dropped_entry = entry
                    stats.dropped += 1
                else:
                    delay = self._backoff_delay(entry.attempt)
                    entry.not_before = (
                        datetime.now(timezone.utc) + timedelta(seconds=delay) if delay > 0 else None
                    )
                    stats.failed += 1

        if error is None:
            logger.info(f"[RETRY_SUCCESS][{entry.id}] Operation succeeded on retry {entry.attempt}")
        elif dropped_entry is not None:
            logger.warning(
                f"[RETRY_FAILED][{entry.id}] Operation failed permanently after "
                f"{self.max_attempts} attempts: {error}"
            )
            await self._write_dead_letter(dropped_entry)
            self._notify_exhausted(dropped_entry)
        else:
            logger.error(f"[RETRY_FAILED][{entry.id}] Operation failed on attempt {entry.attempt - 1}: {error}")

    def _notify_exhausted(self, entry: PendingRetryEntry) -> None:
        if self.on_exhausted is None:
            return
        try:
            self.on_exhausted(entry)
        except Exception as e:
            logger.error(f"[RETRY_FAILED][{entry.id}] Exhaustion callback failed: {e}")

    async def _write_dead_letter(self, entry: PendingRetryEntry) -> None:
        if self.dead_letter_sink is None:
            return
        event = {
            "failed_at": datetime.now(timezone.utc).isoformat(),
            "correlation_id": entry.id,
            "enqueued_at": entry.enqueued_at.isoformat(),
            "attempts": self.max_attempts,
            "error": str(entry.last_error) if entry.last_error is not None else None,
            "context": entry.context,
        }
        try:
            await self.dead_letter_sink.write(event)
        except Exception as e:
            logger.error(f"[RETRY_DEAD_LETTER][{entry.id}] Failed to write dead-letter event: {e}")

    async def run_pending(self) -> Dict[str, int]:
        """Run one tick: execute every due, idle entry and wait for this batch."""
        entries = self._claim_due_entries()
        stats = _TickStats(dispatched=len(entries))
        if entries:
            await asyncio.gather(*(self._execute(entry, stats) for entry in entries))
        return {
            "dispatched": stats.dispatched,
            "succeeded": stats.succeeded,
            "failed": stats.failed,
            "dropped": stats.dropped,
        }

    async def _timer_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.tick_interval_seconds)
                # Batches run detached so a slow operation never delays the next tick
                task = asyncio.create_task(self.run_pending())
                self._inflight.add(task)
                task.add_done_callback(self._inflight.discard)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error during retry tick: {e}")

    def start(self) -> None:
        if self.running:
            return
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(f"Retry manager started (tick every {self.tick_interval_seconds}s)")

    async def stop(self) -> None:
        """Cancel the timer and any in-flight attempts, then clear pending entries."""
        tasks = list(self._inflight)
        if self._timer_task is not None:
            tasks.append(self._timer_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Retry task ended with error during shutdown: {e}")
        self._timer_task = None
        self._inflight.clear()

        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
        logger.info(f"Pending retries cleared ({dropped} dropped)")
