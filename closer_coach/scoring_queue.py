import time
import logging
import threading
from datetime import datetime
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Set, Any

from .schemas import QueueItem

logger = logging.getLogger(__name__)


MAX_CONCURRENT = 2
QUEUE_CHECK_INTERVAL = 5.0
DISPATCH_INTERVAL = 1.0


class ScoringQueue:
    """In-memory queue that scores calls with bounded concurrency.

    ``score_fn`` receives a call id and returns the overall score. A call that
    raises ends in the terminal ``error`` state. The dispatcher thread starts on
    the first ``add`` and exits once nothing is pending or processing; it polls
    on a fixed interval rather than reacting to completions.
    """

    def __init__(self, score_fn: Callable[[str], Optional[float]],
                 max_concurrent: int = MAX_CONCURRENT,
                 poll_interval: float = QUEUE_CHECK_INTERVAL,
                 dispatch_interval: float = DISPATCH_INTERVAL):
        self.score_fn = score_fn
        self.max_concurrent = max_concurrent
        self.poll_interval = poll_interval
        self.dispatch_interval = dispatch_interval

        self._items: Dict[str, QueueItem] = {}
        self._processing: Set[str] = set()
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._running = False
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="scoring")

    def add(self, call_ids: Iterable[str]) -> int:
        """Queue call ids; ids already present are left alone. Returns how many were new."""
        added = 0
        with self._lock:
            for call_id in call_ids:
                if call_id in self._items:
                    continue
                self._items[call_id] = QueueItem(call_id=call_id, added_at=datetime.now())
                added += 1
            start = not self._running and added > 0
            if start:
                self._running = True

        if added:
            logger.info(f"Queued {added} call(s) for scoring")
        if start:
            threading.Thread(target=self._process_queue, name="scoring-queue", daemon=True).start()
        return added

    def status(self) -> Dict[str, Any]:
        with self._lock:
            items = [item.model_copy() for item in self._items.values()]
        return {
            "total": len(items),
            "pending": sum(1 for i in items if i.status == "pending"),
            "processing": sum(1 for i in items if i.status == "processing"),
            "complete": sum(1 for i in items if i.status == "complete"),
            "error": sum(1 for i in items if i.status == "error"),
            "items": items,
        }

    def is_queued(self, call_id: str) -> bool:
        with self._lock:
            return call_id in self._items

    def call_status(self, call_id: str) -> Optional[QueueItem]:
        with self._lock:
            item = self._items.get(call_id)
            return item.model_copy() if item else None

    def clear_completed(self) -> int:
        with self._lock:
            done = [k for k, item in self._items.items() if item.status in ("complete", "error")]
            for call_id in done:
                del self._items[call_id]
        return len(done)

    def remove(self, call_id: str) -> bool:
        """Only pending items can be removed"""
        with self._lock:
            item = self._items.get(call_id)
            if item is None or item.status != "pending":
                return False
            del self._items[call_id]
            return True

    def retry_failed(self) -> List[str]:
        """Put errored items back to pending and restart the dispatcher if needed"""
        with self._lock:
            failed = [k for k, item in self._items.items() if item.status == "error"]
            for call_id in failed:
                self._items[call_id] = QueueItem(call_id=call_id, added_at=datetime.now())
            start = bool(failed) and not self._running
            if start:
                self._running = True

        if failed:
            logger.info(f"Retrying {len(failed)} failed call(s)")
        if start:
            threading.Thread(target=self._process_queue, name="scoring-queue", daemon=True).start()
        return failed

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is pending or processing; False on timeout"""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while self._has_work():
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._changed.wait(remaining)
        return True

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)

    def _has_work(self) -> bool:
        return bool(self._processing) or any(i.status == "pending" for i in self._items.values())

    def _process_queue(self):
        logger.debug("Scoring queue dispatcher started")
        while True:
            with self._lock:
                pending = sorted(
                    (i for i in self._items.values() if i.status == "pending"),
                    key=lambda i: i.added_at,
                )
                slots = self.max_concurrent - len(self._processing)

                if slots <= 0 or not pending:
                    if not self._processing and not pending:
                        self._running = False
                        self._changed.notify_all()
                        break
                    to_start = []
                else:
                    to_start = pending[:slots]
                    for item in to_start:
                        item.status = "processing"
                        item.started_at = datetime.now()
                        self._processing.add(item.call_id)

            if not to_start:
                time.sleep(self.poll_interval)
                continue

            for item in to_start:
                logger.info(f"[Queue] Scoring call {item.call_id}")
                self._executor.submit(self._process_item, item.call_id)
            time.sleep(self.dispatch_interval)

        logger.debug("Scoring queue dispatcher idle")

    def _process_item(self, call_id: str):
        try:
            score = self.score_fn(call_id)
        except Exception as e:
            logger.error(f"[Queue] Failed to score call {call_id}: {e}")
            self._finish(call_id, "error", error=str(e) or type(e).__name__)
        else:
            self._finish(call_id, "complete", score=score)

    def _finish(self, call_id: str, status: str, score: Optional[float] = None, error: Optional[str] = None):
        with self._lock:
            self._processing.discard(call_id)
            item = self._items.get(call_id)
            if item is not None:
                item.status = status
                item.completed_at = datetime.now()
                item.score = score
                item.error = error
            self._changed.notify_all()
