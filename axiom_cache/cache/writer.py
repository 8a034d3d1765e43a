"""
Bounded background queues for best-effort writes to the slower tiers.
"""
import logging
import queue
import threading
import zlib
from typing import Callable, Dict, Any, List, Optional

logger = logging.getLogger("cache.writer")

_STOP = object()


class BackgroundWriter:
    """
    Runs tier writes on worker threads through bounded queues.

    Each worker owns one queue and tasks are routed by key, so writes and
    deletes for the same key are applied in submission order. Tasks are
    best-effort: when a queue is full the task is dropped (and counted)
    instead of blocking the caller, and a failing task is logged and
    forgotten.
    """

    def __init__(self, max_queue_size: int = 1024, workers: int = 2, name: str = "cache-writer"):
        """
        Start the workers.

        Args:
            max_queue_size: Capacity of each worker's queue
            workers: Number of worker threads
            name: Thread name prefix
        """
        if max_queue_size < 1:
            raise ValueError(f"max_queue_size must be >= 1, got {max_queue_size}")
        if workers < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        self._queues: List["queue.Queue"] = [
            queue.Queue(maxsize=max_queue_size) for _ in range(workers)
        ]
        self._stats = {"submitted": 0, "completed": 0, "failed": 0, "dropped": 0}
        self._stats_lock = threading.Lock()
        self._closed = False
        self._threads: List[threading.Thread] = []
        for i, q in enumerate(self._queues):
            thread = threading.Thread(
                target=self._work, args=(q,), name=f"{name}-{i}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def _count(self, stat: str) -> None:
        with self._stats_lock:
            self._stats[stat] += 1

    def submit(self, key: str, description: str, task: Callable[[], Any]) -> bool:
        """
        Queue a task for `key` without blocking.

        Returns:
            False if the writer is closed or the queue is full
        """
        if self._closed:
            return False
        q = self._queues[zlib.crc32(key.encode("utf-8")) % len(self._queues)]
        try:
            q.put_nowait((description, task))
        except queue.Full:
            self._count("dropped")
            logger.warning(f"Write queue full, dropped: {description}")
            return False
        self._count("submitted")
        return True

    def _work(self, q: "queue.Queue") -> None:
        while True:
            item = q.get()
            try:
                if item is _STOP:
                    return
                description, task = item
                try:
                    task()
                    self._count("completed")
                except Exception as e:
                    self._count("failed")
                    logger.warning(f"Background write failed ({description}): {e}")
            finally:
                q.task_done()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every queued task to finish.

        Returns:
            False if the timeout elapsed first
        """
        done = threading.Event()

        def wait():
            for q in self._queues:
                q.join()
            done.set()

        threading.Thread(target=wait, daemon=True).start()
        return done.wait(timeout)

    def close(self, timeout: Optional[float] = None) -> None:
        """Drain pending tasks and stop the workers."""
        if self._closed:
            return
        self._closed = True
        for q in self._queues:
            q.put(_STOP)
        for thread in self._threads:
            thread.join(timeout)

    @property
    def pending(self) -> int:
        return sum(q.qsize() for q in self._queues)

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["pending"] = self.pending
        return stats
