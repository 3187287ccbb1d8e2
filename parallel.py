"""
Parallel-for execution strategies for the quantization pipeline.

Every stage of the pipeline applies the same pure function to independent
slices of a bounded grid (histogram rows, prefix-sum lines, LUT cells, pixel
bands). A stage hands its slices to an executor's ``map`` and gets the results
back in submission order once every slice has finished, so a ``map`` call is
also the synchronization point between dependent stages.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from multiprocessing import cpu_count
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

__all__ = [
    'SerialExecutor',
    'ThreadedExecutor',
    'make_executor',
    'split_range',
    'chunked',
]

T = TypeVar('T')
R = TypeVar('R')

logger = logging.getLogger(__name__)


def split_range(length: int, parts: int) -> List[Tuple[int, int]]:
    """
    Split ``range(length)`` into at most ``parts`` contiguous (start, stop) spans.

    Spans differ in size by at most one and empty spans are never returned.
    """
    if length <= 0:
        return []
    parts = max(1, min(parts, length))
    base, extra = divmod(length, parts)
    spans = []
    start = 0
    for i in range(parts):
        stop = start + base + (1 if i < extra else 0)
        spans.append((start, stop))
        start = stop
    return spans


class SerialExecutor:
    """Reference strategy: runs every task in the calling thread, in order."""

    name = "serial"
    workers = 1

    def map(self, func: Callable[[T], R], items: Iterable[T]) -> List[R]:
        return [func(item) for item in items]

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class ThreadedExecutor:
    """
    Thread-pool strategy. numpy releases the GIL inside its kernels, so
    slices of one stage genuinely overlap.
    """

    name = "thread"

    def __init__(self, num_workers: Optional[int] = None):
        """
        Args:
            num_workers: Number of worker threads. Defaults to min(4, CPU count - 1)
                so a preview loop never starves the rest of the system.
        """
        if num_workers is None:
            num_workers = min(4, max(1, cpu_count() - 1))
        self.workers = max(1, int(num_workers))
        self._pool = ThreadPoolExecutor(max_workers=self.workers,
                                        thread_name_prefix="smolcam")
        logger.debug("Thread pool started with %d workers", self.workers)

    def map(self, func: Callable[[T], R], items: Iterable[T]) -> List[R]:
        futures = [self._pool.submit(func, item) for item in items]
        # Barrier: result() re-raises the first worker exception.
        return [future.result() for future in futures]

    def close(self):
        self._pool.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def make_executor(kind: str = "thread", workers: Optional[int] = None):
    """
    Build an executor by name.

    Args:
        kind: "thread" or "serial"
        workers: Worker count for the thread strategy (ignored for serial)

    Returns:
        An executor exposing ``map``, ``close`` and ``workers``
    """
    if kind == "serial":
        return SerialExecutor()
    if kind == "thread":
        return ThreadedExecutor(workers)
    raise ValueError(f"Unknown executor kind: {kind}")


def chunked(items: Sequence[T], parts: int) -> List[Sequence[T]]:
    """Split a sequence into at most ``parts`` contiguous slices."""
    return [items[start:stop] for start, stop in split_range(len(items), parts)]
