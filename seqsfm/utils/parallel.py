"""
seqsfm/utils/parallel.py

Worker pool helper for the data-parallel loops of the engine
(seed-pair scoring, resection scoring, new-track triangulation).
"""

from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def parallel_map(fn: Callable[[T], R], items: Iterable[T], num_workers: int = 1) -> List[R]:
    """
    Apply fn to every item, preserving input order in the output.

    num_workers <= 1 runs inline on the calling thread.
    Exceptions raised by fn propagate to the caller.
    """
    items = list(items)
    if num_workers <= 1 or len(items) <= 1:
        return [fn(it) for it in items]

    with ThreadPoolExecutor(max_workers=num_workers) as exe:
        futures = [exe.submit(fn, it) for it in items]
        return [f.result() for f in futures]
