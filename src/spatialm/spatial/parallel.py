"""
parallel.py - Thread-level parallelism helpers

Both parallel granularities (reference-point chunks inside one M
estimate, simulation replicates inside an envelope) go through
`ordered_map`: every task owns its state, results come back in task
order, and the caller reduces them single-threaded.
"""
from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, TypeVar

import numpy as np

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


def resolve_n_jobs(n_jobs: Optional[int]) -> int:
    """Translate n_jobs (None, -1 or positive int) into a worker count."""
    if n_jobs is None or n_jobs == 1:
        return 1
    n_cpu = os.cpu_count() or 1
    if n_jobs < 0:
        return max(n_cpu + 1 + n_jobs, 1)
    return int(n_jobs)


def chunk_indices(indices: np.ndarray, chunk_size: int) -> List[np.ndarray]:
    """Split an index array into consecutive chunks."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [indices[i:i + chunk_size] for i in range(0, len(indices), chunk_size)]


def ordered_map(func: Callable[[T], R], tasks: Iterable[T], n_jobs: int = 1) -> List[R]:
    """
    Apply `func` to every task, possibly in worker threads.

    Results are returned in task order regardless of scheduling, and the
    first exception raised by a task propagates to the caller.
    """
    tasks = list(tasks)
    workers = min(resolve_n_jobs(n_jobs), len(tasks))
    if workers <= 1:
        return [func(t) for t in tasks]
    logger.debug("Running %d tasks on %d threads", len(tasks), workers)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(func, tasks))


def spawn_generators(seed, n: int) -> List[np.random.Generator]:
    """
    One independent random stream per replicate.

    Stream k depends only on (seed, k), so results do not depend on how
    replicates are scheduled across threads.
    """
    if isinstance(seed, np.random.SeedSequence):
        root = seed
    else:
        root = np.random.SeedSequence(seed)
    return [np.random.default_rng(s) for s in root.spawn(n)]
