# ABOUTME: Bounded worker pool helpers
# ABOUTME: Ordered map over independent work items (patches, components)

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, TypeVar

T = TypeVar('T')
R = TypeVar('R')

logger = logging.getLogger('texrecon')


def ordered_map(func: Callable[[T], R],
                items: Sequence[T],
                max_workers: Optional[int] = None) -> List[R]:
    """
    Apply ``func`` to every item on a bounded thread pool.

    Results come back in input order regardless of completion order, so
    callers get deterministic output. The first exception raised by a worker
    propagates to the caller.

    Args:
        func: Function applied to each item; must not touch shared mutable state
        items: Work items
        max_workers: Pool size (None = executor default, 1 = run inline)

    Returns:
        List of results, same order as ``items``
    """
    if max_workers == 1 or len(items) <= 1:
        return [func(item) for item in items]

    logger.debug("Dispatching %d work items (max_workers=%s)", len(items), max_workers)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(func, items))
