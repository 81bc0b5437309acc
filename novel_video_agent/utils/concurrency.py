"""
Bounded fan-out helper.

Shot-level provider calls run on a thread pool capped at max_workers so a
single narration never floods a provider with requests.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, FIRST_COMPLETED, wait
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

from novel_video_agent.errors import OperationCancelled
from novel_video_agent.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

# How often the waiting thread re-checks the cancellation event
_CANCEL_CHECK_SECONDS = 0.1
# How long a cancel waits for in-flight calls before abandoning them
_CANCEL_GRACE_SECONDS = 0.25


def run_bounded(
    units: Sequence[T],
    worker: Callable[[T], R],
    max_workers: int,
    cancel_event: Optional[threading.Event] = None,
) -> List[Tuple[T, Optional[R], Optional[BaseException]]]:
    """Run worker over units with at most max_workers in flight.

    Results come back in the order of units, never in completion order.
    Worker exceptions are captured per unit rather than raised.

    Args:
        units: Work items.
        worker: Callable invoked once per unit.
        max_workers: Upper bound on concurrent calls.
        cancel_event: When set, units not yet started never start and
            OperationCancelled is raised without waiting on in-flight
            calls beyond a short grace period. Abandoned calls keep running
            in the background and persist their own outcome.

    Returns:
        List of (unit, result, error) tuples in source order.

    Raises:
        OperationCancelled: If cancel_event fires before all units finish.
            Its unstarted attribute lists the units that never ran.

    Examples:
        >>> run_bounded([1, 2, 3], lambda x: x * 2, max_workers=2)
        [(1, 2, None), (2, 4, None), (3, 6, None)]
    """
    if not units:
        return []
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("Cancelled before any unit started", unstarted=list(units))

    outcomes: Dict[int, Tuple[Optional[R], Optional[BaseException]]] = {}
    started: Set[int] = set()
    lock = threading.Lock()

    def run(index: int) -> R:
        with lock:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled("Cancelled before start")
            started.add(index)
        return worker(units[index])

    workers = max(1, min(max_workers, len(units)))
    executor = ThreadPoolExecutor(max_workers=workers)
    try:
        futures = {executor.submit(run, index): index for index in range(len(units))}
        pending = set(futures)

        while pending:
            done, pending = wait(pending, timeout=_CANCEL_CHECK_SECONDS, return_when=FIRST_COMPLETED)
            for future in done:
                index = futures[future]
                error = future.exception()
                outcomes[index] = (None if error else future.result(), error)

            if cancel_event is not None and cancel_event.is_set() and pending:
                executor.shutdown(wait=False, cancel_futures=True)
                with lock:
                    unstarted = [units[i] for i in range(len(units)) if i not in started]
                    in_flight = [f for f in pending if futures[f] in started]
                logger.info(f"[CANCEL] Dropped {len(unstarted)} unstarted unit(s), "
                            f"abandoning {len(in_flight)} in-flight call(s)")
                # Poll loops watch the same event and settle inside the grace period
                wait(in_flight, timeout=_CANCEL_GRACE_SECONDS)
                raise OperationCancelled(
                    f"Cancelled after {len(outcomes)} of {len(units)} unit(s) finished",
                    unstarted=unstarted,
                )
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    # Every remaining unit saw the event before the loop did
    skipped = [units[i] for i in range(len(units)) if i not in started]
    if skipped:
        raise OperationCancelled(
            f"Cancelled after {len(units) - len(skipped)} of {len(units)} unit(s) finished",
            unstarted=skipped,
        )
    return [(unit, *outcomes[index]) for index, unit in enumerate(units)]


def mark_unstarted_failed(store, table: str, records: Sequence[dict]) -> int:
    """After a cancelled fan-out, fail the unit records that never started.

    Pass the unstarted list carried by OperationCancelled. Records already
    completed or failed are left untouched so finished work is retained
    and the cancelled units show up as retryable.

    Returns:
        Number of records marked failed.
    """
    marked = 0
    for record in records:
        current = store.get(table, record["id"])
        if current is not None and current["status"] == "pending":
            store.transition(table, record["id"], "failed", error_message="cancelled")
            marked += 1
    if marked:
        logger.info(f"[CANCEL] Marked {marked} unstarted {table} record(s) failed")
    return marked
