from __future__ import annotations

import contextvars
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, Sequence, TypeVar

T = TypeVar("T")


@dataclass
class Settled(Generic[T]):
    """Outcome of one task: either ``value`` or ``error`` is set."""

    index: int
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def settle_all(
    tasks: Sequence[Callable[[], T]],
    limit: int,
    on_settled: Optional[Callable[[Settled[T]], Any]] = None,
) -> List[Settled[T]]:
    """
    Run ``tasks`` with at most ``limit`` in flight and wait for every one.

    A failing task never cancels the rest; its exception is captured in the
    returned ``Settled`` entry. Results are in task order. ``on_settled`` is
    called from the worker thread right after each task finishes.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")
    if not tasks:
        return []

    def run(index: int, task: Callable[[], T]) -> Settled[T]:
        try:
            outcome: Settled[T] = Settled(index=index, value=task())
        except Exception as exc:
            outcome = Settled(index=index, error=exc)
        if on_settled is not None:
            on_settled(outcome)
        return outcome

    with ThreadPoolExecutor(max_workers=min(limit, len(tasks)), thread_name_prefix="limiter") as pool:
        # each task keeps the caller's logging context (worker / job ids)
        futures = [
            pool.submit(contextvars.copy_context().run, run, index, task)
            for index, task in enumerate(tasks)
        ]
        return [f.result() for f in futures]
