from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, TypeVar

from cadence.errors import Outcome, attempt


T = TypeVar("T")
MAX_WORKERS = 8


def gather_best_effort(branches: dict[str, Callable[[], T]]) -> dict[str, Outcome[T]]:
    """Run independent branches concurrently; each failure stays local to its branch."""
    if not branches:
        return {}
    if len(branches) == 1:
        label, fn = next(iter(branches.items()))
        return {label: attempt(label, fn)}
    with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(branches))) as executor:
        futures = {label: executor.submit(attempt, label, fn) for label, fn in branches.items()}
        return {label: future.result() for label, future in futures.items()}
