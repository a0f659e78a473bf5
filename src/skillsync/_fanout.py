from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def fan_out(fn: Callable[[T], R], items: Sequence[T], *, max_workers: int) -> list[R | Exception]:
    """
    Run ``fn`` over ``items`` on a bounded thread pool.

    Returns one entry per item, in input order, only after every call has finished.
    A call that raised contributes its exception instead of a result; siblings are
    never cancelled.
    """
    if not items:
        return []
    workers = max(1, min(max_workers, len(items)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="skillsync") as pool:
        futures = [pool.submit(fn, item) for item in items]
        wait(futures)

    out: list[R | Exception] = []
    for future in futures:
        exc = future.exception()
        if exc is None:
            out.append(future.result())
        elif isinstance(exc, Exception):
            out.append(exc)
        else:
            raise exc
    return out
