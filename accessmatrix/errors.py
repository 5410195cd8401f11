from __future__ import annotations

import threading
from typing import Optional


class ApiError(RuntimeError):
    pass


class AggregationError(RuntimeError):
    """A stage failed in a way that would make the access relation incomplete."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class AggregationCancelled(AggregationError):
    def __init__(self, stage: str) -> None:
        super().__init__(stage, "cancelled")


def check_cancelled(cancel: Optional[threading.Event], stage: str) -> None:
    if cancel is not None and cancel.is_set():
        raise AggregationCancelled(stage)
