from __future__ import annotations

import threading
from typing import Callable, Optional, Sequence

from tqdm import tqdm


class ProjectStageProgress:
    """
    Thread-safe progress for projects aggregated in parallel.

    One tqdm bar counts projects; each aggregation stage a project enters
    advances its share by 1/len(stages), and the postfix shows how many
    projects sit in each stage.
    """

    def __init__(self, *, projects: Sequence[str], stages: Sequence[str], enabled: bool = True) -> None:
        self._lock = threading.Lock()
        self._stages = list(stages)
        self._stage_index = {name: i for i, name in enumerate(self._stages)}
        self._weight = 1.0 / max(1, len(self._stages))
        self._current: dict[str, int] = {}
        self._label: dict[str, str] = {}
        self._bar = tqdm(total=len(projects), desc="Aggregating projects", unit="project", leave=False) if enabled else None

    def callback(self, project_id: str) -> Callable[[str], None]:
        def cb(stage: str) -> None:
            self.advance(project_id, stage)

        return cb

    def advance(self, project_id: str, stage: str) -> None:
        with self._lock:
            prev = self._current.get(project_id, -1)
            idx = self._stage_index.get(stage, prev)
            if idx > prev:
                self._current[project_id] = idx
                if self._bar is not None:
                    self._bar.update((idx - prev) * self._weight)
            self._label[project_id] = stage
            self._render_locked()

    def finish(self, project_id: str) -> None:
        with self._lock:
            prev = self._current.get(project_id, -1)
            remaining = max(0.0, 1.0 - (prev + 1) * self._weight)
            if self._bar is not None and remaining:
                self._bar.update(remaining)
            self._current[project_id] = len(self._stages) - 1
            self._label[project_id] = "done"
            self._render_locked()

    def close(self) -> None:
        with self._lock:
            if self._bar is not None:
                self._bar.close()
                self._bar = None

    def stage_of(self, project_id: str) -> Optional[str]:
        with self._lock:
            return self._label.get(project_id)

    def _render_locked(self) -> None:
        if self._bar is None:
            return
        counts: dict[str, int] = {}
        for st in self._label.values():
            counts[st] = counts.get(st, 0) + 1
        parts = [f"{k}:{counts[k]}" for k in self._stages if k in counts]
        if "done" in counts:
            parts.append(f"done:{counts['done']}")
        self._bar.set_postfix_str(" ".join(parts), refresh=True)
