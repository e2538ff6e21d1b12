"""Phase tracking for the install pipeline."""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable

import structlog

log = structlog.get_logger("forge.progress")

INSTALL_PHASES = ("select", "parse", "resolve", "fetch", "install", "lock")


@dataclass
class Phase:
    name: str
    status: str = "pending"  # pending | running | completed | failed | skipped
    started: float | None = None
    finished: float | None = None
    detail: str = ""
    error: str | None = None

    @property
    def duration(self) -> float | None:
        if self.started is None or self.finished is None:
            return None
        return round(self.finished - self.started, 3)

    @property
    def done(self) -> bool:
        return self.status in ("completed", "failed", "skipped")


class PipelineProgress:
    """
    Ordered record of one pipeline run.

    All phases exist from the start as ``pending``. A run that stops early
    calls :meth:`abort`, which fails the current phase and skips everything
    after it, so the summary always lists the whole pipeline.
    """

    def __init__(self, phases: tuple[str, ...] = INSTALL_PHASES) -> None:
        self.phases: list[Phase] = [Phase(name) for name in phases]
        self._by_name = {p.name: p for p in self.phases}
        self.listeners: list[Callable[[Phase], None]] = []

    def __getitem__(self, name: str) -> Phase:
        return self._by_name[name]

    def status(self, name: str) -> str | None:
        p = self._by_name.get(name)
        return p.status if p else None

    def start(self, name: str) -> None:
        p = self[name]
        p.status, p.started = "running", time.monotonic()
        self._emit(p)

    def complete(self, name: str, detail: str = "") -> None:
        p = self[name]
        if p.status != "running":
            return
        p.status, p.finished = "completed", time.monotonic()
        p.detail = detail or p.detail
        self._emit(p)

    def fail(self, name: str, error: str) -> None:
        p = self[name]
        p.status, p.finished, p.error = "failed", time.monotonic(), error
        self._emit(p)

    def skip(self, name: str, reason: str) -> None:
        p = self[name]
        if p.done:
            return
        p.status, p.detail = "skipped", reason
        self._emit(p)

    def abort(self, name: str, error: str) -> None:
        """Fail *name* and skip every phase that has not run yet."""
        self.fail(name, error)
        for p in self.phases:
            if p.status == "pending":
                self.skip(p.name, f"aborted after {name}")

    @contextmanager
    def phase(self, name: str) -> Iterator[Phase]:
        """Run a block as *name*. An exception aborts the pipeline and propagates."""
        self.start(name)
        try:
            yield self[name]
        except Exception as exc:
            self.abort(name, str(exc))
            raise
        self.complete(name)

    @property
    def failed(self) -> list[str]:
        return [p.name for p in self.phases if p.status == "failed"]

    def get_summary(self) -> dict[str, Any]:
        return {
            "phases": [
                {
                    "phase": p.name,
                    "status": p.status,
                    "duration": p.duration,
                    "detail": p.detail,
                    "error": p.error,
                }
                for p in self.phases
            ],
            "total_duration": round(sum(p.duration or 0 for p in self.phases), 3),
        }

    def _emit(self, p: Phase) -> None:
        log.debug(f"phase.{p.status}", phase=p.name, detail=p.detail or None, error=p.error)
        for listener in self.listeners:
            try:
                listener(p)
            except Exception:
                log.debug("phase.listener_error", phase=p.name, exc_info=True)
