"""
nbody_pyramid.profiler

Opt-in per-pass timing of the step pipeline.

Each profiled section starts a device timer (``time.perf_counter`` on the
CPU, a CUDA event pair on the GPU). GPU timers complete asynchronously, so
finished ones are collected at the start of the next step, or on demand
with :meth:`PassProfiler.collect`.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PassTiming:
    step: int
    name: str
    seconds: float


class PassProfiler:
    """
    Collects one :class:`PassTiming` per profiled pass.

    Parameters
    ----------
    device : CpuDevice or CudaDevice
        Source of the pass timers.
    """

    def __init__(self, device):
        self.device = device
        self.step = 0
        self.records: list[PassTiming] = []
        self._pending: list[tuple[int, str, object]] = []

    @contextmanager
    def section(self, name: str):
        timer = self.device.start_timer()
        try:
            yield
        finally:
            timer.stop()
            self._pending.append((self.step, name, timer))

    @property
    def pending(self) -> int:
        return len(self._pending)

    def collect(self, wait: bool = False) -> int:
        """Move finished timers into :attr:`records`; return how many moved.

        With *wait*, block until every pending timer has finished.
        """
        still_pending = []
        moved = 0
        for step, name, timer in self._pending:
            if wait or timer.done():
                self.records.append(PassTiming(step, name, timer.elapsed()))
                moved += 1
            else:
                still_pending.append((step, name, timer))
        self._pending = still_pending
        return moved

    def step_timings(self, step: int) -> list[PassTiming]:
        return [r for r in self.records if r.step == step]

    def summary(self) -> dict[str, dict[str, float]]:
        """Per-pass ``count``, ``total_ms`` and ``mean_ms`` over collected records."""
        by_name: dict[str, list[float]] = {}
        for r in self.records:
            by_name.setdefault(r.name, []).append(r.seconds)
        out = {}
        for name, values in by_name.items():
            ms = 1000.0 * np.asarray(values)
            out[name] = {'count': len(values), 'total_ms': float(ms.sum()),
                         'mean_ms': float(ms.mean())}
        return out

    def reset(self) -> None:
        self.records.clear()
        self._pending.clear()

    def log_summary(self, level: int = logging.INFO) -> None:
        for name, stats in self.summary().items():
            logger.log(level, "%-18s %6d calls  %10.3f ms total  %8.4f ms mean",
                       name, stats['count'], stats['total_ms'], stats['mean_ms'])


def create_profiler(config, device) -> PassProfiler | None:
    """Return a :class:`PassProfiler` when ``config.enable_profiling`` is set."""
    if not config.enable_profiling:
        return None
    return PassProfiler(device)


def profiled(profiler: PassProfiler | None, name: str):
    """``profiler.section(name)``, or a no-op context without a profiler."""
    if profiler is None:
        return nullcontext()
    return profiler.section(name)
