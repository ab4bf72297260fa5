"""
nbody_pyramid.bounds
====================

World bounding box used to map particle positions onto the octree grid,
and the rate-limited tracker that refreshes it.

Exact bounds need a device-to-host readback, so the tracker refreshes at
most once per wall-clock ``interval``. A refresh is a polled task: it is
launched on one step and collected on whichever later step finds it
complete. Failed or invalid readbacks are logged and the previous box is
kept.
"""
from __future__ import annotations

import logging
import math
import time
from typing import Callable

import numpy as np

from .utils._validation import validate_bounds_pair

logger = logging.getLogger(__name__)

DEFAULT_BOUNDS_MIN = (-4.0, -4.0, 0.0)
DEFAULT_BOUNDS_MAX = (4.0, 4.0, 2.0)


class WorldBounds:
    """Axis-aligned box ``[min, max]`` in world coordinates (float64, read-only)."""

    __slots__ = ('min', 'max')

    def __init__(self, bounds_min, bounds_max):
        lo = np.array(bounds_min, dtype=np.float64).reshape(3)
        hi = np.array(bounds_max, dtype=np.float64).reshape(3)
        lo.flags.writeable = False
        hi.flags.writeable = False
        self.min = lo
        self.max = hi

    @classmethod
    def from_pair(cls, bounds_min, bounds_max) -> "WorldBounds":
        """Validated constructor; raises ``ValueError`` for an empty or non-finite box."""
        lo, hi = validate_bounds_pair(bounds_min, bounds_max)
        return cls(lo, hi)

    @classmethod
    def default(cls) -> "WorldBounds":
        return cls(DEFAULT_BOUNDS_MIN, DEFAULT_BOUNDS_MAX)

    def __repr__(self):
        return f"WorldBounds(min={self.min.tolist()}, max={self.max.tolist()})"

    def __eq__(self, other):
        if not isinstance(other, WorldBounds):
            return NotImplemented
        return bool(np.array_equal(self.min, other.min) and np.array_equal(self.max, other.max))

    def __hash__(self):
        return hash((tuple(self.min), tuple(self.max)))

    @property
    def extent(self) -> np.ndarray:
        return self.max - self.min

    @property
    def max_extent(self) -> float:
        return float(np.max(self.extent))

    @property
    def center(self) -> np.ndarray:
        return 0.5 * (self.min + self.max)

    def is_valid(self) -> bool:
        return bool(np.all(np.isfinite(self.min)) and np.all(np.isfinite(self.max))
                    and np.all(self.max > self.min))

    def normalize(self, points) -> np.ndarray:
        """Map world points into ``[0, 1]^3`` box coordinates (unclamped)."""
        return (np.asarray(points, dtype=np.float64) - self.min) / self.extent

    def contains(self, points) -> np.ndarray:
        p = np.asarray(points, dtype=np.float64)
        return np.all((p >= self.min) & (p <= self.max), axis=-1)

    def padded(self, margin: float = 0.1, min_padding: float = 0.5) -> "WorldBounds":
        """Grow each side by ``max(min_padding, margin * extent)`` per axis."""
        pad = np.maximum(min_padding, margin * self.extent)
        return WorldBounds(self.min - pad, self.max + pad)


def compute_bounds(positions, masses=None, *, margin: float = 0.1,
                   min_padding: float = 0.5) -> WorldBounds | None:
    """Padded bounds of the particles with finite position and positive mass.

    Returns *None* when no particle qualifies.
    """
    pos = np.asarray(positions, dtype=np.float64)
    if masses is None:
        if pos.shape[-1] == 4:
            masses = pos[:, 3]
        else:
            masses = np.ones(pos.shape[0])
    masses = np.asarray(masses, dtype=np.float64)
    xyz = pos[:, :3]
    valid = (masses > 0) & np.isfinite(masses) & np.all(np.isfinite(xyz), axis=1)
    if not np.any(valid):
        return None
    return WorldBounds(xyz[valid].min(axis=0), xyz[valid].max(axis=0)).padded(margin, min_padding)


class WorldBoundsTracker:
    """
    Cached world bounds with a rate-limited, polled refresh.

    Parameters
    ----------
    initial : WorldBounds, optional
        Starting box. When omitted the default box is used and a refresh is
        forced on the first poll.
    interval : float
        Minimum wall-clock seconds between refreshes. ``0`` refreshes on every
        poll, ``inf`` only when forced.
    margin, min_padding : float
        Padding rule applied to every refreshed box, see
        :meth:`WorldBounds.padded`.
    clock : callable
        Monotonic time source in seconds.
    """

    def __init__(
        self,
        initial: WorldBounds | None = None,
        *,
        interval: float = 10.0,
        margin: float = 0.1,
        min_padding: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval < 0 or math.isnan(interval):
            raise ValueError(f"interval must be >= 0, got {interval}")
        self.interval = float(interval)
        self.margin = float(margin)
        self.min_padding = float(min_padding)
        self._clock = clock

        self._bounds = initial if initial is not None else WorldBounds.default()
        self._force = initial is None
        self._pending = None
        self._last_refresh = None if initial is None else clock()

        self.refresh_count = 0
        self.failure_count = 0

    @property
    def bounds(self) -> WorldBounds:
        return self._bounds

    @property
    def pending(self) -> bool:
        return self._pending is not None

    @property
    def last_refresh(self) -> float | None:
        return self._last_refresh

    def invalidate(self) -> None:
        """Force a refresh on the next poll."""
        self._force = True

    def set_bounds(self, bounds: WorldBounds) -> None:
        """Replace the cached box and restart the refresh timer."""
        if not bounds.is_valid():
            raise ValueError(f"invalid bounds {bounds!r}")
        self._bounds = bounds
        self._pending = None
        self._force = False
        self._last_refresh = self._clock()

    def _is_due(self, now: float) -> bool:
        if self._force or self._last_refresh is None:
            return True
        return now - self._last_refresh >= self.interval

    def poll(self, device, pos, n: int) -> WorldBounds:
        """Launch a refresh if one is due, collect a finished one, return the box.

        A forced refresh (first use without caller bounds, or after
        :meth:`invalidate`) is waited for; all others are collected only once
        complete.
        """
        now = self._clock()
        if self._pending is None and self._is_due(now):
            try:
                self._pending = device.start_bounds_readback(pos, n)
            except Exception as e:
                self._record_failure(now, e)

        if self._pending is not None and (self._force or self._pending.done()):
            self._collect(now)
        return self._bounds

    def _record_failure(self, now: float, error) -> None:
        self.failure_count += 1
        self._force = False
        self._last_refresh = now
        logger.warning("World bounds refresh failed, keeping %r: %s", self._bounds, error)

    def _collect(self, now: float) -> None:
        pending, self._pending = self._pending, None
        try:
            lo, hi, count = pending.result()
        except Exception as e:
            self._record_failure(now, e)
            return

        if count <= 0:
            self._record_failure(now, "no particle with finite position and positive mass")
            return
        candidate = WorldBounds(lo, hi).padded(self.margin, self.min_padding)
        if not candidate.is_valid():
            self._record_failure(now, f"invalid readback {candidate!r}")
            return

        self._bounds = candidate
        self._force = False
        self._last_refresh = now
        self.refresh_count += 1
        logger.debug("World bounds refreshed: %r", candidate)
