#!/usr/bin/env python3
"""
nbody_pyramid.simulation

Pyramid Barnes-Hut N-body simulation.

With the default ``kick_drift`` integrator one call to
:meth:`PyramidGravity.step` runs, in this order:

1. world bounds poll (rate-limited refresh, see :mod:`.bounds`);
2. pyramid build: clear, level-0 deposit, level-by-level 8-child reduction;
3. traversal: per-particle accelerations into the force field;
4. velocity pass, position pass, ping-pong swaps.

With ``integrator='kdk'`` a step is a half kick with the forces at the
current positions, a drift, steps 1-3 at the new positions and a second
half kick. Those forces carry over as the first half kick of the next step.

``enable_profiling=True`` times every pass, see :mod:`.profiler`.

All particle and pyramid storage stays on the selected device between
steps; only bounds refreshes and explicit accessors move data to the host.

Examples
--------
>>> import numpy as np
>>> from nbody_pyramid import PyramidGravity, make_plummer_sphere
>>> xv, m = make_plummer_sphere(5000, a=0.5)
>>> with PyramidGravity(xv[:, :3], xv[:, 3:], m, G=1.0, dt=1e-3,
...                     softening=0.02, device='cpu') as sim:
...     sim.run(10)
...     final_pos = sim.get_positions()
"""
from __future__ import annotations

import logging
import time
from typing import Callable

import numpy as np

from .bounds import WorldBounds, WorldBoundsTracker
from .config import GravityConfig
from .device import select_device
from .diagnostics import SimulationSnapshot, make_snapshot
from .exceptions import SimulationDisposedError
from .integrator import drift, integrate, kick
from .profiler import create_profiler, profiled
from .pyramid import OctreePyramid
from .state import ParticleState
from .traversal import compute_accelerations
from .utils._validation import validate_masses, validate_positions, validate_velocities

logger = logging.getLogger(__name__)


def _as_bounds(bounds) -> WorldBounds | None:
    if bounds is None or isinstance(bounds, WorldBounds):
        return bounds
    lo, hi = bounds
    return WorldBounds.from_pair(lo, hi)


class PyramidGravity:
    """
    GPU-style Barnes-Hut simulation over an implicit octree pyramid.

    Parameters
    ----------
    positions : array_like, shape (N, 3) or (N, 4)
        Initial positions, or packed ``(x, y, z, mass)`` rows.
    velocities : array_like, shape (N, 3) or (N, 4), optional
        Initial velocities (zero when omitted); a fourth column is ignored.
    masses : array_like, shape (N,) or scalar, optional
        Particle masses. Defaults to the packed mass column, else unit mass.
        Mass <= 0 is legal: such particles exert no gravity but still move.
    bounds : WorldBounds or (min, max), optional
        Initial world box. When omitted a default box is used and the first
        step refreshes it from the particles.
    config : GravityConfig, optional
        Base configuration; keyword overrides are applied on top.
    device : {'auto', 'cpu', 'gpu', 'cuda'} or device instance
        Compute substrate, see :func:`~nbody_pyramid.device.select_device`.
    clock : callable, optional
        Time source for the bounds refresh interval.
    **overrides
        Any :class:`GravityConfig` field, e.g. ``theta=0.4``.

    Raises
    ------
    ValueError
        Invalid arrays or configuration.
    CapabilityError
        ``device='gpu'`` without a usable CUDA device.
    KernelCompileError
        CUDA kernels failed to compile.
    """

    def __init__(
        self,
        positions,
        velocities=None,
        masses=None,
        *,
        bounds=None,
        config: GravityConfig | None = None,
        device='auto',
        clock: Callable[[], float] = time.monotonic,
        **overrides,
    ):
        self.config = GravityConfig.from_kwargs(config, **overrides)
        cfg = self.config

        strict = cfg.reject_non_finite
        pos, packed_mass = validate_positions(positions, reject_non_finite=strict)
        n = pos.shape[0]
        if masses is None:
            masses = packed_mass
        masses = validate_masses(masses, n, reject_non_finite=strict)
        vel = validate_velocities(velocities, n, reject_non_finite=strict)

        self.device = select_device(device, cfg.precision)
        self.bounds_tracker = WorldBoundsTracker(
            _as_bounds(bounds),
            interval=cfg.bounds_interval,
            margin=cfg.bounds_margin,
            min_padding=cfg.bounds_min_padding,
            clock=clock,
        )
        self.state = ParticleState(self.device, pos, masses, vel)
        self.pyramid = OctreePyramid(self.device, cfg.grid_size, cfg.num_levels,
                                     cfg.slices_per_row)
        self.profiler = create_profiler(cfg, self.device)

        self.time = 0.0
        self.step_count = 0
        self._step_bounds = self.bounds_tracker.bounds
        # step_count at which state.force matched the current positions
        self._force_step = None
        self._disposed = False

        logger.info(
            "PyramidGravity: N=%d, grid=%d^3 (%d levels), theta=%.3g, eps=%.3g, "
            "integrator=%s, device=%s",
            n, cfg.grid_size, cfg.num_levels, cfg.theta, cfg.softening, cfg.integrator,
            self.device.name,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _check_alive(self) -> None:
        if self._disposed:
            raise SimulationDisposedError("simulation has been disposed")

    def dispose(self) -> None:
        """Release all device buffers. Safe to call more than once."""
        if self._disposed:
            return
        self._disposed = True
        self.state.release()
        self.pyramid.release()
        self.device.release_memory()
        logger.debug("PyramidGravity disposed after %d steps", self.step_count)

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    @property
    def num_particles(self) -> int:
        return self.state.num_particles

    def _build_and_traverse(self) -> WorldBounds:
        cfg = self.config
        n = self.state.num_particles
        # One box per step for both deposit and traversal
        bounds = self.bounds_tracker.poll(self.device, self.state.pos, n)
        self._step_bounds = bounds
        self.pyramid.build(self.state.pos, n, bounds, profiler=self.profiler)
        with profiled(self.profiler, 'traversal'):
            compute_accelerations(self.device, self.pyramid, self.state, bounds,
                                  theta=cfg.theta, softening=cfg.softening, G=cfg.G,
                                  enable_quadrupole=cfg.enable_quadrupole)
        self._force_step = self.step_count
        return bounds

    def _step_kick_drift(self) -> None:
        cfg = self.config
        self._build_and_traverse()
        integrate(self.device, self.state, dt=cfg.dt, damping=cfg.damping,
                  max_speed=cfg.max_speed, max_accel=cfg.max_accel, profiler=self.profiler)

    def _step_kdk(self) -> None:
        cfg = self.config
        if self._force_step != self.step_count:
            # First step, or forces left over from a kick-drift step
            self._build_and_traverse()
        clamps = dict(max_speed=cfg.max_speed, max_accel=cfg.max_accel)

        with profiled(self.profiler, 'kick_1'):
            kick(self.device, self.state, dt=0.5 * cfg.dt, damping=0.0, **clamps)
        with profiled(self.profiler, 'drift'):
            drift(self.device, self.state, dt=cfg.dt)
        self._build_and_traverse()
        # Damping once per step, on the closing half kick
        with profiled(self.profiler, 'kick_2'):
            kick(self.device, self.state, dt=0.5 * cfg.dt, damping=cfg.damping, **clamps)
        self._force_step = self.step_count + 1

    def step(self) -> None:
        """Advance the simulation by one ``dt`` with the configured integrator."""
        self._check_alive()
        if self.profiler is not None:
            self.profiler.collect()
            self.profiler.step = self.step_count
        if self.config.integrator == 'kdk':
            self._step_kdk()
        else:
            self._step_kick_drift()
        self.step_count += 1
        self.time += self.config.dt

    def run(self, n_steps: int, callback: Callable[["PyramidGravity"], None] | None = None) -> None:
        """Call :meth:`step` *n_steps* times, invoking *callback* after each."""
        for _ in range(int(n_steps)):
            self.step()
            if callback is not None:
                callback(self)

    def compute_accelerations(self) -> np.ndarray:
        """Accelerations for the current positions without advancing time, shape (N, 3)."""
        self._check_alive()
        self._build_and_traverse()
        return self.device.to_host(self.state.force[:self.num_particles, :3]).astype(np.float64)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def _view(self, arr, cols):
        self._check_alive()
        view = arr[:self.num_particles, cols]
        if isinstance(view, np.ndarray):
            view.flags.writeable = False
        return view

    @property
    def positions(self):
        """Current ``(N, 3)`` positions; valid until the next step."""
        return self._view(self.state.pos, slice(0, 3))

    @property
    def velocities(self):
        """Current ``(N, 3)`` velocities; valid until the next step."""
        return self._view(self.state.vel, slice(0, 3))

    @property
    def masses(self):
        return self._view(self.state.pos, 3)

    @property
    def forces(self):
        """Accelerations computed by the last step, ``(N, 3)``."""
        return self._view(self.state.force, slice(0, 3))

    @property
    def position_texture(self):
        """Current ``(capacity, 4)`` position+mass texture."""
        self._check_alive()
        return self.state.pos

    @property
    def velocity_texture(self):
        self._check_alive()
        return self.state.vel

    def get_positions(self) -> np.ndarray:
        return self.device.to_host(self.positions).astype(np.float64)

    def get_velocities(self) -> np.ndarray:
        return self.device.to_host(self.velocities).astype(np.float64)

    def get_masses(self) -> np.ndarray:
        return self.device.to_host(self.masses).astype(np.float64)

    def get_phase_space(self) -> np.ndarray:
        """Host ``(N, 6)`` array of positions and velocities."""
        return np.hstack([self.get_positions(), self.get_velocities()])

    @property
    def bounds(self) -> WorldBounds:
        """Box used by the most recent step (or the initial box)."""
        return self._step_bounds

    def level_stats(self) -> list[dict]:
        self._check_alive()
        return self.pyramid.occupancy()

    def snapshot(self) -> SimulationSnapshot:
        """Diagnostic statistics of the current state. Does not modify the simulation."""
        return make_snapshot(
            self.step_count, self.time,
            self.get_positions(), self.get_velocities(), self.get_masses(),
            self._step_bounds, self.level_stats(),
        )
