#!/usr/bin/env python3
"""
nbody_pyramid.diagnostics

Conserved quantities, direct-summation references and simulation snapshots.

All functions take host arrays: positions ``(N, 3)`` (or packed ``(N, 4)``),
velocities ``(N, 3)`` and masses ``(N,)``. Particles with mass <= 0 or a
non-finite position, velocity or mass are ignored, matching what the
pyramid itself deposits.

Examples
--------
>>> from nbody_pyramid.initial_conditions import make_plummer_sphere
>>> from nbody_pyramid.diagnostics import kinetic_energy, potential_energy
>>> xv, m = make_plummer_sphere(1000)
>>> E = kinetic_energy(xv[:, 3:], m) + potential_energy(xv[:, :3], m, softening=0.01, G=1.0)
"""
from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from scipy.integrate import solve_ivp

from . import cpu_kernels


def _valid_mask(pos, mass, vel=None) -> np.ndarray:
    ok = (mass > 0) & np.isfinite(mass) & np.all(np.isfinite(pos), axis=1)
    if vel is not None:
        ok &= np.all(np.isfinite(vel), axis=1)
    return ok


def _xyz(pos) -> np.ndarray:
    pos = np.asarray(pos, dtype=np.float64)
    return pos[:, :3]


# ============================================================================
# CONSERVED QUANTITIES
# ============================================================================

def kinetic_energy(vel, mass) -> float:
    vel = _xyz(vel)
    mass = np.asarray(mass, dtype=np.float64)
    ok = (mass > 0) & np.isfinite(mass) & np.all(np.isfinite(vel), axis=1)
    return float(0.5 * np.sum(mass[ok] * np.sum(vel[ok] ** 2, axis=1)))


def potential_energy(pos, mass, *, softening: float, G: float) -> float:
    """Plummer-softened pairwise potential energy, ``0.5 Σ m_i φ_i``."""
    pos = _xyz(pos)
    mass = np.asarray(mass, dtype=np.float64)
    ok = _valid_mask(pos, mass)
    p = np.ascontiguousarray(pos[ok])
    m = np.ascontiguousarray(mass[ok])
    if p.shape[0] < 2:
        return 0.0
    phi = cpu_kernels.direct_potential(p, m, float(softening), float(G))
    return float(0.5 * np.sum(m * phi))


def total_energy(pos, vel, mass, *, softening: float, G: float) -> float:
    return kinetic_energy(vel, mass) + potential_energy(pos, mass, softening=softening, G=G)


def linear_momentum(vel, mass) -> np.ndarray:
    vel = _xyz(vel)
    mass = np.asarray(mass, dtype=np.float64)
    ok = (mass > 0) & np.isfinite(mass) & np.all(np.isfinite(vel), axis=1)
    return np.sum(mass[ok, None] * vel[ok], axis=0)


def angular_momentum(pos, vel, mass, origin=None) -> np.ndarray:
    """Total ``Σ m (x - origin) × v`` (origin defaults to 0)."""
    pos = _xyz(pos)
    vel = _xyz(vel)
    mass = np.asarray(mass, dtype=np.float64)
    ok = _valid_mask(pos, mass, vel)
    r = pos[ok] if origin is None else pos[ok] - np.asarray(origin, dtype=np.float64)
    return np.sum(mass[ok, None] * np.cross(r, vel[ok]), axis=0)


def center_of_mass(pos, mass) -> np.ndarray:
    pos = _xyz(pos)
    mass = np.asarray(mass, dtype=np.float64)
    ok = _valid_mask(pos, mass)
    total = mass[ok].sum()
    if total <= 0:
        return np.full(3, np.nan)
    return np.sum(mass[ok, None] * pos[ok], axis=0) / total


# ============================================================================
# REFERENCES
# ============================================================================

def direct_accelerations(pos, mass, *, softening: float, G: float) -> np.ndarray:
    """
    Exact O(N^2) Plummer-softened accelerations.

    Parameters
    ----------
    pos : array_like, shape (N, 3)
        Particle positions.
    mass : array_like, shape (N,)
        Particle masses; mass <= 0 exerts no force.
    softening : float
        Plummer softening length.
    G : float
        Gravitational constant.

    Returns
    -------
    np.ndarray, shape (N, 3)
    """
    p = np.ascontiguousarray(_xyz(pos))
    m = np.ascontiguousarray(np.asarray(mass, dtype=np.float64))
    if p.shape[0] != m.shape[0]:
        raise ValueError(f"mass length {m.shape[0]} does not match {p.shape[0]} positions")
    return cpu_kernels.direct_accelerations(p, m, float(softening), float(G))


def two_body_reference(x1, x2, v1, v2, m1: float, m2: float, t_eval, *,
                       G: float, softening: float = 0.0):
    """
    Softened two-body trajectories integrated with ``scipy.integrate.solve_ivp``.

    Returns
    -------
    r1, r2 : np.ndarray, shape (len(t_eval), 3)
        Positions of both bodies at the requested times.
    """
    t_eval = np.asarray(t_eval, dtype=np.float64)
    eps2 = softening * softening

    def rhs(_t, y):
        r = y[3:6] - y[0:3]
        inv = (r @ r + eps2) ** -1.5
        a1 = G * m2 * r * inv
        a2 = -G * m1 * r * inv
        return np.concatenate([y[6:9], y[9:12], a1, a2])

    y0 = np.concatenate([np.asarray(x1, float), np.asarray(x2, float),
                         np.asarray(v1, float), np.asarray(v2, float)])
    sol = solve_ivp(rhs, (0.0, float(t_eval[-1])), y0, t_eval=t_eval,
                    method='DOP853', rtol=1e-10, atol=1e-12)
    if not sol.success:
        raise RuntimeError(f"two-body reference integration failed: {sol.message}")
    return sol.y[0:3].T, sol.y[3:6].T


# ============================================================================
# SNAPSHOT
# ============================================================================

@dataclass(frozen=True)
class SimulationSnapshot:
    """Diagnostic statistics of one simulation state."""

    step: int
    time: float
    num_particles: int
    bounds_min: tuple
    bounds_max: tuple
    total_mass: float
    center_of_mass: tuple
    momentum: tuple
    angular_momentum: tuple
    kinetic_energy: float
    max_speed: float
    non_finite: int
    level_occupancy: tuple = field(default_factory=tuple)


def make_snapshot(step, time, pos, vel, mass, bounds, level_occupancy=()) -> SimulationSnapshot:
    pos = _xyz(pos)
    vel = _xyz(vel)
    mass = np.asarray(mass, dtype=np.float64)
    ok = _valid_mask(pos, mass, vel)
    finite = np.all(np.isfinite(pos), axis=1) & np.all(np.isfinite(vel), axis=1)
    speeds = np.linalg.norm(vel[ok], axis=1)
    return SimulationSnapshot(
        step=int(step),
        time=float(time),
        num_particles=int(pos.shape[0]),
        bounds_min=tuple(float(v) for v in bounds.min),
        bounds_max=tuple(float(v) for v in bounds.max),
        total_mass=float(mass[ok].sum()),
        center_of_mass=tuple(float(v) for v in center_of_mass(pos, mass)),
        momentum=tuple(float(v) for v in linear_momentum(vel[ok], mass[ok])),
        angular_momentum=tuple(float(v) for v in angular_momentum(pos, vel, mass)),
        kinetic_energy=kinetic_energy(vel, mass),
        max_speed=float(speeds.max()) if speeds.size else 0.0,
        non_finite=int(np.count_nonzero(~finite)),
        level_occupancy=tuple(
            (s['level'], s['grid_size'], s['occupied'], s['mass']) for s in level_occupancy
        ),
    )
