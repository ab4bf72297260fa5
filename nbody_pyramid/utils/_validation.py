"""
nbody_pyramid.utils._validation
===============================

Shared input-validation helpers used when particles are uploaded.

All validators raise ``ValueError`` on invalid input and return sanitised
NumPy arrays ready to be packed into particle textures. Non-finite values
are legal by default (such particles are frozen by the kernels);
``reject_non_finite=True`` turns them into errors.
"""
from __future__ import annotations

import numpy as np

__all__: list[str] = []  # internal helpers only


def _check_finite(arr: np.ndarray, name: str) -> None:
    bad = ~np.isfinite(arr)
    if arr.ndim > 1:
        bad = bad.any(axis=1)
    if np.any(bad):
        first = int(np.flatnonzero(bad)[0])
        raise ValueError(
            f"{name} contains non-finite values ({int(bad.sum())} particle(s), "
            f"first at index {first})"
        )


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------

def validate_positions(pos, *, reject_non_finite: bool = False) -> tuple[np.ndarray, np.ndarray | None]:
    """Validate a position array.

    Parameters
    ----------
    pos : array_like
        Particle positions. Accepted shapes:

        * ``(N, 3)``: Cartesian coordinates.
        * ``(N, 4)``: packed ``(x, y, z, mass)`` texels.
    reject_non_finite : bool, optional
        If *True*, raise on any NaN or infinite coordinate.

    Returns
    -------
    pos : np.ndarray, shape ``(N, 3)``
        The validated coordinates (``float64``).
    packed_mass : np.ndarray or None
        The fourth column when *pos* was packed, else *None*.
    """
    pos = np.asarray(pos, dtype=float)

    if pos.ndim != 2 or pos.shape[1] not in (3, 4):
        raise ValueError(
            f"pos must have shape (N, 3) or (N, 4), got {pos.shape}"
        )
    if pos.shape[0] == 0:
        raise ValueError("pos must contain at least one particle")

    if reject_non_finite:
        _check_finite(pos[:, :3], "pos")

    if pos.shape[1] == 4:
        return pos[:, :3].copy(), pos[:, 3].copy()
    return pos, None


# ---------------------------------------------------------------------------
# Masses
# ---------------------------------------------------------------------------

def validate_masses(
    mass,
    n_particles: int,
    *,
    reject_non_finite: bool = False,
) -> np.ndarray:
    """Validate a mass argument and broadcast scalars.

    Parameters
    ----------
    mass : scalar, array_like, or None
        Particle masses.  A scalar is broadcast to shape ``(n_particles,)``.
        *None* is treated as unit mass for every particle.  Zero and
        negative masses are legal and simply exert no gravity.
    n_particles : int
        Expected number of particles.
    reject_non_finite : bool, optional
        If *True*, raise on any NaN or infinite mass.

    Returns
    -------
    mass : np.ndarray, shape ``(n_particles,)``
    """
    if mass is None:
        return np.ones(n_particles, dtype=float)

    mass = np.asarray(mass, dtype=float)
    if mass.ndim == 0:
        mass = np.full(n_particles, mass, dtype=float)
    elif mass.ndim != 1 or mass.shape[0] != n_particles:
        raise ValueError(
            f"mass length ({mass.shape[0]}) does not match number of "
            f"particles ({n_particles})"
        )

    if reject_non_finite:
        _check_finite(mass, "mass")

    return mass


# ---------------------------------------------------------------------------
# Velocities
# ---------------------------------------------------------------------------

def validate_velocities(vel, n_particles: int, *, reject_non_finite: bool = False) -> np.ndarray:
    """Validate a velocity array.

    *None* returns a zero array of shape ``(n_particles, 3)``. A packed
    ``(N, 4)`` array has its padding column dropped.
    """
    if vel is None:
        return np.zeros((n_particles, 3), dtype=float)

    vel = np.asarray(vel, dtype=float)

    if vel.ndim != 2 or vel.shape[1] not in (3, 4):
        raise ValueError(
            f"vel must have shape (N, 3) or (N, 4), got {vel.shape}"
        )
    if vel.shape[0] != n_particles:
        raise ValueError(
            f"vel length ({vel.shape[0]}) does not match number "
            f"of particles ({n_particles})"
        )

    if reject_non_finite:
        _check_finite(vel[:, :3], "vel")

    return vel[:, :3]


# ---------------------------------------------------------------------------
# Scalar parameters
# ---------------------------------------------------------------------------

def validate_power_of_two(value: int, name: str) -> None:
    """Raise ``ValueError`` if *value* is not a positive power of two."""
    if not isinstance(value, (int, np.integer)) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    if value & (value - 1):
        raise ValueError(f"{name} must be a power of two, got {value}")


def validate_bounds_pair(bounds_min, bounds_max) -> tuple[np.ndarray, np.ndarray]:
    """Validate an axis-aligned box given as two 3-vectors."""
    lo = np.asarray(bounds_min, dtype=float).reshape(-1)
    hi = np.asarray(bounds_max, dtype=float).reshape(-1)
    if lo.shape != (3,) or hi.shape != (3,):
        raise ValueError(
            f"bounds must be two 3-vectors, got shapes {lo.shape} and {hi.shape}"
        )
    if not (np.all(np.isfinite(lo)) and np.all(np.isfinite(hi))):
        raise ValueError("bounds must be finite")
    if np.any(hi <= lo):
        raise ValueError(f"bounds max {hi} must exceed min {lo} on every axis")
    return lo, hi
