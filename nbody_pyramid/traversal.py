"""
nbody_pyramid.traversal

Force pass: per-particle Barnes-Hut walk of the moment pyramid.

Each particle starts at the root and refines cells that fail the improved
acceptance test ``d > cellSize / theta + delta``, where ``d`` is the distance
to the cell's centre of mass and ``delta`` the offset of that centre of mass
from the cell's geometric centre. Accepted cells contribute a softened
monopole plus quadrupole correction; cells reached at level 0 contribute a
softened monopole. The particle's own deposit is removed from the cells
holding it. The kernels themselves live in :mod:`.cpu_kernels` and
:mod:`.cuda_kernels`.
"""
from __future__ import annotations

import numpy as np

from . import cpu_kernels


def compute_accelerations(device, pyramid, state, bounds, *, theta: float,
                          softening: float, G: float, enable_quadrupole: bool = True):
    """Fill ``state.force`` with accelerations for the current positions.

    The pyramid must already be built from ``state.pos`` with the same
    *bounds*. Returns the force array (device storage).
    """
    device.traverse(state.pos, state.num_particles, pyramid.a0, pyramid.a1, pyramid.a2,
                    pyramid.desc, bounds, theta=theta, softening=softening, G=G,
                    enable_quadrupole=enable_quadrupole, out=state.force)
    return state.force


def accepts(distance: float, cell_size: float, theta: float, delta: float) -> bool:
    """Improved acceptance test for a single cell."""
    return distance > cell_size / theta + delta


def cell_acceleration(point, a0, a1, a2, *, softening: float, G: float = 1.0,
                      enable_quadrupole: bool = True) -> np.ndarray:
    """Acceleration at *point* from one cell's raw moments.

    Host-side evaluation of the same expansion the kernels use:
    ``a = G [M r / R^3 - Q r / R^5 + 2.5 (r.Q.r) r / R^7]`` with
    ``r = com - point`` and ``R^2 = |r|^2 + softening^2``.
    """
    a0 = np.asarray(a0, dtype=np.float64)
    a1 = np.asarray(a1, dtype=np.float64)
    a2 = np.asarray(a2, dtype=np.float64)
    if not a0[3] > 0:
        return np.zeros(3)
    px, py, pz = (float(c) for c in point)
    ax, ay, az = cpu_kernels._cell_acceleration(
        px, py, pz, a0[3], a0[0], a0[1], a0[2],
        a1[0], a1[1], a1[2], a1[3], a2[0], a2[1],
        float(softening) ** 2, bool(enable_quadrupole),
    )
    return G * np.array([ax, ay, az])
