"""
nbody_pyramid.initial_conditions

Initial-condition generators. Every generator returns
``(phase_space, masses)`` with ``phase_space`` of shape ``(N, 6)``
(positions then velocities) and ``masses`` of shape ``(N,)``.
"""
from __future__ import annotations

import numpy as np


def make_plummer_sphere(
    N: int,
    M_total: float = 1.0,
    a: float = 1.0,
    seed: int = 42,
    G: float = 1.0,
    r_max: float | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Generate Plummer sphere in virial equilibrium.

    Parameters
    ----------
    N : int
        Number of particles.
    M_total : float
        Total mass.
    a : float
        Plummer scale radius.
    seed : int
        Random seed.
    G : float
        Gravitational constant used for the velocity scale.
    r_max : float, optional
        Truncation radius; radii beyond it are redrawn. Default ``10 a``.

    Returns
    -------
    phase_space : np.ndarray, shape (N, 6)
        Positions and velocities, centred on zero mean position and velocity.
    masses : np.ndarray, shape (N,)
        Particle masses (equal mass).
    """
    rng = np.random.default_rng(seed)
    r_max = 10.0 * a if r_max is None else r_max

    # Sample radii from the Plummer profile, redrawing the far tail
    r = np.empty(N)
    todo = np.arange(N)
    while todo.size:
        u = rng.uniform(1e-10, 1.0, todo.size)
        r[todo] = a / np.sqrt(u ** (-2 / 3) - 1)
        todo = todo[r[todo] > r_max]

    theta = np.arccos(2 * rng.random(N) - 1)
    phi = 2 * np.pi * rng.random(N)
    pos = np.column_stack([
        r * np.sin(theta) * np.cos(phi),
        r * np.sin(theta) * np.sin(phi),
        r * np.cos(theta),
    ])

    # Speeds by rejection sampling of q^2 (1 - q^2)^3.5
    v_esc = np.sqrt(2 * G * M_total / np.sqrt(r ** 2 + a ** 2))
    q = np.empty(N)
    todo = np.arange(N)
    while todo.size:
        q_try = rng.random(todo.size)
        g = rng.random(todo.size) * 0.1
        accept = g < q_try ** 2 * (1 - q_try ** 2) ** 3.5
        q[todo[accept]] = q_try[accept]
        todo = todo[~accept]
    v_mag = q * v_esc

    theta_v = np.arccos(2 * rng.random(N) - 1)
    phi_v = 2 * np.pi * rng.random(N)
    vel = np.column_stack([
        v_mag * np.sin(theta_v) * np.cos(phi_v),
        v_mag * np.sin(theta_v) * np.sin(phi_v),
        v_mag * np.cos(theta_v),
    ])

    pos -= pos.mean(axis=0)
    vel -= vel.mean(axis=0)
    masses = np.full(N, M_total / N)
    return np.hstack([pos, vel]), masses


def make_circular_binary(
    m: float = 1.0,
    separation: float = 2.0,
    G: float = 1.0,
    center=(0.0, 0.0, 0.0),
) -> tuple[np.ndarray, np.ndarray]:
    """Two equal masses on a circular orbit in the xy-plane.

    Each body moves at ``0.5 sqrt(G 2m / separation)`` about the common
    centre of mass; the orbital period is ``pi separation / v_body``.
    """
    v_body = 0.5 * np.sqrt(G * 2.0 * m / separation)
    c = np.asarray(center, dtype=float)
    half = 0.5 * separation
    xv = np.array([
        [c[0] - half, c[1], c[2], 0.0, -v_body, 0.0],
        [c[0] + half, c[1], c[2], 0.0, v_body, 0.0],
    ])
    return xv, np.array([m, m])


def binary_period(m: float = 1.0, separation: float = 2.0, G: float = 1.0) -> float:
    """Orbital period of :func:`make_circular_binary`."""
    return 2.0 * np.pi * np.sqrt(separation ** 3 / (G * 2.0 * m))


def make_rotating_disk(
    N: int,
    M_total: float = 1.0,
    r_inner: float = 0.2,
    r_outer: float = 2.0,
    thickness: float = 0.05,
    G: float = 1.0,
    central_mass: float = 0.0,
    seed: int = 42,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Thin disk with particles on approximately circular orbits about the z-axis.

    Circular speeds use the mass enclosed in cylindrical radius (disk plus
    *central_mass*, treated as spherical). A nonzero *central_mass* is added
    as particle 0 at the origin.
    """
    rng = np.random.default_rng(seed)
    n_disk = N - 1 if central_mass > 0 else N

    # Uniform surface density between r_inner and r_outer
    u = rng.random(n_disk)
    R = np.sqrt(r_inner ** 2 + u * (r_outer ** 2 - r_inner ** 2))
    phi = 2 * np.pi * rng.random(n_disk)
    z = thickness * rng.standard_normal(n_disk)

    m_disk = np.full(n_disk, M_total / max(n_disk, 1))
    order = np.argsort(R)
    enclosed = np.empty(n_disk)
    enclosed[order] = np.cumsum(m_disk[order])
    v_circ = np.sqrt(G * (enclosed + central_mass) / R)

    pos = np.column_stack([R * np.cos(phi), R * np.sin(phi), z])
    vel = np.column_stack([-v_circ * np.sin(phi), v_circ * np.cos(phi), np.zeros(n_disk)])

    if central_mass > 0:
        pos = np.vstack([np.zeros((1, 3)), pos])
        vel = np.vstack([np.zeros((1, 3)), vel])
        m_disk = np.concatenate([[central_mass], m_disk])
    return np.hstack([pos, vel]), m_disk


def make_uniform_sphere(
    N: int,
    r_min: float = 0.5,
    r_max: float = 2.5,
    v_max: float = 0.1,
    mass: float = 1.0,
    center=(0.0, 0.0, 0.0),
    seed: int = 42,
) -> tuple[np.ndarray, np.ndarray]:
    """Particles uniformly distributed in a spherical shell with small random velocities.

    Velocity components are uniform in ``[-v_max, v_max]``.
    """
    rng = np.random.default_rng(seed)
    r = np.cbrt(rng.uniform(r_min ** 3, r_max ** 3, N))
    theta = np.arccos(2 * rng.random(N) - 1)
    phi = 2 * np.pi * rng.random(N)
    pos = np.column_stack([
        r * np.sin(theta) * np.cos(phi),
        r * np.sin(theta) * np.sin(phi),
        r * np.cos(theta),
    ]) + np.asarray(center, dtype=float)
    vel = rng.uniform(-v_max, v_max, (N, 3))
    return np.hstack([pos, vel]), np.full(N, float(mass))
