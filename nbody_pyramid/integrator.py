"""
nbody_pyramid.integrator

Kick and drift passes over the particle textures.

Velocity pass (kick)
    ``v' = (v + a dt)(1 - damping)`` with ``|a|`` clamped to ``max_accel``
    before the kick and ``|v'|`` clamped to ``max_speed`` after it.
Position pass (drift)
    ``x' = x + v dt``, mass channel preserved.

Every particle moves, whatever its mass; mass <= 0 only means it exerts no
gravity. Particles with a non-finite position, velocity or mass pass through
unchanged, and a non-finite acceleration leaves the velocity unchanged. Each
pass reads the current buffer and writes the target buffer, which then
becomes current.

Two schemes are built from these passes:

* ``kick_drift``: :func:`integrate`, a full kick followed by a drift with the
  updated velocity.
* ``kdk``: half kick with the forces at the current positions, drift, new
  forces, second half kick. The force rebuild sits between the passes, so
  :class:`~nbody_pyramid.simulation.PyramidGravity` sequences it.
"""
from __future__ import annotations

from .profiler import profiled


def kick(device, state, force=None, *, dt: float, damping: float = 0.0,
         max_speed: float = float('inf'), max_accel: float = float('inf')) -> None:
    """Velocity pass with step *dt*, using *force* (default ``state.force``)."""
    force = state.force if force is None else force
    device.integrate_velocity(state.pos, state.vel, force, state.num_particles,
                              dt=dt, damping=damping, max_speed=max_speed,
                              max_accel=max_accel, out=state.vel_target)
    state.swap_velocities()


def drift(device, state, *, dt: float) -> None:
    """Position pass with the current velocities."""
    device.integrate_position(state.pos, state.vel, state.num_particles, dt=dt,
                              out=state.pos_target)
    state.swap_positions()


def integrate(device, state, *, dt: float, damping: float = 0.0,
              max_speed: float = float('inf'), max_accel: float = float('inf'),
              profiler=None) -> None:
    with profiled(profiler, 'kick'):
        kick(device, state, dt=dt, damping=damping, max_speed=max_speed, max_accel=max_accel)
    with profiled(profiler, 'drift'):
        drift(device, state, dt=dt)
