"""
nbody_pyramid.state

Ping-pong particle textures and the per-particle force field.
"""
from __future__ import annotations

import numpy as np

from .layout import ParticleTextureLayout


class ParticleState:
    """
    Double-buffered particle textures owned by one simulation.

    ``pos`` holds ``(x, y, z, mass)`` texels and ``vel`` holds
    ``(vx, vy, vz, pad)`` texels, each of shape ``(capacity, 4)``; texels past
    ``num_particles`` stay zero. Passes read the *current* pair and write the
    *target* pair; :meth:`swap` makes the target current. Velocity and
    position buffers can also be swapped on their own, as the split kick and
    drift passes of the kick-drift-kick scheme do.
    """

    def __init__(self, device, positions: np.ndarray, masses: np.ndarray,
                 velocities: np.ndarray):
        n = positions.shape[0]
        self.layout = ParticleTextureLayout.for_count(n)
        self.device = device

        host_pos = np.zeros((self.layout.capacity, 4), dtype=np.float64)
        host_pos[:n, :3] = positions
        host_pos[:n, 3] = masses
        host_vel = np.zeros((self.layout.capacity, 4), dtype=np.float64)
        host_vel[:n, :3] = velocities

        self._pos = [device.upload(host_pos), device.upload(host_pos)]
        self._vel = [device.upload(host_vel), device.upload(host_vel)]
        self.force = device.zeros((self.layout.capacity, 4))
        self._pos_current = 0
        self._vel_current = 0
        # Position-buffer swaps, one per step
        self.swap_count = 0

    @property
    def num_particles(self) -> int:
        return self.layout.num_particles

    @property
    def pos(self):
        return self._pos[self._pos_current]

    @property
    def vel(self):
        return self._vel[self._vel_current]

    @property
    def pos_target(self):
        return self._pos[1 - self._pos_current]

    @property
    def vel_target(self):
        return self._vel[1 - self._vel_current]

    def swap_velocities(self) -> None:
        self._vel_current = 1 - self._vel_current

    def swap_positions(self) -> None:
        self._pos_current = 1 - self._pos_current
        self.swap_count += 1

    def swap(self) -> None:
        """Make both target buffers current."""
        self.swap_velocities()
        self.swap_positions()

    def release(self) -> None:
        self._pos = [None, None]
        self._vel = [None, None]
        self.force = None
