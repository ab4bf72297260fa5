"""
nbody_pyramid.pyramid
=====================

The moment pyramid: an implicit octree stored as one Z-slice tiled texture
per level and per moment attachment.

Attachments (raw world-coordinate sums over the particles in a voxel):

* ``a0`` = (Σm x, Σm y, Σm z, Σm)
* ``a1`` = (Σm x², Σm y², Σm z², Σm x y)
* ``a2`` = (Σm x z, Σm y z, 0, 0)

Every step the pyramid is cleared, level 0 is filled by scatter-add, and each
coarser level is the exact sum of the 8 children below it, up to the 1x1x1
root.
"""
from __future__ import annotations

import logging

import numpy as np

from .layout import build_level_layouts, descriptor_table, total_texels
from .profiler import profiled

logger = logging.getLogger(__name__)

ATTACHMENTS = ('a0', 'a1', 'a2')


class OctreePyramid:
    """
    Moment pyramid owned by one simulation.

    Parameters
    ----------
    device : CpuDevice or CudaDevice
        Storage and kernel provider.
    grid_size : int
        Voxels per axis at level 0 (power of two).
    num_levels : int
        Level count, ``log2(grid_size) + 1``.
    slices_per_row : int
        Z-slices per texture row at level 0.
    """

    def __init__(self, device, grid_size: int, num_levels: int, slices_per_row: int):
        self.device = device
        self.layouts = build_level_layouts(grid_size, num_levels, slices_per_row)
        self.desc_host = descriptor_table(self.layouts)
        self.desc = device.upload(self.desc_host, dtype=np.int64)

        texels = total_texels(self.layouts)
        self.a0 = device.zeros((texels, 4))
        self.a1 = device.zeros((texels, 4))
        self.a2 = device.zeros((texels, 4))
        logger.debug("Allocated %d-level pyramid (%d texels per attachment)",
                     len(self.layouts), texels)

    @property
    def num_levels(self) -> int:
        return len(self.layouts)

    @property
    def root_level(self) -> int:
        return len(self.layouts) - 1

    @property
    def grid_size(self) -> int:
        return self.layouts[0].grid_size

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def clear(self) -> None:
        self.a0.fill(0)
        self.a1.fill(0)
        self.a2.fill(0)

    def aggregate(self, pos, n: int, bounds) -> None:
        """Deposit particle moments into level 0 (expects a cleared pyramid)."""
        self.device.aggregate(pos, n, self.a0, self.a1, self.a2, self.desc, bounds)

    def reduce(self) -> None:
        """Fill levels 1..root from level 0, in strictly increasing level order."""
        for child_level in range(self.num_levels - 1):
            self.device.reduce_level(self.a0, self.a1, self.a2, self.desc, child_level,
                                     self.layouts[child_level + 1].grid_size)

    def build(self, pos, n: int, bounds, profiler=None) -> None:
        with profiled(profiler, 'octree_clear'):
            self.clear()
        with profiled(profiler, 'aggregation'):
            self.aggregate(pos, n, bounds)
        with profiled(profiler, 'pyramid_reduction'):
            self.reduce()

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    def cell_size(self, level: int, bounds) -> float:
        """Acceptance-test cell size: largest world extent over the level grid."""
        return bounds.max_extent / self.layouts[level].grid_size

    def cell_center(self, level: int, voxel, bounds) -> np.ndarray:
        g = self.layouts[level].grid_size
        return bounds.min + (np.asarray(voxel, dtype=np.float64) + 0.5) * bounds.extent / g

    # ------------------------------------------------------------------
    # Inspection (host copies)
    # ------------------------------------------------------------------

    def level_texture(self, level: int, attachment: str = 'a0') -> np.ndarray:
        """Host copy of one level texture as ``(height, width, 4)``."""
        if attachment not in ATTACHMENTS:
            raise ValueError(f"attachment must be one of {ATTACHMENTS}, got {attachment!r}")
        lay = self.layouts[level]
        flat = getattr(self, attachment)[lay.offset:lay.offset + lay.num_texels]
        return self.device.to_host(flat).reshape(lay.height, lay.width, 4)

    def voxel_moments(self, level: int, vx: int, vy: int, vz: int) -> tuple[np.ndarray, ...]:
        """Host copies of ``(a0, a1, a2)`` at one voxel."""
        lay = self.layouts[level]
        if not all(0 <= v < lay.grid_size for v in (vx, vy, vz)):
            raise IndexError(f"voxel ({vx}, {vy}, {vz}) outside level {level} grid {lay.grid_size}")
        t = int(lay.flat_index(vx, vy, vz))
        return tuple(self.device.to_host(getattr(self, name)[t]) for name in ATTACHMENTS)

    def level_grid(self, level: int, attachment: str = 'a0') -> np.ndarray:
        """Host copy of one level as a ``(g, g, g, 4)`` array indexed ``[vz, vy, vx]``."""
        lay = self.layouts[level]
        tex = self.level_texture(level, attachment)
        g, spr = lay.grid_size, lay.slices_per_row
        out = np.empty((g, g, g, 4), dtype=tex.dtype)
        for vz in range(g):
            row, col = divmod(vz, spr)
            out[vz] = tex[row * g:(row + 1) * g, col * g:(col + 1) * g]
        return out

    def occupancy(self) -> list[dict]:
        """Per-level count of non-empty voxels and total mass."""
        stats = []
        for lay in self.layouts:
            mass = self.level_texture(lay.level, 'a0')[..., 3]
            stats.append({
                'level': lay.level,
                'grid_size': lay.grid_size,
                'occupied': int(np.count_nonzero(mass > 0)),
                'mass': float(mass.sum(dtype=np.float64)),
            })
        return stats

    def release(self) -> None:
        self.a0 = self.a1 = self.a2 = None
        self.desc = None
