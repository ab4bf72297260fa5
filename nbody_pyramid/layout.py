"""
nbody_pyramid.layout

Index arithmetic for the two kinds of 2D texture used by the simulation.

* Particle textures: particle ``i`` occupies texel ``(i % width, i // width)``
  of a near-square texture with ``width = ceil(sqrt(N))``.
* Octree level textures: a cubic voxel grid of side ``g`` is packed by
  Z-slice tiling, ``slices_per_row`` slices side by side per texture row.
  Voxel ``(vx, vy, vz)`` lives at texel
  ``((vz % spr) * g + vx, (vz // spr) * g + vy)``.

All levels of one moment attachment are stored back to back in a single flat
``(total_texels, 4)`` array. The per-level ``(offset, grid, slices_per_row,
width)`` rows returned by :func:`descriptor_table` are what the kernels use
to address a level.
"""
from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

# Columns of the level descriptor table
DESC_OFFSET, DESC_GRID, DESC_SPR, DESC_WIDTH = 0, 1, 2, 3


@dataclass(frozen=True)
class ParticleTextureLayout:
    """Row-major mapping from particle index to particle-texture texel."""

    num_particles: int
    width: int
    height: int

    @classmethod
    def for_count(cls, num_particles: int) -> "ParticleTextureLayout":
        if num_particles <= 0:
            raise ValueError(f"num_particles must be positive, got {num_particles}")
        width = max(1, math.ceil(math.sqrt(num_particles)))
        height = max(1, math.ceil(num_particles / width))
        return cls(int(num_particles), int(width), int(height))

    @property
    def capacity(self) -> int:
        return self.width * self.height

    def texel_of(self, index):
        index = np.asarray(index)
        if np.any((index < 0) | (index >= self.num_particles)):
            raise IndexError(f"particle index out of range [0, {self.num_particles})")
        return index % self.width, index // self.width

    def index_of(self, tx, ty):
        return np.asarray(ty) * self.width + np.asarray(tx)


@dataclass(frozen=True)
class LevelLayout:
    """Geometry of one octree level texture."""

    level: int
    grid_size: int
    slices_per_row: int
    width: int
    height: int
    offset: int

    @property
    def num_texels(self) -> int:
        return self.width * self.height

    @property
    def num_voxels(self) -> int:
        return self.grid_size ** 3

    def voxel_to_texel(self, vx, vy, vz):
        g, spr = self.grid_size, self.slices_per_row
        vz = np.asarray(vz)
        tx = (vz % spr) * g + np.asarray(vx)
        ty = (vz // spr) * g + np.asarray(vy)
        return tx, ty

    def texel_to_voxel(self, tx, ty):
        """Inverse tiling. Returns ``None`` for padding texels of a partly filled row."""
        g, spr = self.grid_size, self.slices_per_row
        slice_col, vx = divmod(int(tx), g)
        slice_row, vy = divmod(int(ty), g)
        vz = slice_row * spr + slice_col
        if slice_col >= spr or vz >= g:
            return None
        return vx, vy, vz

    def flat_index(self, vx, vy, vz):
        tx, ty = self.voxel_to_texel(vx, vy, vz)
        return self.offset + ty * self.width + tx


def build_level_layouts(
    grid_size: int,
    num_levels: int,
    slices_per_row: int,
) -> tuple[LevelLayout, ...]:
    """Lay out ``num_levels`` levels starting at a ``grid_size``^3 finest grid.

    Each level halves the grid and the slices per row (floor, min 1).
    """
    layouts = []
    g, spr, offset = int(grid_size), int(slices_per_row), 0
    for level in range(num_levels):
        width = g * spr
        height = g * math.ceil(g / spr)
        layouts.append(LevelLayout(level, g, spr, width, height, offset))
        offset += width * height
        g = max(1, g // 2)
        spr = max(1, spr // 2)
    if layouts[-1].grid_size != 1:
        raise ValueError(
            f"{num_levels} levels do not reach a 1x1x1 root from grid_size={grid_size}"
        )
    return tuple(layouts)


def descriptor_table(layouts) -> np.ndarray:
    """Per-level ``(offset, grid, slices_per_row, width)`` rows as int64."""
    table = np.zeros((len(layouts), 4), dtype=np.int64)
    for i, lay in enumerate(layouts):
        table[i, DESC_OFFSET] = lay.offset
        table[i, DESC_GRID] = lay.grid_size
        table[i, DESC_SPR] = lay.slices_per_row
        table[i, DESC_WIDTH] = lay.width
    return table


def total_texels(layouts) -> int:
    return sum(lay.num_texels for lay in layouts)
