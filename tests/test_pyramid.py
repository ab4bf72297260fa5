"""
Tests for the moment pyramid: level-0 deposit and 8-child reduction.

Covers:
  1. Raw moments written by the deposit for a single particle
  2. Skipping of zero-mass, negative-mass and non-finite particles
  3. Clamping of particles outside the world box into edge voxels
  4. Exactness of every reduced level against a NumPy block sum
  5. Mass conservation from level 0 to the root
"""

import numpy as np
import pytest

from nbody_pyramid.bounds import WorldBounds
from nbody_pyramid.device import CpuDevice
from nbody_pyramid.pyramid import OctreePyramid


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

BOX = WorldBounds((0.0, 0.0, 0.0), (4.0, 4.0, 4.0))


def _pos_texture(points, masses):
    points = np.asarray(points, dtype=np.float64)
    tex = np.zeros((len(points), 4))
    tex[:, :3] = points
    tex[:, 3] = masses
    return tex


def _built_pyramid(points, masses, bounds=BOX, grid=4, spr=2):
    device = CpuDevice('float64')
    levels = int(np.log2(grid)) + 1
    pyr = OctreePyramid(device, grid, levels, spr)
    tex = _pos_texture(points, masses)
    pyr.build(tex, len(tex), bounds)
    return pyr


def _block_sum(child):
    """Sum 2x2x2 blocks of a (g, g, g, 4) grid."""
    g = child.shape[0] // 2
    return child.reshape(g, 2, g, 2, g, 2, 4).sum(axis=(1, 3, 5))


# =====================================================================
# Level-0 deposit
# =====================================================================
class TestAggregation:

    def test_single_particle_moments(self):
        pyr = _built_pyramid([[0.5, 0.5, 0.5]], [2.0])
        a0, a1, a2 = pyr.voxel_moments(0, 0, 0, 0)
        np.testing.assert_allclose(a0, [1.0, 1.0, 1.0, 2.0])
        np.testing.assert_allclose(a1, [0.5, 0.5, 0.5, 0.5])
        np.testing.assert_allclose(a2, [0.5, 0.5, 0.0, 0.0])

    def test_shared_voxel_accumulates(self):
        pyr = _built_pyramid([[1.2, 2.5, 3.1], [1.7, 2.2, 3.9]], [1.0, 3.0])
        a0, a1, _ = pyr.voxel_moments(0, 1, 2, 3)
        np.testing.assert_allclose(a0, [1.2 + 3 * 1.7, 2.5 + 3 * 2.2, 3.1 + 3 * 3.9, 4.0])
        np.testing.assert_allclose(a1[3], 1.2 * 2.5 + 3 * 1.7 * 2.2)
        assert pyr.occupancy()[0]['occupied'] == 1

    def test_invalid_particles_skipped(self):
        points = [[1.0, 1.0, 1.0], [2.0, 2.0, 2.0], [3.0, 3.0, 3.0],
                  [np.nan, 1.0, 1.0], [1.0, np.inf, 1.0]]
        masses = [1.0, 0.0, -5.0, 1.0, 1.0]
        pyr = _built_pyramid(points, masses)
        level0 = pyr.level_grid(0)
        assert np.count_nonzero(level0[..., 3]) == 1
        assert np.all(np.isfinite(level0))
        np.testing.assert_allclose(pyr.voxel_moments(pyr.root_level, 0, 0, 0)[0], [1, 1, 1, 1])

    def test_nan_mass_skipped(self):
        pyr = _built_pyramid([[1.0, 1.0, 1.0], [2.0, 2.0, 2.0]], [np.nan, 2.0])
        assert pyr.occupancy()[-1]['mass'] == pytest.approx(2.0)

    def test_out_of_box_particles_clamp_to_edge_voxels(self):
        pyr = _built_pyramid([[10.0, -3.0, 2.0], [4.0, 4.0, 4.0]], [1.0, 1.0])
        a0, _, _ = pyr.voxel_moments(0, 3, 0, 2)
        # Raw moments keep the true position
        np.testing.assert_allclose(a0, [10.0, -3.0, 2.0, 1.0])
        a0, _, _ = pyr.voxel_moments(0, 3, 3, 3)
        np.testing.assert_allclose(a0, [4.0, 4.0, 4.0, 1.0])

    def test_padding_texels_stay_zero(self):
        # g=4 with 8 slices per row leaves half of the level-0 row unused
        pyr = _built_pyramid(np.random.default_rng(0).uniform(0, 4, (50, 3)),
                             np.ones(50), grid=4, spr=8)
        tex = pyr.level_texture(0)
        assert tex.shape == (4, 32, 4)
        np.testing.assert_array_equal(tex[:, 16:], 0.0)

    def test_rebuild_clears_previous_deposit(self):
        device = CpuDevice('float64')
        pyr = OctreePyramid(device, 4, 3, 2)
        first = _pos_texture([[0.5, 0.5, 0.5]], [1.0])
        second = _pos_texture([[3.5, 3.5, 3.5]], [1.0])
        pyr.build(first, 1, BOX)
        pyr.build(second, 1, BOX)
        assert pyr.voxel_moments(0, 0, 0, 0)[0][3] == 0.0
        assert pyr.voxel_moments(0, 3, 3, 3)[0][3] == 1.0


# =====================================================================
# Reduction
# =====================================================================
class TestReduction:

    def test_eight_children_sum_to_root(self):
        device = CpuDevice('float64')
        pyr = OctreePyramid(device, 2, 2, 1)
        lay = pyr.layouts[0]
        for k in range(8):
            vz, vy, vx = k // 4, (k // 2) % 2, k % 2
            t = lay.flat_index(vx, vy, vz)
            pyr.a0[t] = k
            pyr.a1[t] = k
            pyr.a2[t, :2] = k
        pyr.reduce()
        a0, a1, a2 = pyr.voxel_moments(1, 0, 0, 0)
        np.testing.assert_array_equal(a0, [28, 28, 28, 28])
        np.testing.assert_array_equal(a1, [28, 28, 28, 28])
        np.testing.assert_array_equal(a2, [28, 28, 0, 0])

    @pytest.mark.parametrize("attachment", ["a0", "a1", "a2"])
    def test_every_level_is_block_sum_of_children(self, attachment):
        rng = np.random.default_rng(7)
        pyr = _built_pyramid(rng.uniform(-1, 9, (2000, 3)), rng.uniform(0.1, 2.0, 2000),
                             bounds=WorldBounds((0, 0, 0), (8, 8, 8)), grid=16, spr=4)
        for level in range(1, pyr.num_levels):
            child = pyr.level_grid(level - 1, attachment)
            parent = pyr.level_grid(level, attachment)
            np.testing.assert_allclose(parent, _block_sum(child), rtol=1e-12, atol=1e-9)

    def test_mass_conserved_on_every_level(self):
        rng = np.random.default_rng(3)
        masses = rng.uniform(0.5, 1.5, 500)
        pyr = _built_pyramid(rng.uniform(0, 4, (500, 3)), masses, grid=8, spr=4)
        stats = pyr.occupancy()
        assert [s['grid_size'] for s in stats] == [8, 4, 2, 1]
        for s in stats:
            assert s['mass'] == pytest.approx(masses.sum(), rel=1e-12)
        assert stats[-1]['occupied'] == 1

    def test_single_particle_reaches_root(self):
        pyr = _built_pyramid([[3.9, 0.1, 2.1]], [5.0], grid=8, spr=2)
        for s in pyr.occupancy():
            assert s['occupied'] == 1
            assert s['mass'] == pytest.approx(5.0)

    def test_cell_geometry(self):
        pyr = _built_pyramid([[1.0, 1.0, 1.0]], [1.0])
        assert pyr.cell_size(0, BOX) == pytest.approx(1.0)
        assert pyr.cell_size(pyr.root_level, BOX) == pytest.approx(4.0)
        np.testing.assert_allclose(pyr.cell_center(1, (1, 0, 1), BOX), [3.0, 1.0, 3.0])
