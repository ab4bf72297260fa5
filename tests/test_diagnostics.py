"""Tests for nbody_pyramid.diagnostics and nbody_pyramid.initial_conditions."""

import numpy as np
import pytest

from nbody_pyramid import (
    angular_momentum,
    direct_accelerations,
    kinetic_energy,
    linear_momentum,
    make_circular_binary,
    make_plummer_sphere,
    make_rotating_disk,
    make_uniform_sphere,
    potential_energy,
    total_energy,
)
from nbody_pyramid.diagnostics import center_of_mass, two_body_reference
from nbody_pyramid.initial_conditions import binary_period


# ---------------------------------------------------------------------------
# Conserved quantities
# ---------------------------------------------------------------------------

class TestConservedQuantities:

    def test_pair_potential(self):
        pos = np.array([[0.0, 0.0, 0.0], [3.0, 4.0, 0.0]])
        pe = potential_energy(pos, [2.0, 3.0], softening=0.1, G=0.5)
        assert pe == pytest.approx(-0.5 * 6.0 / np.sqrt(25.01))

    def test_kinetic_skips_invalid(self):
        vel = np.array([[1.0, 0.0, 0.0], [np.nan, 0.0, 0.0], [0.0, 2.0, 0.0]])
        assert kinetic_energy(vel, [2.0, 1.0, 0.0]) == pytest.approx(1.0)

    def test_total_energy_of_bound_binary(self):
        xv, m = make_circular_binary(m=1.0, separation=2.0, G=1.0)
        E = total_energy(xv[:, :3], xv[:, 3:], m, softening=1e-8, G=1.0)
        # Circular orbit: E = PE / 2
        assert E == pytest.approx(-0.25, rel=1e-6)

    def test_momentum_of_binary(self):
        xv, m = make_circular_binary(m=1.0, separation=2.0, G=1.0)
        np.testing.assert_allclose(linear_momentum(xv[:, 3:], m), 0.0, atol=1e-15)
        L = angular_momentum(xv[:, :3], xv[:, 3:], m)
        np.testing.assert_allclose(L, [0.0, 0.0, 2 * 1.0 * 0.5])

    def test_angular_momentum_origin(self):
        pos = np.array([[1.0, 1.0, 0.0]])
        vel = np.array([[0.0, 1.0, 0.0]])
        np.testing.assert_allclose(angular_momentum(pos, vel, [1.0], origin=[1, 0, 0]), 0.0)
        np.testing.assert_allclose(angular_momentum(pos, vel, [1.0]), [0, 0, 1])

    def test_center_of_mass(self):
        pos = np.array([[0.0, 0.0, 0.0], [4.0, 0.0, 0.0], [100.0, 0.0, 0.0]])
        np.testing.assert_allclose(center_of_mass(pos, [1.0, 3.0, 0.0]), [3.0, 0.0, 0.0])
        assert np.all(np.isnan(center_of_mass(pos, np.zeros(3))))


class TestDirectSummation:

    def test_inverse_square(self):
        pos = np.array([[0.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
        acc = direct_accelerations(pos, [1.0, 4.0], softening=1e-8, G=1.0)
        np.testing.assert_allclose(acc, [[1.0, 0, 0], [-0.25, 0, 0]], rtol=1e-9, atol=1e-15)

    def test_softened_peak(self):
        pos = np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 0.0]])
        acc = direct_accelerations(pos, [1.0, 1.0], softening=0.1, G=1.0)
        np.testing.assert_array_equal(acc, 0.0)

    def test_momentum_balance(self):
        xv, m = make_plummer_sphere(300, seed=2)
        acc = direct_accelerations(xv[:, :3], m, softening=0.01, G=1.0)
        np.testing.assert_allclose((m[:, None] * acc).sum(axis=0), 0.0, atol=1e-10)

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            direct_accelerations(np.zeros((3, 3)), np.ones(2), softening=0.1, G=1.0)


def test_two_body_reference_circular_orbit():
    G, sep = 1.0, 2.0
    xv, m = make_circular_binary(m=1.0, separation=sep, G=G)
    T = binary_period(1.0, sep, G)
    t = np.linspace(0, T, 9)[1:]
    r1, r2 = two_body_reference(xv[0, :3], xv[1, :3], xv[0, 3:], xv[1, 3:], 1.0, 1.0, t, G=G)
    np.testing.assert_allclose(np.linalg.norm(r2 - r1, axis=1), sep, rtol=1e-7)
    np.testing.assert_allclose(r2[-1], xv[1, :3], atol=1e-6)


# ---------------------------------------------------------------------------
# Initial conditions
# ---------------------------------------------------------------------------

class TestInitialConditions:

    def test_plummer_shapes_and_centering(self):
        xv, m = make_plummer_sphere(1000, M_total=2.0, a=0.5)
        assert xv.shape == (1000, 6)
        assert m.sum() == pytest.approx(2.0)
        np.testing.assert_allclose(xv[:, :3].mean(axis=0), 0.0, atol=1e-12)
        np.testing.assert_allclose(xv[:, 3:].mean(axis=0), 0.0, atol=1e-12)

    def test_plummer_truncation_and_seed(self):
        xv1, _ = make_plummer_sphere(500, a=1.0, r_max=3.0, seed=5)
        xv2, _ = make_plummer_sphere(500, a=1.0, r_max=3.0, seed=5)
        np.testing.assert_array_equal(xv1, xv2)
        # Recentering shifts radii slightly
        assert np.linalg.norm(xv1[:, :3], axis=1).max() < 3.5

    def test_plummer_roughly_virial(self):
        xv, m = make_plummer_sphere(2000, a=1.0, seed=3)
        ke = kinetic_energy(xv[:, 3:], m)
        pe = potential_energy(xv[:, :3], m, softening=0.01, G=1.0)
        assert 2 * ke / abs(pe) == pytest.approx(1.0, abs=0.15)

    def test_binary_is_circular(self):
        xv, m = make_circular_binary(m=2.0, separation=4.0, G=0.5)
        v = np.linalg.norm(xv[0, 3:])
        # Centripetal = gravitational for each body
        assert v ** 2 / 2.0 == pytest.approx(0.5 * 2.0 / 4.0 ** 2)

    def test_disk_rotates_about_z(self):
        xv, m = make_rotating_disk(200, central_mass=5.0)
        assert xv.shape == (200, 6)
        assert m[0] == 5.0
        np.testing.assert_array_equal(xv[0], 0.0)
        R = np.linalg.norm(xv[1:, :2], axis=1)
        assert R.min() >= 0.2 and R.max() <= 2.0
        radial = np.sum(xv[1:, :2] * xv[1:, 3:5], axis=1)
        np.testing.assert_allclose(radial, 0.0, atol=1e-12)

    def test_uniform_sphere_shell(self):
        xv, m = make_uniform_sphere(300, r_min=1.0, r_max=2.0, v_max=0.2, mass=3.0,
                                    center=(5, 0, 0))
        r = np.linalg.norm(xv[:, :3] - [5, 0, 0], axis=1)
        assert r.min() >= 1.0 - 1e-12 and r.max() <= 2.0 + 1e-12
        assert np.abs(xv[:, 3:]).max() <= 0.2
        np.testing.assert_array_equal(m, 3.0)
