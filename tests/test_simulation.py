"""
End-to-end tests for PyramidGravity on the CPU device.

Covers:
  1. Circular binary keeps its separation over two periods
  2. A body above escape speed leaves a heavy mass
  3. Softening bounds the speeds of a close pair
  4. Momentum, energy and angular momentum stay near their initial values
  5. Snapshot, dispose and input validation behaviour
"""

import numpy as np
import pytest

from nbody_pyramid import (
    CapabilityError,
    GravityConfig,
    PyramidGravity,
    SimulationDisposedError,
    WorldBounds,
    angular_momentum,
    direct_accelerations,
    get_gpu_info,
    kinetic_energy,
    linear_momentum,
    make_circular_binary,
    make_rotating_disk,
    make_uniform_sphere,
    potential_energy,
    total_energy,
)
from nbody_pyramid.initial_conditions import binary_period

INF = float("inf")

# Double precision, no clamps, fixed box unless a test says otherwise
EXACT = dict(device='cpu', precision='float64', max_speed=INF, max_accel=INF,
             bounds_interval=INF)


def _sim(xv, masses, **overrides):
    options = dict(EXACT)
    options.update(overrides)
    return PyramidGravity(xv[:, :3], xv[:, 3:], masses, **options)


# =====================================================================
# Orbital scenarios
# =====================================================================

def test_circular_binary_keeps_separation():
    G, sep = 0.001, 2.0
    xv, m = make_circular_binary(m=1.0, separation=sep, G=G)
    n_steps = int(round(2 * binary_period(1.0, sep, G) / 1.0))

    separations = []
    with _sim(xv, m, G=G, dt=1.0, softening=0.01, grid_size=16,
              bounds=((-4, -4, -4), (4, 4, 4))) as sim:
        for _ in range(n_steps):
            sim.step()
            p = sim.positions
            separations.append(np.linalg.norm(p[1] - p[0]))

    deviation = np.abs(np.array(separations) - sep) / sep
    assert deviation.max() < 0.2


def test_escape_trajectory():
    G, M, m, r0 = 0.001, 100.0, 0.1, 1.0
    v = 1.3 * np.sqrt(2 * G * (M + m) / r0)
    xv = np.array([[0.0, 0.0, 0.0, 0.0, -m / M * v, 0.0],
                   [r0, 0.0, 0.0, 0.0, v, 0.0]])

    with _sim(xv, np.array([M, m]), G=G, dt=0.1, softening=0.01, grid_size=16,
              bounds_interval=0.0) as sim:
        sim.run(100)
        pos = sim.get_positions()
        vel = sim.get_velocities()
        refreshes = sim.bounds_tracker.refresh_count

    assert np.linalg.norm(pos[1] - pos[0]) > 1.5
    v_inf = np.sqrt(v ** 2 - 2 * G * (M + m) / r0)
    assert np.linalg.norm(vel[1]) > 0.8 * v_inf
    assert refreshes == 100


@pytest.mark.parametrize("eps", [0.01, 0.1, 0.5])
def test_softening_bounds_close_pair(eps):
    G = 0.001
    xv = np.array([[0.0, 0.0, 0.0, 0, 0, 0], [1e-3, 0.0, 0.0, 0, 0, 0]])
    speeds = []
    with _sim(xv, np.ones(2), G=G, dt=0.01, softening=eps, grid_size=8,
              bounds=((-1, -1, -1), (1, 1, 1))) as sim:
        for _ in range(200):
            sim.step()
            speeds.append(np.linalg.norm(sim.velocities, axis=1).max())
        assert np.all(np.isfinite(sim.get_phase_space()))
    assert max(speeds) <= 2 * np.sqrt(G / eps)


def test_smaller_softening_gives_faster_pair():
    G = 0.001
    xv = np.array([[0.0, 0.0, 0.0, 0, 0, 0], [0.05, 0.0, 0.0, 0, 0, 0]])
    peak = {}
    for eps in (0.02, 0.5):
        with _sim(xv, np.ones(2), G=G, dt=0.01, softening=eps, grid_size=8,
                  bounds=((-1, -1, -1), (1, 1, 1))) as sim:
            speeds = []
            for _ in range(100):
                sim.step()
                speeds.append(np.abs(sim.velocities[:, 0]).max())
            peak[eps] = max(speeds)
    assert peak[0.02] > peak[0.5]


# =====================================================================
# Conservation
# =====================================================================

@pytest.fixture(scope="module")
def shell():
    return make_uniform_sphere(50, r_min=0.5, r_max=2.5, v_max=0.1, mass=1.0, seed=1)


def test_momentum_conserved(shell):
    xv, m = shell
    p0 = linear_momentum(xv[:, 3:], m)
    with _sim(xv, m, G=0.0003, softening=0.15, dt=0.01, grid_size=16,
              bounds=((-5, -5, -5), (5, 5, 5))) as sim:
        sim.run(300)
        p1 = linear_momentum(sim.get_velocities(), m)
    scale = np.sum(m * np.linalg.norm(xv[:, 3:], axis=1))
    assert np.linalg.norm(p1 - p0) < max(1e-3, 0.01 * scale)


def test_energy_conserved(shell):
    xv, m = shell
    kw = dict(softening=0.15, G=0.0003)
    ke0 = kinetic_energy(xv[:, 3:], m)
    pe0 = potential_energy(xv[:, :3], m, **kw)
    with _sim(xv, m, dt=0.01, grid_size=16, bounds=((-5, -5, -5), (5, 5, 5)), **kw) as sim:
        sim.run(200)
        ke1 = kinetic_energy(sim.get_velocities(), m)
        pe1 = potential_energy(sim.get_positions(), m, **kw)
    drift = abs((ke1 + pe1) - (ke0 + pe0))
    assert drift < 0.1 * (abs(ke0) + abs(pe0))


def test_angular_momentum_conserved():
    xv, m = make_rotating_disk(100, M_total=1.0, r_inner=0.5, r_outer=2.0, G=1.0, seed=5)
    L0 = angular_momentum(xv[:, :3], xv[:, 3:], m)
    with _sim(xv, m, G=1.0, softening=0.1, dt=0.005, grid_size=16,
              bounds_interval=0.0) as sim:
        sim.run(100)
        L1 = angular_momentum(sim.get_positions(), sim.get_velocities(), m)
    assert L0[2] > 0
    assert np.linalg.norm(L1 - L0) < 0.1 * np.linalg.norm(L0)


# =====================================================================
# Accessors, snapshot and lifecycle
# =====================================================================

@pytest.fixture
def small_sim():
    xv, m = make_uniform_sphere(20, seed=4)
    sim = _sim(xv, m, G=0.01, dt=0.01, grid_size=8, bounds_interval=0.0)
    yield sim
    sim.dispose()


def test_snapshot_is_idempotent(small_sim):
    small_sim.run(5)
    before = small_sim.get_phase_space()
    s1 = small_sim.snapshot()
    s2 = small_sim.snapshot()
    assert s1 == s2
    np.testing.assert_array_equal(small_sim.get_phase_space(), before)
    assert s1.step == 5
    assert s1.time == pytest.approx(0.05)
    assert s1.num_particles == 20
    assert s1.total_mass == pytest.approx(20.0)
    assert s1.non_finite == 0
    # Root level holds all the mass
    assert s1.level_occupancy[-1][3] == pytest.approx(20.0)


def test_snapshot_bounds_are_step_bounds(small_sim):
    small_sim.step()
    snap = small_sim.snapshot()
    assert snap.bounds_min == tuple(small_sim.bounds.min)
    assert small_sim.bounds.contains(small_sim.get_positions()).all()


def test_views_are_read_only(small_sim):
    small_sim.step()
    with pytest.raises(ValueError):
        small_sim.positions[0, 0] = 1.0
    assert small_sim.positions.shape == (20, 3)
    assert small_sim.forces.shape == (20, 3)
    assert small_sim.masses.shape == (20,)
    assert small_sim.position_texture.shape == (small_sim.state.layout.capacity, 4)


def test_step_advances_time_and_swaps(small_sim):
    tex = small_sim.position_texture
    small_sim.run(3, callback=lambda s: None)
    assert small_sim.step_count == 3
    assert small_sim.time == pytest.approx(0.03)
    assert small_sim.position_texture is not tex
    assert small_sim.state.swap_count == 3


def test_callback_sees_every_step(small_sim):
    seen = []
    small_sim.run(4, callback=lambda s: seen.append(s.step_count))
    assert seen == [1, 2, 3, 4]


def test_compute_accelerations_does_not_advance(small_sim):
    before = small_sim.get_positions()
    acc = small_sim.compute_accelerations()
    assert acc.shape == (20, 3)
    assert small_sim.step_count == 0
    np.testing.assert_array_equal(small_sim.get_positions(), before)
    np.testing.assert_array_equal(acc, small_sim.forces)


def test_dispose_is_idempotent():
    xv, m = make_uniform_sphere(10, seed=2)
    sim = _sim(xv, m)
    sim.step()
    sim.dispose()
    sim.dispose()
    assert sim.disposed
    with pytest.raises(SimulationDisposedError):
        sim.step()
    with pytest.raises(SimulationDisposedError):
        _ = sim.positions
    with pytest.raises(SimulationDisposedError):
        sim.snapshot()


def test_context_manager_disposes():
    xv, m = make_uniform_sphere(10, seed=2)
    with _sim(xv, m) as sim:
        sim.step()
    assert sim.disposed


def test_default_bounds_refreshed_on_first_step():
    xv, m = make_uniform_sphere(30, r_min=5.0, r_max=8.0, seed=3)
    with _sim(xv, m, G=0.0) as sim:
        assert sim.bounds == WorldBounds.default()
        sim.step()
        assert sim.bounds != WorldBounds.default()
        assert sim.bounds.contains(xv[:, :3]).all()
        assert sim.bounds_tracker.refresh_count == 1


def test_zero_mass_particle_is_a_tracer():
    xv, m = make_uniform_sphere(12, seed=6)
    m = m.copy()
    m[3] = 0.0
    with _sim(xv, m, G=0.01, dt=0.01, grid_size=8, bounds=((-3, -3, -3), (3, 3, 3))) as sim:
        sim.run(10)
        final = sim.get_phase_space()
    assert not np.array_equal(final[3], xv[3])

    # No contribution to anyone else's motion
    with _sim(np.delete(xv, 3, axis=0), np.delete(m, 3), G=0.01, dt=0.01, grid_size=8,
              bounds=((-3, -3, -3), (3, 3, 3))) as sim:
        sim.run(10)
        reduced = sim.get_phase_space()
    np.testing.assert_allclose(np.delete(final, 3, axis=0), reduced, rtol=1e-12, atol=1e-15)


def test_tracer_falls_towards_mass():
    xv = np.array([[0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
                   [1.0, 0.0, 0.0, 0.0, 0.5, 0.0]])
    with _sim(xv, np.array([1.0, 0.0]), G=1.0, dt=0.01, softening=0.05, grid_size=16,
              bounds=((-2, -2, -2), (2, 2, 2))) as sim:
        sim.step()
        pos = sim.get_positions()
        vel = sim.get_velocities()
        force = sim.forces[1, :3].copy()

    assert force[0] == pytest.approx(-1.0 / 1.0025 ** 1.5, rel=1e-9)
    np.testing.assert_allclose(vel[1], [force[0] * 0.01, 0.5, 0.0], rtol=1e-12)
    np.testing.assert_allclose(pos[1], [1.0 + vel[1, 0] * 0.01, 0.005, 0.0], rtol=1e-12)
    # The heavy body feels nothing
    np.testing.assert_array_equal(pos[0], 0.0)


def test_packed_positions_supply_masses():
    xv, m = make_uniform_sphere(8, seed=9)
    packed = np.column_stack([xv[:, :3], 2.0 * m])
    with PyramidGravity(packed, xv[:, 3:], device='cpu') as sim:
        np.testing.assert_array_equal(sim.get_masses(), 2.0 * m)


def test_default_precision_is_single():
    xv, m = make_uniform_sphere(8, seed=9)
    with PyramidGravity(xv[:, :3], device='cpu') as sim:
        assert sim.position_texture.dtype == np.float32
        np.testing.assert_array_equal(sim.get_velocities(), 0.0)
        np.testing.assert_array_equal(sim.get_masses(), 1.0)
        sim.step()


def test_config_object_and_overrides():
    xv, m = make_uniform_sphere(8, seed=9)
    cfg = GravityConfig(theta=0.3, grid_size=16)
    with PyramidGravity(xv[:, :3], config=cfg, softening=0.05, device='cpu') as sim:
        assert sim.config.theta == 0.3
        assert sim.config.softening == 0.05
        assert sim.pyramid.num_levels == 5


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("kwargs", [
    dict(positions=np.zeros((4, 2))),
    dict(positions=np.zeros((0, 3))),
    dict(positions=np.zeros((4, 3)), velocities=np.zeros((3, 3))),
    dict(positions=np.zeros((4, 3)), masses=np.ones(5)),
    dict(positions=np.zeros((4, 3)), grid_size=12),
    dict(positions=np.zeros((4, 3)), bounds=((0, 0, 0), (1, 1, 0))),
    dict(positions=np.zeros((4, 3)), device='tpu'),
    dict(positions=np.zeros((4, 3)), integrator='rk4'),
    dict(positions=[[0, 0, 0], [np.nan, 0, 0]], reject_non_finite=True),
    dict(positions=np.zeros((2, 3)), masses=[1.0, np.inf], reject_non_finite=True),
    dict(positions=np.zeros((2, 3)), velocities=[[0, 0, 0], [0, np.nan, 0]],
         reject_non_finite=True),
])
def test_invalid_inputs(kwargs):
    kwargs = {"device": "cpu", **kwargs}
    with pytest.raises(ValueError):
        PyramidGravity(**kwargs)


def test_unknown_option():
    with pytest.raises(TypeError):
        PyramidGravity(np.zeros((2, 3)), device='cpu', opening_angle=0.4)


@pytest.mark.skipif(get_gpu_info()["available"], reason="a usable CUDA device is present")
def test_gpu_request_without_cuda():
    with pytest.raises(CapabilityError):
        PyramidGravity(np.zeros((2, 3)), device='gpu')


def test_non_finite_input_accepted_by_default():
    pos = np.array([[0.0, 0.0, 0.0], [np.nan, 0.0, 0.0]])
    with PyramidGravity(pos, masses=[1.0, 1.0], device='cpu') as sim:
        sim.step()
        assert np.isnan(sim.get_positions()[1, 0])


# =====================================================================
# Kick-drift-kick
# =====================================================================

def _binary_energy_error(integrator):
    G, eps = 0.001, 0.01
    xv, m = make_circular_binary(m=1.0, separation=2.0, G=G)
    xv[:, 3:] *= 0.7  # eccentric orbit, e ~ 0.5
    E0 = total_energy(xv[:, :3], xv[:, 3:], m, softening=eps, G=G)
    errors = []
    with _sim(xv, m, G=G, dt=0.25, softening=eps, grid_size=16,
              bounds=((-4, -4, -4), (4, 4, 4)), integrator=integrator) as sim:
        for _ in range(860):  # about one orbit
            sim.step()
            E = total_energy(sim.get_positions(), sim.get_velocities(), m, softening=eps, G=G)
            errors.append(abs(E / E0 - 1.0))
    return max(errors)


def test_kdk_conserves_energy_better():
    kd = _binary_energy_error('kick_drift')
    kdk = _binary_energy_error('kdk')
    assert kdk < 0.005
    assert kdk < 0.25 * kd


def test_kdk_single_step_matches_leapfrog():
    dt, eps = 0.01, 0.05
    m = np.array([1.0, 0.0])
    x0 = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
    v0 = np.array([[0.0, 0.0, 0.0], [0.0, 0.5, 0.0]])

    a0 = direct_accelerations(x0, m, softening=eps, G=1.0)
    v_half = v0 + 0.5 * dt * a0
    x1 = x0 + dt * v_half
    a1 = direct_accelerations(x1, m, softening=eps, G=1.0)
    v1 = v_half + 0.5 * dt * a1

    with _sim(np.hstack([x0, v0]), m, G=1.0, dt=dt, softening=eps, grid_size=16,
              bounds=((-2, -2, -2), (2, 2, 2)), integrator='kdk') as sim:
        sim.step()
        np.testing.assert_allclose(sim.get_positions(), x1, rtol=1e-10, atol=1e-15)
        np.testing.assert_allclose(sim.get_velocities(), v1, rtol=1e-10, atol=1e-15)
        # Forces left behind belong to the new positions
        np.testing.assert_allclose(sim.forces, a1, rtol=1e-10, atol=1e-15)


def test_kdk_damping_applied_once_per_step():
    xv = np.array([[0.0, 0.0, 0.0, 1.0, -2.0, 0.5]])
    with _sim(xv, np.ones(1), G=0.0, dt=0.1, damping=0.1, grid_size=8,
              bounds=((-2, -2, -2), (2, 2, 2)), integrator='kdk') as sim:
        sim.step()
        np.testing.assert_allclose(sim.get_velocities()[0], [0.9, -1.8, 0.45])
        # Drift used the undamped velocity
        np.testing.assert_allclose(sim.get_positions()[0], [0.1, -0.2, 0.05])


# =====================================================================
# Per-pass profiling
# =====================================================================

BUILD_PASSES = {'octree_clear', 'aggregation', 'pyramid_reduction', 'traversal'}


def test_profiling_disabled_by_default(small_sim):
    assert small_sim.profiler is None


def test_profile_kick_drift_passes():
    xv, m = make_uniform_sphere(20, seed=4)
    with _sim(xv, m, G=0.01, dt=0.01, grid_size=8, bounds_interval=0.0,
              enable_profiling=True) as sim:
        sim.run(3)
        sim.profiler.collect(wait=True)
        summary = sim.profiler.summary()
        assert set(summary) == BUILD_PASSES | {'kick', 'drift'}
        assert all(stats['count'] == 3 for stats in summary.values())
        first = sim.profiler.step_timings(0)
        assert [t.name for t in first] == ['octree_clear', 'aggregation', 'pyramid_reduction',
                                           'traversal', 'kick', 'drift']
        assert all(t.seconds >= 0 for t in sim.profiler.records)


def test_profile_kdk_passes():
    xv, m = make_uniform_sphere(20, seed=4)
    with _sim(xv, m, G=0.01, dt=0.01, grid_size=8, bounds_interval=0.0,
              integrator='kdk', enable_profiling=True) as sim:
        sim.run(3)
        sim.profiler.collect(wait=True)
        summary = sim.profiler.summary()
        assert set(summary) == BUILD_PASSES | {'kick_1', 'drift', 'kick_2'}
        assert summary['kick_1']['count'] == 3
        assert summary['kick_2']['count'] == 3
        # Only the first step computes the starting forces
        assert summary['traversal']['count'] == 4
        assert [t.name for t in sim.profiler.step_timings(1)] == [
            'kick_1', 'drift', 'octree_clear', 'aggregation', 'pyramid_reduction',
            'traversal', 'kick_2']


def test_kdk_reuses_forces_from_compute_accelerations():
    xv, m = make_uniform_sphere(20, seed=4)
    with _sim(xv, m, G=0.01, dt=0.01, grid_size=8, integrator='kdk',
              enable_profiling=True) as sim:
        sim.compute_accelerations()
        sim.step()
        sim.profiler.collect(wait=True)
        assert sim.profiler.summary()['traversal']['count'] == 2
