#!/usr/bin/env python3
"""
nbody_pyramid.run

Batch driver: integrate a particle set with :class:`PyramidGravity`, write
evenly spaced HDF5 snapshots and periodic restart files, and report
progress.

Requirements
------------
- NumPy, Numba (CPU device)
- CuPy (optional, for the CUDA device)
- h5py (snapshot output)
"""

from __future__ import annotations

import logging
import time as pytime
from pathlib import Path

import numpy as np

from .config import GravityConfig
from .nbody_io import save_snapshot, save_restart, load_restart
from .simulation import PyramidGravity

logger = logging.getLogger(__name__)


def _snapshot_steps(total_steps: int, snapshots: int) -> np.ndarray:
    if snapshots <= 0:
        return np.empty(0, dtype=int)
    if snapshots == 1:
        return np.array([total_steps])
    return np.unique(np.linspace(0, total_steps, snapshots).round().astype(int))


def run_simulation(
    phase_space: np.ndarray,
    masses: np.ndarray,
    n_steps: int,
    *,
    config: GravityConfig | None = None,
    bounds=None,
    device: str = 'auto',
    output_dir: str | Path | None = './output',
    snapshots: int = 10,
    restart_interval: int = 1000,
    continue_run: bool = False,
    verbose: bool = True,
    **overrides,
) -> np.ndarray:
    """
    Run a pyramid Barnes-Hut simulation for a fixed number of steps.

    Parameters
    ----------
    phase_space : np.ndarray, shape (N, 6)
        Initial conditions [x, y, z, vx, vy, vz].
    masses : np.ndarray, shape (N,)
        Particle masses.
    n_steps : int
        Number of steps of size ``config.dt``.
    config : GravityConfig, optional
        Simulation parameters; keyword *overrides* are applied on top.
    bounds : WorldBounds or (min, max), optional
        Initial world box (refreshed from the particles when omitted).
    device : {'auto', 'cpu', 'gpu'}, optional
        Compute substrate. Default: 'auto'.
    output_dir : str | Path | None, optional
        Directory for ``snapshot.h5`` and ``restart.npz``. *None* disables
        all file output. Default: './output'.
    snapshots : int, optional
        Number of evenly spaced snapshots including first and last. Default: 10.
    restart_interval : int, optional
        Save restart file every N steps. Default: 1000.
    continue_run : bool, optional
        Resume from ``restart.npz`` in *output_dir* if present. Default: False.
    verbose : bool, optional
        Print progress information. Default: True.

    Returns
    -------
    np.ndarray, shape (N, 6)
        Final phase space coordinates.
    """
    phase_space = np.asarray(phase_space, dtype=np.float64)
    if phase_space.ndim != 2 or phase_space.shape[1] != 6:
        raise ValueError(f"phase_space must be (N, 6), got {phase_space.shape}")
    masses = np.asarray(masses, dtype=np.float64)
    N = phase_space.shape[0]
    if masses.shape != (N,):
        raise ValueError(f"masses must have length N={N}, got {masses.shape}")

    cfg = GravityConfig.from_kwargs(config, **overrides)
    output_path = Path(output_dir) if output_dir is not None else None

    start_step = 0
    time = 0.0
    snapshot_counter = 0
    if continue_run and output_path is not None:
        restart = load_restart(output_path)
        if restart is not None:
            phase_space, masses, time, start_step, snapshot_counter = restart
            if verbose:
                print(f"✓ Resuming from step {start_step}, time {time:.6e}")

    snapshot_steps = _snapshot_steps(n_steps, snapshots) if output_path is not None else np.empty(0, int)
    remaining_steps = max(0, n_steps - start_step)

    # ============================================================================
    # Setup
    # ============================================================================
    sim = PyramidGravity(phase_space[:, :3], phase_space[:, 3:], masses,
                         bounds=bounds, config=cfg, device=device)
    sim.time = time
    sim.step_count = start_step

    if verbose:
        print("=" * 80)
        print("Pyramid Barnes-Hut N-body Integration")
        print("=" * 80)
        print(f"Particles: {N:,}")
        print(f"Device: {sim.device.name} ({cfg.precision})")
        print(f"Steps: {n_steps:,} ({remaining_steps:,} remaining), dt={cfg.dt:.3e}, "
              f"integrator={cfg.integrator}")
        print(f"Grid: {cfg.grid_size}^3, {cfg.num_levels} levels, theta={cfg.theta}, "
              f"softening={cfg.softening}, quadrupole={'on' if cfg.enable_quadrupole else 'off'}")
        print(f"Snapshots: {len(snapshot_steps)}"
              + (f" -> {output_path}" if output_path is not None else " (output disabled)"))
        print("=" * 80)

    def _write_snapshot(step: int) -> None:
        nonlocal snapshot_counter
        save_snapshot(sim.get_phase_space(), snapshot_counter, sim.time, output_path,
                      masses=masses, softening=cfg.softening, time_step=cfg.dt, G=cfg.G)
        if verbose:
            print(f"Saved snapshot id={snapshot_counter:03d} at step {step}, time {sim.time:.6e}...")
        snapshot_counter += 1

    try:
        while snapshot_counter < len(snapshot_steps) and snapshot_steps[snapshot_counter] <= start_step:
            _write_snapshot(start_step)

        # ============================================================================
        # Main integration loop
        # ============================================================================
        t_start = pytime.perf_counter()
        for step_i in range(1, remaining_steps + 1):
            current_step = start_step + step_i
            sim.step()

            while snapshot_counter < len(snapshot_steps) and current_step >= snapshot_steps[snapshot_counter]:
                _write_snapshot(current_step)

            if verbose and step_i % max(1, remaining_steps // 20) == 0:
                elapsed = pytime.perf_counter() - t_start
                rate = step_i / elapsed if elapsed > 0 else 0
                eta = (remaining_steps - step_i) / rate if rate > 0 else 0
                print(f"  Step {current_step:>6}/{n_steps} | "
                      f"t={sim.time:.4e} | "
                      f"Snapshots: {snapshot_counter}/{len(snapshot_steps)} | "
                      f"{rate:.1f} steps/s | "
                      f"ETA {eta:.0f}s")

            if output_path is not None and restart_interval > 0 and current_step % restart_interval == 0:
                save_restart(sim.get_phase_space(), masses, sim.time, current_step,
                             output_path, snapshot_counter)

        final = sim.get_phase_space()
        if output_path is not None:
            save_restart(final, masses, sim.time, n_steps, output_path, snapshot_counter)

        if verbose:
            total_time = pytime.perf_counter() - t_start
            print("\n" + "=" * 80)
            print("Integration Complete")
            print("=" * 80)
            print(f"Final time: {sim.time:.6e}")
            print(f"Total wall time: {total_time:.2f} s")
            if remaining_steps > 0 and total_time > 0:
                print(f"Steps per second: {remaining_steps / total_time:.1f}")
            print(f"Bounds refreshes: {sim.bounds_tracker.refresh_count} "
                  f"({sim.bounds_tracker.failure_count} failed)")
            print(f"Snapshots saved: {snapshot_counter}")
            if sim.profiler is not None:
                sim.profiler.collect(wait=True)
                print("Pass timings (mean ms):")
                for name, stats in sim.profiler.summary().items():
                    print(f"  {name:<18} {stats['mean_ms']:9.4f}  ({stats['count']} calls)")
            print("=" * 80)
    finally:
        sim.dispose()

    logger.info("run_simulation finished %d steps (N=%d)", remaining_steps, N)
    return final


if __name__ == "__main__":
    from .initial_conditions import make_plummer_sphere

    print("=" * 80)
    print("Pyramid Barnes-Hut - Test Run")
    print("=" * 80)

    print("\n### Plummer sphere (self-gravity only) ###\n")
    xv, masses = make_plummer_sphere(10_000, M_total=1.0, a=0.5)

    final = run_simulation(
        xv,
        masses,
        n_steps=200,
        dt=1e-3,
        G=1.0,
        softening=0.02,
        theta=0.5,
        max_speed=float('inf'),
        max_accel=float('inf'),
        bounds_interval=0.0,
        snapshots=5,
        restart_interval=100,
        output_dir="./test_plummer",
        verbose=True,
    )

    print(f"\nFinal state check:")
    print(f"  COM position: {final[:, :3].mean(axis=0)}")
    print(f"  COM velocity: {final[:, 3:6].mean(axis=0)}")
    print(f"  RMS position: {np.std(final[:, :3]):.3f}")
    print(f"  RMS velocity: {np.std(final[:, 3:6]):.3f}")
