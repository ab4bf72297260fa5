"""
nbody_pyramid.nbody_io

HDF5 snapshot files and ``.npz`` restart files for simulation runs.

Snapshot file layout (``<output_dir>/snapshot.h5``)::

    snapshots/snap.000      (N, 6) float64 phase space, gzip
    snapshots/snap.001      ...
    snapshots.attrs['snap_time.000'] = time
    properties/N, properties/masses, properties/softening,
    properties/time_step, properties/G
"""
from __future__ import annotations

from pathlib import Path

import h5py
import numpy as np

SNAPSHOT_FILE = "snapshot.h5"
RESTART_FILE = "restart.npz"


def save_snapshot(
    phase_space: np.ndarray,
    snap_index: int,
    time: float,
    output_dir: Path | str,
    *,
    masses: np.ndarray | None = None,
    softening: float | None = None,
    time_step: float | None = None,
    G: float | None = None,
) -> Path:
    """
    Append one snapshot to ``<output_dir>/snapshot.h5``.

    An existing dataset with the same index is NOT overwritten. Properties
    are written the first time the file is created.

    Returns
    -------
    Path
        The snapshot file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    fname = output_dir / SNAPSHOT_FILE

    phase_space = np.asarray(phase_space, dtype=np.float64)
    if phase_space.ndim != 2 or phase_space.shape[1] != 6:
        raise ValueError(f"phase_space must be (N, 6), got {phase_space.shape}")

    with h5py.File(fname, "a") as f:
        snaps = f.require_group("snapshots")
        dset_name = f"snap.{snap_index:03d}"
        if dset_name in snaps:
            return fname
        snaps.create_dataset(dset_name, data=phase_space, compression="gzip")
        snaps.attrs[f"snap_time.{snap_index:03d}"] = float(time)

        props = f.require_group("properties")
        if "N" not in props:
            props.create_dataset("N", data=phase_space.shape[0])
        if masses is not None and "masses" not in props:
            props.create_dataset("masses", data=np.asarray(masses, dtype=np.float64))
        for key, value in (("softening", softening), ("time_step", time_step), ("G", G)):
            if value is not None and key not in props:
                props.create_dataset(key, data=float(value))
    return fname


def list_snapshots(output_dir: Path | str) -> list[tuple[int, float]]:
    """``(index, time)`` of every stored snapshot, sorted by index."""
    fname = Path(output_dir) / SNAPSHOT_FILE
    if not fname.exists():
        return []
    out = []
    with h5py.File(fname, "r") as f:
        snaps = f["snapshots"]
        for name in snaps:
            idx = int(name.split(".")[1])
            out.append((idx, float(snaps.attrs.get(f"snap_time.{idx:03d}", np.nan))))
    return sorted(out)


def load_snapshot(output_dir: Path | str, snap_index: int) -> tuple[np.ndarray, float, dict]:
    """
    Read one snapshot.

    Returns
    -------
    phase_space : np.ndarray, shape (N, 6)
    time : float
    properties : dict
        Stored run properties (``N``, ``masses``, ``softening``, ...).
    """
    fname = Path(output_dir) / SNAPSHOT_FILE
    with h5py.File(fname, "r") as f:
        snaps = f["snapshots"]
        dset_name = f"snap.{snap_index:03d}"
        if dset_name not in snaps:
            raise KeyError(f"snapshot {dset_name} not found in {fname}")
        phase_space = snaps[dset_name][()]
        time = float(snaps.attrs.get(f"snap_time.{snap_index:03d}", np.nan))
        props = {key: f["properties"][key][()] for key in f.get("properties", {})}
    return phase_space, time, props


def save_restart(
    phase_space: np.ndarray,
    masses: np.ndarray,
    time: float,
    step: int,
    output_dir: Path | str,
    snapshot_counter: int,
) -> None:
    """Save restart file for crash recovery."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(
        output_dir / RESTART_FILE,
        phase_space=phase_space,
        masses=masses,
        time=time,
        step=step,
        snapshot_counter=int(snapshot_counter),
    )


def load_restart(output_dir: Path | str) -> tuple[np.ndarray, np.ndarray, float, int, int] | None:
    """
    Load restart file if it exists.

    Returns
    -------
    tuple | None
        ``(phase_space, masses, time, step, snapshot_counter)`` if found, else None.
    """
    restart_file = Path(output_dir) / RESTART_FILE
    if not restart_file.exists():
        return None
    data = np.load(restart_file)
    return (
        data["phase_space"],
        data["masses"],
        float(data["time"]),
        int(data["step"]),
        int(data["snapshot_counter"]),
    )
