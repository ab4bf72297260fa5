"""
nbody_pyramid.config

Simulation parameters for the pyramid Barnes-Hut integrator.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, fields, replace as _dc_replace
from typing import Literal

from .utils._validation import validate_power_of_two

PRECISIONS = ('float32', 'float64')
PrecisionType = Literal['float32', 'float64']
INTEGRATORS = ('kick_drift', 'kdk')
IntegratorType = Literal['kick_drift', 'kdk']

# Largest supported pyramid depth (512^3 finest grid). Bounds the per-particle
# traversal stack in both the Numba and CUDA kernels.
MAX_LEVELS = 10


@dataclass
class GravityConfig:
    """Configuration for a :class:`~nbody_pyramid.simulation.PyramidGravity` run."""

    # Integration
    dt: float = 1.0 / 60.0               # Time step
    G: float = 0.0003                    # Gravitational constant (simulation units)
    softening: float = 0.2               # Plummer softening length, must be > 0
    damping: float = 0.0                 # Velocity damping per step, in [0, 1)
    max_speed: float = 2.0               # Speed clamp (inf disables)
    max_accel: float = 1.0               # Acceleration magnitude clamp (inf disables)
    integrator: IntegratorType = 'kick_drift'  # 'kick_drift' or 'kdk' (kick-drift-kick)

    # Tree
    theta: float = 0.5                   # Opening angle of the acceptance test
    enable_quadrupole: bool = True       # False -> monopole-only cell expansion
    grid_size: int = 64                  # Finest level voxels per axis (power of two)
    num_levels: int | None = None        # None -> log2(grid_size) + 1
    slices_per_row: int = 8              # Z-slices per texture row at level 0

    # World bounds refresh
    bounds_interval: float = 10.0        # Wall-clock seconds between refreshes
    bounds_margin: float = 0.1           # Padding as a fraction of the extent
    bounds_min_padding: float = 0.5      # Lower limit on the padding per side

    # Storage
    precision: PrecisionType = 'float32'

    # Input and instrumentation
    reject_non_finite: bool = False      # Raise on non-finite initial data instead of freezing it
    enable_profiling: bool = False       # Per-pass timings, see nbody_pyramid.profiler

    def __post_init__(self):
        if self.num_levels is None:
            self.num_levels = self.levels_for_grid(self.grid_size)

    @staticmethod
    def levels_for_grid(grid_size: int) -> int:
        validate_power_of_two(grid_size, "grid_size")
        return int(round(math.log2(grid_size))) + 1

    def validate(self) -> "GravityConfig":
        """Raise ``ValueError`` on any inconsistent parameter; return self."""
        for name in ('dt', 'softening', 'theta', 'max_speed', 'max_accel'):
            value = getattr(self, name)
            if not (value > 0):
                raise ValueError(f"{name} must be positive, got {value!r}")
        for name in ('dt', 'softening', 'theta', 'G', 'damping'):
            if not math.isfinite(getattr(self, name)):
                raise ValueError(f"{name} must be finite, got {getattr(self, name)!r}")
        if self.G < 0:
            raise ValueError(f"G must be non-negative, got {self.G}")
        if not (0.0 <= self.damping < 1.0):
            raise ValueError(f"damping must be in [0, 1), got {self.damping}")

        expected = self.levels_for_grid(self.grid_size)
        if self.num_levels != expected:
            raise ValueError(
                f"num_levels must be log2(grid_size) + 1 = {expected} for "
                f"grid_size={self.grid_size}, got {self.num_levels}"
            )
        if self.num_levels > MAX_LEVELS:
            raise ValueError(
                f"grid_size={self.grid_size} needs {self.num_levels} levels, "
                f"more than the supported {MAX_LEVELS}"
            )
        if not isinstance(self.slices_per_row, int) or self.slices_per_row < 1:
            raise ValueError(f"slices_per_row must be a positive integer, got {self.slices_per_row!r}")

        if self.bounds_interval < 0 or math.isnan(self.bounds_interval):
            raise ValueError(f"bounds_interval must be >= 0, got {self.bounds_interval}")
        if self.bounds_margin < 0 or self.bounds_min_padding < 0:
            raise ValueError("bounds_margin and bounds_min_padding must be >= 0")
        if self.precision not in PRECISIONS:
            raise ValueError(f"precision must be one of {PRECISIONS}, got {self.precision!r}")
        if self.integrator not in INTEGRATORS:
            raise ValueError(f"integrator must be one of {INTEGRATORS}, got {self.integrator!r}")
        return self

    def replace(self, **changes) -> "GravityConfig":
        """Return a validated copy with *changes* applied."""
        if 'grid_size' in changes and 'num_levels' not in changes:
            changes['num_levels'] = None
        return _dc_replace(self, **changes).validate()

    @classmethod
    def from_kwargs(cls, base: "GravityConfig | None" = None, **kwargs) -> "GravityConfig":
        """Build a config from *base* (or defaults) and keyword overrides."""
        known = {f.name for f in fields(cls)}
        unknown = set(kwargs) - known
        if unknown:
            raise TypeError(f"Unknown configuration option(s): {sorted(unknown)}")
        base = base if base is not None else cls()
        return base.replace(**kwargs) if kwargs else _dc_replace(base).validate()
