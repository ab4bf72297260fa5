"""nbody_pyramid: Barnes-Hut N-body gravity on an implicit octree texture pyramid."""

from importlib.metadata import version as _version_lookup, PackageNotFoundError

# --- Versioning ---
try:
    __version__ = _version_lookup("nbody_pyramid")
except PackageNotFoundError:
    __version__ = "unknown"

# --- Public API ---

# From .config / .exceptions
from .config import GravityConfig
from .exceptions import (
    PyramidGravityError,
    CapabilityError,
    KernelCompileError,
    SimulationDisposedError,
)

# From .bounds
from .bounds import WorldBounds, WorldBoundsTracker, compute_bounds

# From .device
from .device import CpuDevice, CudaDevice, select_device, get_gpu_info

# From .profiler
from .profiler import PassProfiler, PassTiming

# From .simulation / .run
from .simulation import PyramidGravity
from .run import run_simulation

# From .diagnostics
from .diagnostics import (
    SimulationSnapshot,
    direct_accelerations,
    kinetic_energy,
    potential_energy,
    total_energy,
    linear_momentum,
    angular_momentum,
)

# From .initial_conditions
from .initial_conditions import (
    make_plummer_sphere,
    make_circular_binary,
    make_rotating_disk,
    make_uniform_sphere,
)

# Define what "from nbody_pyramid import *" does
__all__ = [
    "__version__",
    "GravityConfig",
    "PyramidGravityError",
    "CapabilityError",
    "KernelCompileError",
    "SimulationDisposedError",
    "WorldBounds",
    "WorldBoundsTracker",
    "compute_bounds",
    "CpuDevice",
    "CudaDevice",
    "select_device",
    "get_gpu_info",
    "PassProfiler",
    "PassTiming",
    "PyramidGravity",
    "run_simulation",
    "SimulationSnapshot",
    "direct_accelerations",
    "kinetic_energy",
    "potential_energy",
    "total_energy",
    "linear_momentum",
    "angular_momentum",
    "make_plummer_sphere",
    "make_circular_binary",
    "make_rotating_disk",
    "make_uniform_sphere",
]
