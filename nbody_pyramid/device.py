#!/usr/bin/env python3
"""
nbody_pyramid.device
Compute substrates for the pyramid Barnes-Hut pipeline.

Two devices expose the same pass-level interface (aggregate, reduce,
traverse, integrate, bounds readback, pass timers) over flat RGBA texture
arrays:

- ``CpuDevice``: NumPy arrays, Numba kernels from :mod:`.cpu_kernels`.
- ``CudaDevice``: CuPy arrays, raw CUDA kernels from :mod:`.cuda_kernels`
  compiled once at construction.

Requirements (GPU)
------------------
- NVIDIA GPU with CUDA support (compute capability >= 6.0, needed for
  double-precision ``atomicAdd``)
- CuPy: https://cupy.dev/

Examples
--------
>>> from nbody_pyramid.device import select_device
>>> dev = select_device('auto')          # CUDA when usable, else CPU
>>> dev.name
'cpu'
"""
from __future__ import annotations

import logging
import time
import warnings
from typing import Literal, Union

import numpy as np

from . import cpu_kernels
from .cpu_kernels import STACK_SIZE, SELF_MASS_RTOL
from .cuda_kernels import _PYRAMID_KERNEL_CONFIG
from .exceptions import CapabilityError, KernelCompileError

try:
    import cupy as cp
    import cupyx
    from cupy.cuda.compiler import CompileException
    CUPY_AVAILABLE = True
except ImportError:
    CUPY_AVAILABLE = False
    warnings.warn(
        "CuPy not available. GPU acceleration disabled. "
        "Install with: pip install cupy-cudaxxx",
        ImportWarning
    )

logger = logging.getLogger(__name__)

DeviceName = Literal['auto', 'cpu', 'gpu', 'cuda']

# Minimum compute capability (major * 10 + minor)
MIN_COMPUTE_CAPABILITY = 60

_THREADS_PER_BLOCK = 128

# Type specifications for float vs double kernels
_TYPE_SPECS = {
    'float32': {
        'T': 'float',
        'SQRT': 'sqrtf',
    },
    'float64': {
        'T': 'double',
        'SQRT': 'sqrt',
    },
}


# ============================================================================
# BOUNDS READBACKS
# ============================================================================

class BoundsReadback:
    """A masked min/max reduction whose result may still be in flight.

    ``result()`` returns ``(lo, hi, count)`` with ``lo`` / ``hi`` as float64
    3-vectors and ``count`` the number of particles that took part.
    """

    def done(self) -> bool:
        raise NotImplementedError

    def result(self) -> tuple[np.ndarray, np.ndarray, int]:
        raise NotImplementedError


class ReadyReadback(BoundsReadback):
    """Readback that completed synchronously (CPU)."""

    def __init__(self, lo, hi, count):
        self._value = (np.asarray(lo, dtype=np.float64),
                       np.asarray(hi, dtype=np.float64), int(count))

    def done(self) -> bool:
        return True

    def result(self):
        return self._value


class CudaReadback(BoundsReadback):
    """Asynchronous device-to-pinned-host copy completed by a CUDA event."""

    def __init__(self, event, host_buffer, device_buffer):
        self._event = event
        self._host = host_buffer
        # Keeps the source alive until the copy lands
        self._device = device_buffer

    def done(self) -> bool:
        return self._event.done

    def result(self):
        self._event.synchronize()
        self._device = None
        host = np.array(self._host, dtype=np.float64)
        return host[0:3], host[3:6], int(host[6])


# ============================================================================
# PASS TIMERS
# ============================================================================

class CpuPassTimer:
    """Wall-clock interval around a synchronous pass."""

    def __init__(self):
        self._start = time.perf_counter()
        self._stop = None

    def stop(self) -> None:
        self._stop = time.perf_counter()

    def done(self) -> bool:
        return self._stop is not None

    def elapsed(self) -> float:
        """Seconds between start and :meth:`stop`."""
        return self._stop - self._start


class CudaPassTimer:
    """Pair of CUDA events bracketing the kernels queued in between."""

    def __init__(self):
        self._start = cp.cuda.Event()
        self._end = cp.cuda.Event()
        self._stopped = False
        self._start.record()

    def stop(self) -> None:
        self._end.record()
        self._stopped = True

    def done(self) -> bool:
        return self._stopped and self._end.done

    def elapsed(self) -> float:
        self._end.synchronize()
        return cp.cuda.get_elapsed_time(self._start, self._end) / 1000.0


# ============================================================================
# GPU INFO
# ============================================================================

def get_gpu_info() -> dict:
    """
    Get information about the available GPU.

    Returns
    -------
    info : dict
        Dictionary containing:
        - 'available': bool, whether a usable GPU is present
        - 'device_name': str, GPU model name
        - 'compute_capability': str, e.g. '86'
        - 'memory_total': int, total GPU memory in bytes
        - 'memory_free': int, free GPU memory in bytes

    Examples
    --------
    >>> info = get_gpu_info()
    >>> if info['available']:
    ...     print(f"GPU: {info['device_name']}")
    """
    if not CUPY_AVAILABLE:
        return {'available': False}

    try:
        device = cp.cuda.Device()
        mem_info = cp.cuda.runtime.memGetInfo()
        name = cp.cuda.runtime.getDeviceProperties(device.id)['name']
        return {
            'available': True,
            'device_name': name.decode('utf-8') if isinstance(name, bytes) else str(name),
            'compute_capability': device.compute_capability,
            'memory_total': mem_info[1],
            'memory_free': mem_info[0],
        }
    except cp.cuda.runtime.CUDARuntimeError as e:
        logger.debug("GPU query failed: %s", e)
        return {'available': False, 'error': str(e)}


def check_cuda_capability(device_id: int = 0) -> str:
    """Return the compute capability string of *device_id* or raise ``CapabilityError``."""
    if not CUPY_AVAILABLE:
        raise CapabilityError("CuPy is not installed", requirement="cupy")
    try:
        count = cp.cuda.runtime.getDeviceCount()
    except cp.cuda.runtime.CUDARuntimeError as e:
        raise CapabilityError(f"CUDA runtime unavailable: {e}", requirement="cuda") from e
    if count <= device_id:
        raise CapabilityError(
            f"CUDA device {device_id} requested but {count} device(s) found",
            requirement="cuda",
        )
    cc = cp.cuda.Device(device_id).compute_capability
    if int(cc) < MIN_COMPUTE_CAPABILITY:
        raise CapabilityError(
            f"Compute capability {cc} is below the required "
            f"{MIN_COMPUTE_CAPABILITY} (float atomicAdd)",
            requirement="compute_capability",
        )
    return cc


# ============================================================================
# CPU DEVICE
# ============================================================================

class CpuDevice:
    """NumPy storage with Numba kernels."""

    name = 'cpu'
    is_gpu = False

    def __init__(self, precision: str = 'float32'):
        if precision not in _TYPE_SPECS:
            raise ValueError(f"precision must be 'float32' or 'float64', got {precision}")
        self.precision = precision
        self.dtype = np.dtype(precision)
        self.xp = np

    def __repr__(self):
        return f"CpuDevice(precision={self.precision!r})"

    # --- storage ---------------------------------------------------------
    def zeros(self, shape):
        return np.zeros(shape, dtype=self.dtype)

    def upload(self, host, dtype=None):
        return np.ascontiguousarray(host, dtype=dtype or self.dtype).copy()

    def to_host(self, arr) -> np.ndarray:
        return np.array(arr, copy=True)

    def synchronize(self) -> None:
        pass

    def release_memory(self) -> None:
        pass

    # --- passes ----------------------------------------------------------
    def aggregate(self, pos, n, a0, a1, a2, desc, bounds) -> None:
        cpu_kernels.aggregate_level0(pos, n, a0, a1, a2, desc, bounds.min, bounds.max)

    def reduce_level(self, a0, a1, a2, desc, child_level: int, parent_grid: int) -> None:
        cpu_kernels.reduce_level(a0, a1, a2, desc, child_level)

    def traverse(self, pos, n, a0, a1, a2, desc, bounds, *,
                 theta, softening, G, enable_quadrupole, out) -> None:
        cpu_kernels.traverse(pos, n, a0, a1, a2, desc, bounds.min, bounds.max,
                             float(theta), float(softening), float(G),
                             bool(enable_quadrupole), out)

    def integrate_velocity(self, pos, vel, force, n, *, dt, damping,
                           max_speed, max_accel, out) -> None:
        cpu_kernels.integrate_velocity(pos, vel, force, n, float(dt), float(damping),
                                       float(max_speed), float(max_accel), out)

    def integrate_position(self, pos, vel_new, n, *, dt, out) -> None:
        cpu_kernels.integrate_position(pos, vel_new, n, float(dt), out)

    def start_bounds_readback(self, pos, n) -> BoundsReadback:
        result = np.empty((2, 3), dtype=np.float64)
        count = cpu_kernels.masked_bounds(pos, n, result)
        return ReadyReadback(result[0], result[1], count)

    def start_timer(self) -> CpuPassTimer:
        return CpuPassTimer()


# ============================================================================
# CUDA DEVICE
# ============================================================================

class CudaDevice:
    """CuPy storage with raw CUDA kernels compiled at construction.

    Raises
    ------
    CapabilityError
        CuPy, a CUDA device or the required compute capability is missing.
    KernelCompileError
        A kernel failed to compile.
    """

    name = 'cuda'
    is_gpu = True

    def __init__(self, precision: str = 'float32', device_id: int = 0):
        if precision not in _TYPE_SPECS:
            raise ValueError(f"precision must be 'float32' or 'float64', got {precision}")
        self.compute_capability = check_cuda_capability(device_id)
        self.precision = precision
        self.dtype = np.dtype(precision)
        self.device_id = device_id
        self.xp = cp
        self._device = cp.cuda.Device(device_id)
        self._device.use()
        self._kernels = self._compile_kernels()

    def __repr__(self):
        return (f"CudaDevice(precision={self.precision!r}, device_id={self.device_id}, "
                f"cc={self.compute_capability})")

    def _compile_kernels(self) -> dict:
        specs = dict(_TYPE_SPECS[self.precision],
                     STACK_SIZE=STACK_SIZE, SELF_MASS_RTOL=repr(SELF_MASS_RTOL))
        options = (
            '-O3',
            f'-arch=sm_{self.compute_capability}',
        )
        kernels = {}
        for kernel_name, template in _PYRAMID_KERNEL_CONFIG.items():
            source = template.format(**specs)
            try:
                kernel = cp.RawKernel(source, kernel_name, options=options, backend='nvcc')
                kernel.compile()
            except CompileException as e:
                raise KernelCompileError(
                    f"Failed to compile CUDA kernel '{kernel_name}': {e}",
                    kernel_name=kernel_name,
                ) from e
            logger.debug("Compiled CUDA kernel %s (%s)", kernel_name, self.precision)
            kernels[kernel_name] = kernel
        return kernels

    def _launch(self, kernel_name: str, n_threads: int, args) -> None:
        if n_threads <= 0:
            return
        blocks = (n_threads + _THREADS_PER_BLOCK - 1) // _THREADS_PER_BLOCK
        self._kernels[kernel_name]((blocks,), (_THREADS_PER_BLOCK,), args)

    def _scalar(self, value):
        return self.dtype.type(value)

    def _bounds_array(self, bounds):
        return cp.asarray(np.concatenate([bounds.min, bounds.max]).astype(np.float64))

    # --- storage ---------------------------------------------------------
    def zeros(self, shape):
        return cp.zeros(shape, dtype=self.dtype)

    def upload(self, host, dtype=None):
        return cp.ascontiguousarray(cp.asarray(host, dtype=dtype or self.dtype))

    def to_host(self, arr) -> np.ndarray:
        return cp.asnumpy(arr)

    def synchronize(self) -> None:
        cp.cuda.Stream.null.synchronize()

    def release_memory(self) -> None:
        cp.get_default_memory_pool().free_all_blocks()
        cp.get_default_pinned_memory_pool().free_all_blocks()

    # --- passes ----------------------------------------------------------
    def aggregate(self, pos, n, a0, a1, a2, desc, bounds) -> None:
        self._launch('aggregate_level0', n,
                     (pos, np.int32(n), a0, a1, a2, desc, self._bounds_array(bounds)))

    def reduce_level(self, a0, a1, a2, desc, child_level: int, parent_grid: int) -> None:
        self._launch('reduce_level', parent_grid ** 3,
                     (a0, a1, a2, desc, np.int32(child_level)))

    def traverse(self, pos, n, a0, a1, a2, desc, bounds, *,
                 theta, softening, G, enable_quadrupole, out) -> None:
        self._launch('traverse', n,
                     (pos, np.int32(n), a0, a1, a2, desc, np.int32(desc.shape[0]),
                      self._bounds_array(bounds), np.float64(theta),
                      np.float64(softening), np.float64(G),
                      np.int32(1 if enable_quadrupole else 0), out))

    def integrate_velocity(self, pos, vel, force, n, *, dt, damping,
                           max_speed, max_accel, out) -> None:
        self._launch('integrate_velocity', n,
                     (pos, vel, force, np.int32(n), self._scalar(dt), self._scalar(damping),
                      self._scalar(max_speed), self._scalar(max_accel), out))

    def integrate_position(self, pos, vel_new, n, *, dt, out) -> None:
        self._launch('integrate_position', n,
                     (pos, vel_new, np.int32(n), self._scalar(dt), out))

    def start_bounds_readback(self, pos, n) -> BoundsReadback:
        p = pos[:n]
        valid = (p[:, 3] > 0) & cp.all(cp.isfinite(p), axis=1)
        xyz = p[:, :3].astype(cp.float64)
        packed = cp.empty(7, dtype=cp.float64)
        packed[0:3] = cp.where(valid[:, None], xyz, cp.inf).min(axis=0)
        packed[3:6] = cp.where(valid[:, None], xyz, -cp.inf).max(axis=0)
        packed[6] = valid.sum()

        host = cupyx.empty_pinned((7,), dtype=np.float64)
        packed.get(out=host, blocking=False)
        event = cp.cuda.Event()
        event.record()
        return CudaReadback(event, host, packed)

    def start_timer(self) -> CudaPassTimer:
        return CudaPassTimer()


# ============================================================================
# DEVICE SELECTION
# ============================================================================

Device = Union[CpuDevice, CudaDevice]


def select_device(device: DeviceName | Device = 'auto',
                  precision: str = 'float32') -> Device:
    """
    Resolve a device selector.

    Parameters
    ----------
    device : {'auto', 'cpu', 'gpu', 'cuda'} or device instance
        'auto' uses CUDA when usable and falls back to the CPU; 'gpu' / 'cuda'
        fail with ``CapabilityError`` when CUDA is unusable.
    precision : {'float32', 'float64'}
        Storage precision of all textures.
    """
    if isinstance(device, (CpuDevice, CudaDevice)):
        return device

    key = str(device).lower()
    if key == 'cpu':
        return CpuDevice(precision)
    if key in ('gpu', 'cuda'):
        dev = CudaDevice(precision)
        logger.info("Using %r", dev)
        return dev
    if key == 'auto':
        try:
            dev = CudaDevice(precision)
        except CapabilityError as e:
            logger.info("CUDA unavailable (%s); using CPU device", e)
            return CpuDevice(precision)
        logger.info("Using %r", dev)
        return dev
    raise ValueError(f"device must be 'auto', 'cpu', 'gpu' or 'cuda', got {device!r}")
