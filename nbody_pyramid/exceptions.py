"""Exceptions raised by nbody_pyramid."""


class PyramidGravityError(Exception):
    """Base exception for all nbody_pyramid errors."""

    pass


class CapabilityError(PyramidGravityError):
    """Raised when the requested compute device is missing a required capability."""

    def __init__(self, message: str, requirement: str | None = None):
        super().__init__(message)
        self.requirement = requirement


class KernelCompileError(PyramidGravityError):
    """Raised when a CUDA kernel fails to compile."""

    def __init__(self, message: str, kernel_name: str | None = None):
        super().__init__(message)
        self.kernel_name = kernel_name


class SimulationDisposedError(PyramidGravityError):
    """Raised when a disposed simulation is stepped or read."""

    pass
