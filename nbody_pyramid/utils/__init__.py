"""nbody_pyramid.utils: input validation shared by the simulation modules."""

from ._validation import (
    validate_positions,
    validate_masses,
    validate_velocities,
    validate_power_of_two,
    validate_bounds_pair,
)

__all__ = [
    "validate_positions",
    "validate_masses",
    "validate_velocities",
    "validate_power_of_two",
    "validate_bounds_pair",
]
