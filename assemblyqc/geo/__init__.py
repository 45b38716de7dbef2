"""Coordinate transform engine: planar frames, fitting and accuracy."""

from assemblyqc.geo.projection import (
    PlanarFrame,
    from_meters,
    gps_distance_m,
    to_meters,
)
from assemblyqc.geo.transform import (
    apply,
    apply_inverse,
    apply_inverse_planar,
    apply_planar,
    evaluate_accuracy,
    fit_transform,
    grade,
)

__all__ = [
    "PlanarFrame",
    "from_meters",
    "gps_distance_m",
    "to_meters",
    "apply",
    "apply_inverse",
    "apply_inverse_planar",
    "apply_planar",
    "evaluate_accuracy",
    "fit_transform",
    "grade",
]
