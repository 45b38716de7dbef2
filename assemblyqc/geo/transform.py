"""Model <-> GPS transform fitting.

Pure functions: no I/O, no session. Model coordinates passed in here are
already in meters; unit conversion belongs to the caller.

Two point pairs determine a Helmert (similarity) transform exactly. Three
or more are fitted as a least-squares affine transform. All linear algebra
runs on coordinates centred on the model and planar centroids so that
national-grid offsets in the millions of meters do not cost precision.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np

from assemblyqc.config import CalibrationConfig
from assemblyqc.core.errors import (
    DegenerateProjectionError,
    InsufficientPointsError,
    SingularConfigurationError,
    ValidationFailure,
)
from assemblyqc.geo.projection import PlanarFrame
from assemblyqc.models import (
    AccuracyReport,
    CalibrationQuality,
    CoordinateTransform,
    GpsCoord,
    ModelCoord,
    TransformOrigin,
    TransformType,
)

Pair = tuple[ModelCoord, GpsCoord]


def fit_transform(
    pairs: Sequence[Pair],
    frame: PlanarFrame | None = None,
    config: CalibrationConfig | None = None,
) -> CoordinateTransform:
    """Fit a model -> planar transform from surveyed point pairs.

    Args:
        pairs: (model, gps) correspondences, model in meters
        frame: planar frame for the fit; defaults to a local transverse
            Mercator centred on the GPS centroid
        config: numerical tolerances

    Returns:
        CoordinateTransform with finite parameters and an invertible linear part

    Raises:
        InsufficientPointsError: fewer than 2 pairs
        DegenerateProjectionError: GPS points do not separate in the planar frame
        SingularConfigurationError: coincident or collinear model points
    """
    config = config or CalibrationConfig()

    if len(pairs) < 2:
        raise InsufficientPointsError(
            f"At least 2 calibration points are required, got {len(pairs)}",
            point_count=len(pairs),
        )

    if frame is None:
        frame = PlanarFrame.centred_on([gps for _, gps in pairs])

    model = np.array([[m.x, m.y] for m, _ in pairs], dtype=float)
    planar = np.array([frame.to_planar(g) for _, g in pairs], dtype=float)

    if not (np.all(np.isfinite(model)) and np.all(np.isfinite(planar))):
        raise ValidationFailure("Calibration coordinates must be finite numbers")

    if _max_spread(planar) < config.min_point_separation_m:
        raise DegenerateProjectionError(
            "GPS positions coincide in the planar frame; capture points further apart",
            min_separation_m=config.min_point_separation_m,
        )

    model_origin = model.mean(axis=0)
    planar_origin = planar.mean(axis=0)
    m = model - model_origin
    p = planar - planar_origin

    if len(pairs) == 2:
        a, b, c, d = _helmert(m, p, config)
        transform_type = TransformType.HELMERT
    else:
        a, b, c, d = _affine(m, p, config)
        transform_type = TransformType.AFFINE

    det = a * d - b * c
    if abs(det) < config.singular_epsilon:
        raise SingularConfigurationError(
            "Fitted transform is not invertible", determinant=det
        )

    # Global form: x' = a*x + b*y + tx
    tx = planar_origin[0] - (a * model_origin[0] + b * model_origin[1])
    ty = planar_origin[1] - (c * model_origin[0] + d * model_origin[1])

    transform = CoordinateTransform(
        type=transform_type,
        a=float(a),
        b=float(b),
        c=float(c),
        d=float(d),
        tx=float(tx),
        ty=float(ty),
        rotation_deg=math.degrees(math.atan2(c - b, a + d)),
        scale=math.sqrt(abs(det)),
        origin=TransformOrigin(
            model_x=float(model_origin[0]),
            model_y=float(model_origin[1]),
            planar_x=float(planar_origin[0]),
            planar_y=float(planar_origin[1]),
        ),
        frame=frame.describe(),
        point_count=len(pairs),
    )
    if not transform.is_finite():
        raise SingularConfigurationError("Fit produced non-finite parameters")
    return transform


def _max_spread(points: np.ndarray) -> float:
    deltas = points[:, None, :] - points[None, :, :]
    return float(np.max(np.linalg.norm(deltas, axis=-1)))


def _helmert(m: np.ndarray, p: np.ndarray, config: CalibrationConfig):
    vm = m[1] - m[0]
    vp = p[1] - p[0]
    model_len = float(np.hypot(vm[0], vm[1]))
    if model_len < config.min_point_separation_m:
        raise SingularConfigurationError(
            "The two model points coincide; pick distinct reference points",
            min_separation_m=config.min_point_separation_m,
        )
    planar_len = float(np.hypot(vp[0], vp[1]))

    theta = math.atan2(vp[1], vp[0]) - math.atan2(vm[1], vm[0])
    scale = planar_len / model_len
    cos_t = scale * math.cos(theta)
    sin_t = scale * math.sin(theta)
    return cos_t, -sin_t, sin_t, cos_t


def _affine(m: np.ndarray, p: np.ndarray, config: CalibrationConfig):
    singular_values = np.linalg.svd(m, compute_uv=False)
    if singular_values[0] <= 0 or singular_values[-1] / singular_values[0] < config.collinearity_tolerance:
        raise SingularConfigurationError(
            "Calibration points are collinear; add a point off the line",
            point_count=len(m),
        )

    # p ~= m @ solution, columns are (x', y')
    solution, _, _, _ = np.linalg.lstsq(m, p, rcond=None)
    a, c = solution[0]
    b, d = solution[1]
    return float(a), float(b), float(c), float(d)


# ---------------------------------------------------------------------------
# Applying transforms
# ---------------------------------------------------------------------------


def apply_planar(transform: CoordinateTransform, x: float, y: float) -> tuple[float, float]:
    """Map model meters to planar meters."""
    o = transform.origin
    dx = x - o.model_x
    dy = y - o.model_y
    return (
        o.planar_x + transform.a * dx + transform.b * dy,
        o.planar_y + transform.c * dx + transform.d * dy,
    )


def apply_inverse_planar(
    transform: CoordinateTransform,
    x: float,
    y: float,
    epsilon: float = 1e-12,
) -> tuple[float, float]:
    """Map planar meters back to model meters."""
    det = transform.determinant
    if abs(det) < epsilon or not math.isfinite(det):
        raise SingularConfigurationError("Transform has no inverse", determinant=det)

    o = transform.origin
    dx = x - o.planar_x
    dy = y - o.planar_y
    return (
        o.model_x + (transform.d * dx - transform.b * dy) / det,
        o.model_y + (-transform.c * dx + transform.a * dy) / det,
    )


def apply(transform: CoordinateTransform, model: ModelCoord) -> GpsCoord:
    frame = PlanarFrame.from_description(transform.frame)
    x, y = apply_planar(transform, model.x, model.y)
    return frame.to_gps(x, y)


def apply_inverse(transform: CoordinateTransform, gps: GpsCoord) -> ModelCoord:
    frame = PlanarFrame.from_description(transform.frame)
    px, py = frame.to_planar(gps)
    x, y = apply_inverse_planar(transform, px, py)
    return ModelCoord(x=x, y=y)


# ---------------------------------------------------------------------------
# Accuracy
# ---------------------------------------------------------------------------


def evaluate_accuracy(
    transform: CoordinateTransform,
    pairs: Sequence[Pair],
    config: CalibrationConfig | None = None,
) -> AccuracyReport:
    """Residuals of ``pairs`` under ``transform``, measured in the planar frame."""
    config = config or CalibrationConfig()
    frame = PlanarFrame.from_description(transform.frame)

    errors: list[float] = []
    for model, gps in pairs:
        predicted = apply_planar(transform, model.x, model.y)
        actual = frame.to_planar(gps)
        errors.append(math.hypot(predicted[0] - actual[0], predicted[1] - actual[1]))

    if errors:
        rmse = math.sqrt(sum(e * e for e in errors) / len(errors))
        max_error = max(errors)
    else:
        rmse = max_error = 0.0

    return AccuracyReport(
        rmse_m=rmse,
        max_error_m=max_error,
        per_point_errors_m=errors,
        quality=grade(rmse, config),
    )


def grade(rmse_m: float, config: CalibrationConfig | None = None) -> CalibrationQuality:
    config = config or CalibrationConfig()
    if rmse_m < config.excellent_rmse_m:
        return CalibrationQuality.EXCELLENT
    if rmse_m < config.good_rmse_m:
        return CalibrationQuality.GOOD
    if rmse_m < config.acceptable_rmse_m:
        return CalibrationQuality.ACCEPTABLE
    if rmse_m < config.poor_rmse_m:
        return CalibrationQuality.POOR
    return CalibrationQuality.UNUSABLE
