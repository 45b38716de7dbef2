"""Calibration store: surveyed points and the derived transform per project."""

from assemblyqc.calibration.store import CalibrationStore, point_from_gps_sample

__all__ = ["CalibrationStore", "point_from_gps_sample"]
