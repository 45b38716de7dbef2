"""Planar frames and unit helpers for GPS calibration.

Calibration math runs on projected meters, never on degrees. A
``PlanarFrame`` pairs a WGS84 -> planar transformer with its inverse.
Frames are either a named CRS (e.g. ``EPSG:3301``) or a local transverse
Mercator centred on the site, which keeps distortion negligible over a
construction site without caring which national grid applies.
"""

from __future__ import annotations

from functools import lru_cache

from pyproj import CRS, Geod, Transformer
from pyproj.exceptions import CRSError

from assemblyqc.core.errors import ValidationFailure
from assemblyqc.models import GpsCoord, ModelUnits

WGS84 = "EPSG:4326"

UNIT_FACTORS: dict[ModelUnits, float] = {
    ModelUnits.MILLIMETERS: 0.001,
    ModelUnits.METERS: 1.0,
    ModelUnits.FEET: 0.3048,
}

_GEOD = Geod(ellps="WGS84")


def to_meters(value: float, units: ModelUnits | str) -> float:
    return value * UNIT_FACTORS[ModelUnits(units)]


def from_meters(value: float, units: ModelUnits | str) -> float:
    return value / UNIT_FACTORS[ModelUnits(units)]


def gps_distance_m(a: GpsCoord, b: GpsCoord) -> float:
    """Geodesic distance on the WGS84 ellipsoid."""
    _, _, dist = _GEOD.inv(a.lon, a.lat, b.lon, b.lat)
    return float(dist)


@lru_cache(maxsize=64)
def _transformers(srs: str) -> tuple[Transformer, Transformer]:
    # always_xy: (lon, lat) in, (easting, northing) out
    crs = CRS.from_user_input(srs)
    forward = Transformer.from_crs(WGS84, crs, always_xy=True)
    inverse = Transformer.from_crs(crs, WGS84, always_xy=True)
    return forward, inverse


class PlanarFrame:
    """Metric planar frame used for fitting and applying transforms."""

    def __init__(self, kind: str, srs: str, lat0: float | None = None, lon0: float | None = None):
        self.kind = kind
        self.srs = srs
        self.lat0 = lat0
        self.lon0 = lon0
        try:
            self._forward, self._inverse = _transformers(srs)
        except CRSError as exc:
            raise ValidationFailure(f"Unknown coordinate system: {srs}", srs=srs) from exc

    @classmethod
    def named(cls, crs: str) -> PlanarFrame:
        return cls("named", crs)

    @classmethod
    def local(cls, lat0: float, lon0: float) -> PlanarFrame:
        srs = (
            f"+proj=tmerc +lat_0={lat0:.9f} +lon_0={lon0:.9f} +k=1 "
            "+x_0=0 +y_0=0 +ellps=WGS84 +units=m +no_defs"
        )
        return cls("local", srs, lat0=lat0, lon0=lon0)

    @classmethod
    def centred_on(cls, points: list[GpsCoord]) -> PlanarFrame:
        """Local frame centred on the mean of ``points``."""
        if not points:
            raise ValidationFailure("Cannot centre a frame on zero points")
        lat0 = sum(p.lat for p in points) / len(points)
        lon0 = sum(p.lon for p in points) / len(points)
        return cls.local(lat0, lon0)

    def to_planar(self, gps: GpsCoord) -> tuple[float, float]:
        x, y = self._forward.transform(gps.lon, gps.lat)
        return float(x), float(y)

    def to_gps(self, x: float, y: float) -> GpsCoord:
        lon, lat = self._inverse.transform(x, y)
        return GpsCoord(lat=float(lat), lon=float(lon))

    def describe(self) -> dict:
        if self.kind == "local":
            return {"kind": "local", "lat0": self.lat0, "lon0": self.lon0}
        return {"kind": "named", "crs": self.srs}

    @classmethod
    def from_description(cls, description: dict) -> PlanarFrame:
        kind = description.get("kind")
        if kind == "local":
            return cls.local(description["lat0"], description["lon0"])
        if kind == "named":
            return cls.named(description["crs"])
        raise ValidationFailure(f"Unknown planar frame kind: {kind!r}")

    def __repr__(self) -> str:
        return f"PlanarFrame({self.describe()!r})"
