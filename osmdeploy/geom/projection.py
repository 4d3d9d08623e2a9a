from __future__ import annotations

from pyproj import Transformer

# Web Mercator is undefined at the poles
MAX_MERCATOR_LAT = 85.05112878


class Projector:
    """Projects WGS84 lon/lat coordinates into the output SRID."""

    def __init__(self, srid: int = 3857) -> None:
        self.srid = srid
        self._transformer = None
        if srid != 4326:
            self._transformer = Transformer.from_crs("EPSG:4326", f"EPSG:{srid}", always_xy=True)

    def project(self, coords: list[tuple[float, float]]) -> list[tuple[float, float]]:
        if self._transformer is None or not coords:
            return list(coords)
        lons = [lon for lon, _ in coords]
        lats = [max(-MAX_MERCATOR_LAT, min(MAX_MERCATOR_LAT, lat)) for _, lat in coords]
        xs, ys = self._transformer.transform(lons, lats)
        return list(zip(xs, ys))

    def project_point(self, lon: float, lat: float) -> tuple[float, float]:
        return self.project([(lon, lat)])[0]
