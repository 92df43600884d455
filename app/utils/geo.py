"""
Geospatial helpers: coordinate checks, great-circle distance, H3 cell cover.

Incidents store their H3 cell at several resolutions (``geo_cells``). A radius
query picks the finest resolution whose disk of cells stays small, fetches the
incidents in those cells, and the exact haversine distance decides.
"""

import math
from typing import Dict, List, Tuple

import h3

from app.core.errors import ValidationError

EARTH_RADIUS_METERS = 6371000

# Resolution key -> H3 resolution, finest first
CELL_RESOLUTIONS: Dict[str, int] = {"r9": 9, "r7": 7, "r5": 5, "r3": 3}

# Finest resolution is chosen while the k-ring stays at or under this many cells
MAX_COVER_CELLS = 61


def validate_coordinates(longitude: float, latitude: float) -> None:
    """
    Reject out-of-range coordinates. Values are never wrapped or clamped.

    Raises:
        ValidationError: longitude outside [-180, 180] or latitude outside [-90, 90]
    """
    problems = {}
    if longitude is None or not math.isfinite(longitude) or not -180 <= longitude <= 180:
        problems["longitude"] = {"min": -180, "max": 180, "provided": longitude}
    if latitude is None or not math.isfinite(latitude) or not -90 <= latitude <= 90:
        problems["latitude"] = {"min": -90, "max": 90, "provided": latitude}
    if problems:
        raise ValidationError("Invalid coordinates", details=problems)


def haversine_distance(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Great-circle distance between two points, in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = math.sin(delta_phi / 2) ** 2 + \
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def cells_for_point(longitude: float, latitude: float) -> Dict[str, str]:
    """H3 cell containing the point, per stored resolution."""
    return {
        key: h3.latlng_to_cell(latitude, longitude, resolution)
        for key, resolution in CELL_RESOLUTIONS.items()
    }


def _ring_size(radius_meters: float, resolution: int) -> int:
    # Ring k+1 centers are at least 1.5 * edge * (k+1) from the origin center,
    # and either point may sit one edge away from its own center. The extra
    # ring absorbs H3 cell-size distortion.
    edge = h3.average_hexagon_edge_length(resolution, unit="m")
    return math.ceil((radius_meters + 2 * edge) / (1.5 * edge)) + 1


def _disk_cell_count(k: int) -> int:
    return 3 * k * (k + 1) + 1


def covering_cells(longitude: float, latitude: float, radius_meters: float) -> Tuple[str, List[str]]:
    """
    Cells whose union contains the circle around the point.

    Returns:
        (resolution key, cell ids) to query against ``geo_cells.<key>``
    """
    chosen_key, chosen_k = None, None
    for key, resolution in CELL_RESOLUTIONS.items():
        k = _ring_size(radius_meters, resolution)
        chosen_key, chosen_k = key, k
        if _disk_cell_count(k) <= MAX_COVER_CELLS:
            break

    origin = h3.latlng_to_cell(latitude, longitude, CELL_RESOLUTIONS[chosen_key])
    return chosen_key, sorted(h3.grid_disk(origin, chosen_k))
