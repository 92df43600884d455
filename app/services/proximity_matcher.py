"""
Proximity Matcher - nearby active incidents for duplicate detection.

DESIGN PRINCIPLES:
- Read-only: never marks anything as duplicate (that is a separate
  transition decided by a human or an automated rule)
- Out-of-range coordinates are rejected, never wrapped
- Candidates come from the H3 cell index; haversine distance decides
- Results are ordered by ascending distance and never exceed the radius
"""

from typing import List, Optional, Tuple, Union
import logging

from app.core.errors import ValidationError
from app.core.settings import settings
from app.models.incident import ACTIVE_STATUSES, GeoPoint, Incident, IncidentType
from app.store.base import INCIDENTS, AtomicStore, retried_read
from app.utils.geo import covering_cells, haversine_distance, validate_coordinates

logger = logging.getLogger(__name__)

Coordinates = Union[GeoPoint, Tuple[float, float]]


def _unpack(coordinates: Coordinates) -> Tuple[float, float]:
    """Accept a GeoPoint or a (longitude, latitude) pair."""
    if isinstance(coordinates, GeoPoint):
        return coordinates.longitude, coordinates.latitude
    try:
        longitude, latitude = coordinates
        return float(longitude), float(latitude)
    except (TypeError, ValueError):
        raise ValidationError(
            "Coordinates must be a (longitude, latitude) pair",
            details={"provided": repr(coordinates)},
        )


class ProximityMatcher:
    """Finds active incidents within a radius of a point."""

    def __init__(self, store: AtomicStore, max_radius_meters: Optional[float] = None):
        self.store = store
        self.max_radius_meters = max_radius_meters or settings.MAX_SEARCH_RADIUS_METERS

    def _validate_radius(self, radius_meters: float) -> None:
        if radius_meters is None or not radius_meters > 0:
            raise ValidationError("Radius must be positive", details={"radius_meters": radius_meters})
        if radius_meters > self.max_radius_meters:
            raise ValidationError(
                f"Radius cannot exceed {self.max_radius_meters:.0f} meters",
                details={"radius_meters": radius_meters, "max": self.max_radius_meters},
            )

    def find_nearby(
        self,
        coordinates: Coordinates,
        radius_meters: float,
        type_filter: Optional[IncidentType] = None,
        exclude_id: Optional[str] = None,
    ) -> List[Tuple[Incident, float]]:
        """
        Active incidents within ``radius_meters`` of ``coordinates``.

        Args:
            coordinates: GeoPoint or (longitude, latitude)
            radius_meters: Search radius (0 < r <= MAX_SEARCH_RADIUS_METERS)
            type_filter: Only incidents of this type
            exclude_id: Incident to leave out (usually the caller's own)

        Returns:
            (incident, distance_meters) pairs, nearest first

        Raises:
            ValidationError: invalid coordinates or radius
        """
        longitude, latitude = _unpack(coordinates)
        validate_coordinates(longitude, latitude)
        self._validate_radius(radius_meters)

        resolution_key, cells = covering_cells(longitude, latitude, radius_meters)
        candidates = retried_read(self.store.query_in, INCIDENTS, f"geo_cells.{resolution_key}", cells)

        matches: List[Tuple[Incident, float]] = []
        for doc_id, data in candidates:
            if doc_id == exclude_id:
                continue
            incident = Incident.from_document(doc_id, data)
            if incident.status not in ACTIVE_STATUSES:
                continue
            if type_filter is not None and incident.type != type_filter:
                continue

            distance = haversine_distance(
                longitude, latitude,
                incident.location.longitude, incident.location.latitude,
            )
            if distance <= radius_meters:
                matches.append((incident, distance))

        matches.sort(key=lambda match: (match[1], match[0].id))
        logger.debug(
            f"find_nearby({longitude}, {latitude}, r={radius_meters}) → {len(matches)} match(es) "
            f"from {len(candidates)} candidate(s) in {len(cells)} {resolution_key} cells"
        )
        return matches
