"""
Firestore query helpers.

NOTE: For firebase_admin SDK, we use positional arguments which still work.
The deprecation warning is just a warning - the functionality is still supported.
"""

from typing import Any, Iterator, List

# Firestore caps the number of values in a single "in" filter
MAX_IN_VALUES = 30


def where_filter(query, field_path: str, op_string: str, value):
    """
    Helper function for Firestore queries.

    Usage:
        query = where_filter(collection, "status", "==", "reported")
        query = where_filter(query, "geo_cells.r9", "in", cells)
    """
    return query.where(field_path, op_string, value)


def chunked(values: List[Any], size: int = MAX_IN_VALUES) -> Iterator[List[Any]]:
    """Split ``values`` into lists small enough for one "in" filter."""
    for start in range(0, len(values), size):
        yield values[start:start + size]
