from math import asin, cos, radians, sin, sqrt

EARTH_RADIUS_KM = 6371.0


def distance_km(lat1, lon1, lat2, lon2):
    """
    Great-circle distance between two points in kilometres (haversine).

    Returns None when any coordinate is missing, so callers can tell an
    unknown distance apart from a zero one.
    """
    if lat1 is None or lon1 is None or lat2 is None or lon2 is None:
        return None

    d_lat = radians(lat2 - lat1)
    d_lon = radians(lon2 - lon1)

    value = (
        sin(d_lat / 2) ** 2
        + cos(radians(lat1)) * cos(radians(lat2)) * sin(d_lon / 2) ** 2
    )

    # Out-of-range coordinates can push the term past 1.0; asin must not raise.
    arc = 2 * asin(min(1.0, sqrt(max(0.0, value))))
    return EARTH_RADIUS_KM * arc


def distance_sort_key(distance, tiebreak=0):
    """Sort key that puts unknown distances after every known one."""
    if distance is None:
        return (1, 0.0, tiebreak)
    return (0, distance, tiebreak)
