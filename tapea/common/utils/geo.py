"""
Geographic utility functions.

This module provides the geospatial calculations used by the location
streaming channel: distance throttling and bearing derivation.
"""

from math import atan2, asin, cos, degrees, radians, sin, sqrt


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points in meters using Haversine formula.
    
    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point
    
    Returns:
        Distance in meters
    """
    lat1, lon1, lat2, lon2 = map(radians, [float(lat1), float(lon1), float(lat2), float(lon2)])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    r = 6371000  # Earth's radius in meters
    return c * r


def calculate_heading(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle initial bearing from the first point to the second.
    
    Args:
        lat1: Latitude of the previous fix
        lon1: Longitude of the previous fix
        lat2: Latitude of the current fix
        lon2: Longitude of the current fix
    
    Returns:
        Bearing in degrees, normalized into [0, 360). Identical points yield 0.
    """
    if float(lat1) == float(lat2) and float(lon1) == float(lon2):
        return 0.0

    phi1, phi2 = radians(float(lat1)), radians(float(lat2))
    dlon = radians(float(lon2) - float(lon1))

    y = sin(dlon) * cos(phi2)
    x = cos(phi1) * sin(phi2) - sin(phi1) * cos(phi2) * cos(dlon)

    bearing = (degrees(atan2(y, x)) + 360.0) % 360.0
    # (-tiny + 360) % 360 can round to exactly 360.0
    return 0.0 if bearing >= 360.0 else bearing
