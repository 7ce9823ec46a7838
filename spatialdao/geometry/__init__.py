"""
Validated geometry construction and transformation.

Re-exports the builder API so callers can write
``from spatialdao import geometry; geometry.create_point(...)``.
"""

from .builder import (  # re-export
    Coordinate,
    check_geometry,
    check_srids,
    create_coordinate,
    create_geometry,
    create_geometry_collection,
    create_geometry_collection_wkt,
    create_line_string,
    create_line_string_from_coordinates,
    create_multi_line_string,
    create_multi_line_string_from,
    create_multi_point,
    create_multi_point_from,
    create_multi_polygon,
    create_multi_polygon_from,
    create_point,
    create_point_from_coordinate,
    create_point_xy,
    create_polygon,
    change_scale,
    change_scale_centroid_based,
    generate_long_lat_point,
    generate_long_lat_points,
    generate_point,
    get_srid,
    round_geometry,
)

__all__ = [
    "Coordinate",
    "check_geometry",
    "check_srids",
    "create_coordinate",
    "create_geometry",
    "create_geometry_collection",
    "create_geometry_collection_wkt",
    "create_line_string",
    "create_line_string_from_coordinates",
    "create_multi_line_string",
    "create_multi_line_string_from",
    "create_multi_point",
    "create_multi_point_from",
    "create_multi_polygon",
    "create_multi_polygon_from",
    "create_point",
    "create_point_from_coordinate",
    "create_point_xy",
    "create_polygon",
    "change_scale",
    "change_scale_centroid_based",
    "generate_long_lat_point",
    "generate_long_lat_points",
    "generate_point",
    "get_srid",
    "round_geometry",
]
