"""
Generic spatial data-access layer on SQLAlchemy and shapely.

Typical use::

    from spatialdao import GenericDao, geometry, restrictions

    dao = GenericDao(Place, "default")
    dao.persist(Place(point=geometry.create_point("POINT (1 2)", 4326)))
    dao.commit()
    dao.close()
"""
import logging

from spatialdao.dao import GenericDao
from spatialdao.db import restrictions
from spatialdao.db.criteria import CriteriaOptions, OrderBy, Projection, asc, desc, distinct, projection
from spatialdao.db.types import GeometryType
from spatialdao.exceptions import DaoError, GeometryError, NonUniqueResultError, QueryError, StaleStateError
from spatialdao import geometry

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "CriteriaOptions",
    "DaoError",
    "GenericDao",
    "GeometryError",
    "GeometryType",
    "NonUniqueResultError",
    "OrderBy",
    "Projection",
    "QueryError",
    "StaleStateError",
    "asc",
    "desc",
    "distinct",
    "geometry",
    "projection",
    "restrictions",
]
