"""Generic data-access objects."""

from .generic_dao import GenericDao, bind_positional  # re-export

__all__ = ["GenericDao", "bind_positional"]
