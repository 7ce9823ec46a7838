"""Mapped entity classes used across the test suite."""
from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import declarative_base

from spatialdao.db.types import GeometryType

Base = declarative_base()

SRID = 4326


class Account(Base):
    __tablename__ = "accounts"
    id = Column(Integer, primary_key=True)
    login = Column(String(255), nullable=False)
    password = Column(String(255), nullable=False)


class Place(Base):
    __tablename__ = "places"
    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=True)
    point = Column(GeometryType("POINT", SRID), nullable=False)


class Tag(Base):
    """Entity whose identity is assigned by the caller."""

    __tablename__ = "tags"
    code = Column(String(36), primary_key=True, autoincrement=False)
    label = Column(String(100), nullable=True)
