"""Declarative base shared by the cache bookkeeping tables."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
