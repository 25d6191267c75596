"""Declarative base shared by every ORM model."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    # models declare plain Column attributes, not Mapped[]
    __allow_unmapped__ = True
