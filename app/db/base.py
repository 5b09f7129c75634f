"""
Declarative base shared by every ORM model.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    # Models annotate plain Column() attributes for editor hints.
    __allow_unmapped__ = True
