"""Declarative base shared by all scan queue models."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
