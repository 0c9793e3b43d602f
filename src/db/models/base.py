"""Declarative base shared by all models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    # Stages write timezone-aware UTC timestamps.
    type_annotation_map = {datetime: DateTime(timezone=True)}
