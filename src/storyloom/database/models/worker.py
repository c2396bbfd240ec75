"""Worker model for Storyloom.

A worker is an agent role that stories can be routed to. Its capability
tags drive the ranking in :mod:`storyloom.orchestrator.routing`.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from storyloom.database.models.base import Base, PortableJSON


class Worker(Base):
    """A worker role and its declared capabilities.

    Attributes:
        id: Worker slug (e.g. ``lead-engineer``).
        name: Display name.
        primary_tags: Tags the worker is strongest at.
        secondary_tags: Tags the worker can take on.
        tie_break_rank: Position in the tie-break order (lower wins).
        is_fallback: Whether this is the generalist default assignee.
    """

    __tablename__ = "workers"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    primary_tags: Mapped[list[str]] = mapped_column(PortableJSON, nullable=False, default=list)
    secondary_tags: Mapped[list[str]] = mapped_column(PortableJSON, nullable=False, default=list)
    tie_break_rank: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    is_fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
