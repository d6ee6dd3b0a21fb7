"""SQLModel ORM tables for the progress store."""

from __future__ import annotations

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel

PROCESSED_ARTISTS_TABLE = "processed_artists"


class ProcessedArtist(SQLModel, table=True):
    """One completed task; rows are only ever inserted."""

    __tablename__ = PROCESSED_ARTISTS_TABLE  # type: ignore[bad-override]

    id: str = Field(sa_column=Column(Text, primary_key=True))
    processed_at: str = Field(sa_column=Column(Text, nullable=True))
