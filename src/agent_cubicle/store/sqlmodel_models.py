"""SQLModel ORM tables for the SQLite durable store."""

from __future__ import annotations

from sqlalchemy import Column, Index, Text
from sqlmodel import Field, SQLModel


class StoreRecord(SQLModel, table=True):
    __tablename__ = "store_records"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    expires_at: float | None = Field(default=None, index=True)


class StoreListItem(SQLModel, table=True):
    __tablename__ = "store_list_items"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_store_list_items_key_item_id", "list_key", "item_id"),)

    item_id: int | None = Field(default=None, primary_key=True)
    list_key: str = Field(index=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    created_at: float
