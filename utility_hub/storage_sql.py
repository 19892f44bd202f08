"""Shared relational store for custom tool descriptors (SQLAlchemy)."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text, create_engine, delete, desc, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .logging import get_logger
from .models import ToolDescriptor
from .storage import StorageError

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class CustomToolModel(Base):
    __tablename__ = "custom_tools"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    custom_type: Mapped[str] = mapped_column(String(50), default="normal")
    input_schema: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    query_schema: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    api_config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    custom_logic: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_descriptor(self) -> ToolDescriptor:
        return ToolDescriptor.from_dict(
            {
                "name": self.name,
                "description": self.description,
                "customType": self.custom_type,
                "inputSchema": self.input_schema,
                "querySchema": self.query_schema,
                "apiConfig": self.api_config,
                "customLogic": self.custom_logic,
            }
        )

    def apply(self, descriptor: ToolDescriptor) -> None:
        wire = descriptor.to_dict()
        self.name = descriptor.name
        self.description = descriptor.description
        self.custom_type = wire["customType"]
        self.input_schema = wire["inputSchema"]
        self.query_schema = wire["querySchema"]
        self.api_config = wire["apiConfig"]
        self.custom_logic = descriptor.script


def _ensure_sqlite_parent_dir(db_url: str) -> None:
    if not db_url.startswith("sqlite:"):
        return
    if db_url.startswith("sqlite:////"):
        path = db_url.replace("sqlite:////", "/", 1)
    elif db_url.startswith("sqlite:///"):
        path = db_url.replace("sqlite:///", "", 1)
    else:
        return
    if path in (":memory:", ""):
        return
    Path(path).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)


def create_db_engine(db_url: str) -> Engine:
    _ensure_sqlite_parent_dir(db_url)
    connect_args = {}
    if db_url.startswith("sqlite:"):
        connect_args = {"check_same_thread": False}
    return create_engine(db_url, future=True, pool_pre_ping=True, connect_args=connect_args)


class SqlDescriptorStore:
    """Descriptor store shared by every server instance pointed at one database."""

    def __init__(self, db_url: str, *, auto_create_schema: bool = True) -> None:
        self.db_url = db_url
        try:
            self.engine = create_db_engine(db_url)
            self._factory = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, future=True)
            if auto_create_schema:
                Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageError("Unable to open custom tool database") from exc

    def _session(self) -> Session:
        return self._factory()

    def list(self) -> list[ToolDescriptor]:
        try:
            with self._session() as session:
                rows = session.execute(
                    select(CustomToolModel).order_by(desc(CustomToolModel.created_at), desc(CustomToolModel.id))
                ).scalars().all()
                descriptors: list[ToolDescriptor] = []
                for row in rows:
                    try:
                        descriptors.append(row.to_descriptor())
                    except (ValueError, TypeError):
                        logger.warning("Skipping unreadable custom tool row '%s'", row.name, exc_info=True)
                return descriptors
        except SQLAlchemyError as exc:
            raise StorageError("Unable to read custom tools") from exc

    def upsert(self, descriptor: ToolDescriptor) -> None:
        now = _utcnow()
        try:
            with self._session() as session:
                row = session.execute(
                    select(CustomToolModel).where(CustomToolModel.name == descriptor.name)
                ).scalar_one_or_none()
                if row is None:
                    row = CustomToolModel(created_at=now)
                    session.add(row)
                row.apply(descriptor)
                row.updated_at = now
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Unable to save custom tool '{descriptor.name}'") from exc

    def delete(self, name: str) -> bool:
        try:
            with self._session() as session:
                result = session.execute(delete(CustomToolModel).where(CustomToolModel.name == name))
                session.commit()
                return bool(result.rowcount)
        except SQLAlchemyError as exc:
            raise StorageError(f"Unable to delete custom tool '{name}'") from exc

    def close(self) -> None:
        self.engine.dispose()
