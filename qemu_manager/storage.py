"""
Relational store behind a narrow row interface.

Handlers never write query text: every filter is a column -> value mapping and
is turned into bound parameters here. Uniqueness violations surface as
StorageConstraintError so callers can render them like the matching
validation rule.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import (
  Boolean, Column, DateTime, Integer, MetaData, String, Table, UniqueConstraint,
  create_engine, delete, func, insert, select, update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError

from qemu_manager.errors import StorageConstraintError

logger = logging.getLogger(__name__)

metadata = MetaData()

users = Table(
  "users", metadata,
  Column("id", Integer, primary_key=True, autoincrement=True),
  Column("username", String, nullable=False, unique=True, index=True),
  Column("email", String, nullable=False, unique=True),
  Column("password_hash", String, nullable=False),
  Column("role", String, nullable=False, default="viewer"),
  Column("is_active", Boolean, nullable=False, default=True),
  Column("created_at", DateTime, nullable=False),
  Column("updated_at", DateTime, nullable=False),
  Column("last_login_at", DateTime),
)

virtual_machine = Table(
  "virtual_machine", metadata,
  Column("id", Integer, primary_key=True, autoincrement=True),
  Column("name", String, nullable=False, unique=True),
  Column("platform", String, nullable=False),
  Column("hda", String),
  Column("cdrom", String),
  Column("memory", Integer, nullable=False),
  Column("cpu", Integer, nullable=False),
  Column("boot", String, nullable=False, default="c"),
)

network_interface = Table(
  "network_interface", metadata,
  Column("id", Integer, primary_key=True, autoincrement=True),
  Column("machine_name", String, nullable=False, unique=True),
  Column("mac", String, nullable=False, unique=True),
  Column("model", String, nullable=False, default="virtio-net-pci"),
  Column("ip", String),
  Column("netmask", String),
  Column("gateway", String),
  Column("dns", String),
)

port_forwarding = Table(
  "port_forwarding", metadata,
  Column("id", Integer, primary_key=True, autoincrement=True),
  Column("machine_name", String, nullable=False, index=True),
  Column("protocol", String, nullable=False),
  Column("host_port", Integer, nullable=False),
  Column("guest_port", Integer, nullable=False),
  Column("guest_ip", String),
  UniqueConstraint("machine_name", "protocol", "host_port", name="uq_port_forwarding_rule"),
)


def utcnow() -> datetime:
  return datetime.now(timezone.utc).replace(tzinfo=None)


class Store:
  def __init__(self, engine):
    self.engine = engine

  @classmethod
  def from_url(cls, url: str) -> "Store":
    parsed = make_url(url)
    connect_args = {}
    if parsed.get_backend_name() == "sqlite":
      connect_args["check_same_thread"] = False
      if parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return cls(create_engine(url, connect_args=connect_args))

  def init_schema(self):
    metadata.create_all(bind=self.engine)
    logger.info(f"Schema ready on {self.engine.url.render_as_string(hide_password=True)}")

  def _table(self, name: str) -> Table:
    try:
      return metadata.tables[name]
    except KeyError:
      raise ValueError(f"unknown table {name!r}") from None

  @staticmethod
  def _column(table: Table, name: str):
    try:
      return table.c[name]
    except KeyError:
      raise ValueError(f"unknown column {table.name}.{name}") from None

  def _conditions(self, table: Table, where: Optional[Mapping[str, Any]], exclude: Optional[Mapping[str, Any]] = None):
    conds = []
    for key, value in (where or {}).items():
      col = self._column(table, key)
      conds.append(col.is_(None) if value is None else col == value)
    for key, value in (exclude or {}).items():
      col = self._column(table, key)
      conds.append(col.is_not(None) if value is None else col != value)
    return conds

  def select(self, table: str, columns: Optional[Iterable[str]] = None, where: Optional[Mapping[str, Any]] = None,
             limit: Optional[int] = None, offset: int = 0) -> List[Dict[str, Any]]:
    t = self._table(table)
    cols = [self._column(t, c) for c in columns] if columns else [t]
    stmt = select(*cols).where(*self._conditions(t, where)).order_by(t.c.id)
    if limit is not None:
      stmt = stmt.limit(limit).offset(offset)
    with self.engine.connect() as conn:
      return [dict(row._mapping) for row in conn.execute(stmt)]

  def first(self, table: str, where: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    rows = self.select(table, where=where, limit=1)
    return rows[0] if rows else None

  def insert(self, table: str, values: Mapping[str, Any]) -> int:
    t = self._table(table)
    for key in values:
      self._column(t, key)
    try:
      with self.engine.begin() as conn:
        result = conn.execute(insert(t).values(**values))
        return result.inserted_primary_key[0]
    except IntegrityError as exc:
      logger.warning(f"Insert into {table} rejected by constraint: {exc.orig}")
      raise StorageConstraintError(str(exc.orig)) from exc

  def update(self, table: str, values: Mapping[str, Any], where: Mapping[str, Any]) -> int:
    t = self._table(table)
    if not where:
      raise ValueError("update requires a filter")
    for key in values:
      self._column(t, key)
    try:
      with self.engine.begin() as conn:
        return conn.execute(update(t).where(*self._conditions(t, where)).values(**values)).rowcount
    except IntegrityError as exc:
      logger.warning(f"Update of {table} rejected by constraint: {exc.orig}")
      raise StorageConstraintError(str(exc.orig)) from exc

  def delete(self, table: str, where: Mapping[str, Any]) -> int:
    t = self._table(table)
    if not where:
      raise ValueError("delete requires a filter")
    try:
      with self.engine.begin() as conn:
        return conn.execute(delete(t).where(*self._conditions(t, where))).rowcount
    except IntegrityError as exc:
      raise StorageConstraintError(str(exc.orig)) from exc

  def count(self, table: str, where: Optional[Mapping[str, Any]] = None,
            exclude: Optional[Mapping[str, Any]] = None) -> int:
    t = self._table(table)
    stmt = select(func.count()).select_from(t).where(*self._conditions(t, where, exclude))
    with self.engine.connect() as conn:
      return int(conn.execute(stmt).scalar_one())

  def exists(self, table: str, where: Mapping[str, Any], exclude: Optional[Mapping[str, Any]] = None) -> bool:
    return self.count(table, where, exclude) > 0
