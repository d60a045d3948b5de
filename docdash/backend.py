# docdash/backend.py
"""
The platform the dashboard talks to: object storage, row storage and a
row-level change feed. Everything above this module only sees the `Backend`
protocol, so tests swap in an in-memory fake.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple

from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from docdash.changefeed import ChangeFeed, OnEvent, Subscription
from docdash.errors import BackendError
from docdash.models import Base
from docdash.schemas import ChangeEvent, ChangeType
from docdash.storage import ObjectStore

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
Match = Dict[str, Any]
# ("created_at", "desc")
Order = Tuple[str, str]


class Backend(Protocol):
    async def put_object(self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None) -> None: ...

    async def get_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str: ...

    async def remove_object(self, bucket: str, path: str) -> None: ...

    async def insert_row(self, table: str, fields: Row) -> Row: ...

    async def update_row(self, table: str, match: Match, fields: Row) -> List[Row]: ...

    async def delete_row(self, table: str, match: Match) -> List[Row]: ...

    async def select_rows(self, table: str, match: Match, order: Optional[Order] = None) -> List[Row]: ...

    async def subscribe_changes(self, table: str, row_filter: Optional[Match], on_event: OnEvent) -> Subscription: ...

    async def unsubscribe(self, subscription: Subscription) -> None: ...


def _table(name: str) -> Table:
    try:
        return Base.metadata.tables[name]
    except KeyError:
        raise BackendError("lookup", f"unknown table {name!r}")


def _where(table: Table, match: Match) -> list:
    clauses = []
    for key, value in match.items():
        column = table.c[key]
        if isinstance(value, (list, tuple, set, frozenset)):
            clauses.append(column.in_(list(value)))
        else:
            clauses.append(column == value)
    return clauses


class PlatformBackend:
    """SQLAlchemy rows + MinIO objects + Redis change feed."""

    def __init__(self, sessionmaker: async_sessionmaker, objects: ObjectStore, feed: ChangeFeed):
        self._sessionmaker = sessionmaker
        self._objects = objects
        self._feed = feed

    @classmethod
    def from_settings(cls, sessionmaker: Optional[async_sessionmaker] = None) -> "PlatformBackend":
        if sessionmaker is None:
            from docdash.db import AsyncSessionLocal
            sessionmaker = AsyncSessionLocal
        return cls(sessionmaker, ObjectStore(), ChangeFeed.from_url())

    # ---- objects ----
    async def put_object(self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        await self._objects.put_object(bucket, path, data, content_type)

    async def get_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        return await self._objects.get_signed_url(bucket, path, ttl_seconds)

    async def remove_object(self, bucket: str, path: str) -> None:
        await self._objects.remove_object(bucket, path)

    # ---- rows ----
    async def insert_row(self, table: str, fields: Row) -> Row:
        tbl = _table(table)
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(insert(tbl).values(**fields).returning(*tbl.c))
                row = dict(result.mappings().one())
                await session.commit()
        except SQLAlchemyError as e:
            logger.exception("insert into %s failed", table)
            raise BackendError("insert_row", str(e)) from e
        await self._feed.publish(ChangeEvent(type=ChangeType.INSERT, table=table, new=row))
        return row

    async def update_row(self, table: str, match: Match, fields: Row) -> List[Row]:
        tbl = _table(table)
        pk = [c.name for c in tbl.primary_key.columns]
        try:
            async with self._sessionmaker() as session:
                before = await session.execute(select(tbl).where(*_where(tbl, match)).with_for_update())
                old_rows = {tuple(r[k] for k in pk): dict(r) for r in before.mappings().all()}
                result = await session.execute(
                    update(tbl).where(*_where(tbl, match)).values(**fields).returning(*tbl.c)
                )
                new_rows = [dict(r) for r in result.mappings().all()]
                await session.commit()
        except SQLAlchemyError as e:
            logger.exception("update of %s failed", table)
            raise BackendError("update_row", str(e)) from e
        for row in new_rows:
            old = old_rows.get(tuple(row[k] for k in pk))
            await self._feed.publish(ChangeEvent(type=ChangeType.UPDATE, table=table, new=row, old=old))
        return new_rows

    async def delete_row(self, table: str, match: Match) -> List[Row]:
        tbl = _table(table)
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(delete(tbl).where(*_where(tbl, match)).returning(*tbl.c))
                old_rows = [dict(r) for r in result.mappings().all()]
                await session.commit()
        except SQLAlchemyError as e:
            logger.exception("delete from %s failed", table)
            raise BackendError("delete_row", str(e)) from e
        for row in old_rows:
            await self._feed.publish(ChangeEvent(type=ChangeType.DELETE, table=table, old=row))
        return old_rows

    async def select_rows(self, table: str, match: Match, order: Optional[Order] = None) -> List[Row]:
        tbl = _table(table)
        stmt = select(tbl).where(*_where(tbl, match))
        if order is not None:
            column, direction = order
            stmt = stmt.order_by(tbl.c[column].desc() if direction.lower() == "desc" else tbl.c[column].asc())
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(stmt)
                return [dict(r) for r in result.mappings().all()]
        except SQLAlchemyError as e:
            logger.exception("select from %s failed", table)
            raise BackendError("select_rows", str(e)) from e

    # ---- change feed ----
    async def subscribe_changes(self, table: str, row_filter: Optional[Match], on_event: OnEvent) -> Subscription:
        return await self._feed.subscribe(table, row_filter, on_event)

    async def unsubscribe(self, subscription: Subscription) -> None:
        await self._feed.unsubscribe(subscription)

    async def ping(self) -> Dict[str, bool]:
        ok = {"database": False, "redis": False}
        try:
            async with self._sessionmaker() as session:
                await session.execute(select(1))
            ok["database"] = True
        except SQLAlchemyError:
            logger.exception("Database ping failed")
        ok["redis"] = await self._feed.ping()
        return ok

    async def aclose(self) -> None:
        await self._feed.close()
