# model/config/_sql.py
from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db import SystemConfig
from . import values as cv
from ...helpers import now_ts
from ...infra.sql import Gated

logger = logging.getLogger(__name__)


def _decode(row: SystemConfig) -> Any:
    return cv.unwrap(cv.deserialize(row.type, row.value))


class ConfigStore:
    """system_configs table. One short transaction per call."""

    def __init__(self, *, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated

    async def get_config(self, key: str, default: Any = None) -> Any:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    row = await db.get(SystemConfig, key)
        if row is None:
            return default
        try:
            return _decode(row)
        except ValueError:
            logger.warning("config %s holds a malformed %s value %r",
                           key, row.type, row.value)
            return default

    async def set_config(
        self,
        key: str,
        value: Any,
        actor_id: Optional[int] = None,
        *,
        description: Optional[str] = None,
        category: str = "general",
    ) -> Any:
        type_, text = cv.serialize(cv.wrap(value))
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    row = await db.get(SystemConfig, key, with_for_update=True)
                    if row is None:
                        row = SystemConfig(
                            key=key,
                            category=category,
                            description=description,
                            is_editable=True,
                        )
                        db.add(row)
                    elif description:
                        row.description = description
                    row.value = text
                    row.type = type_
                    row.updated_by = actor_id
                    row.updated_at = now_ts()
        logger.info("config %s set to %s (%s) by %s",
                    key, text, type_, actor_id)
        return _decode(row)

    async def get_all(self, category: Optional[str] = None
                      ) -> Dict[str, Dict[str, Any]]:
        stmt = select(SystemConfig)
        if category:
            stmt = stmt.where(SystemConfig.category == category)
        stmt = stmt.order_by(SystemConfig.category, SystemConfig.key)
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    rows = (await db.execute(stmt)).scalars().all()

        out = {}
        for r in rows:
            try:
                value = _decode(r)
            except ValueError:
                value = r.value
            out[r.key] = {
                "value": value,
                "description": r.description,
                "category": r.category,
                "type": r.type,
                "is_editable": bool(r.is_editable),
                "updated_at": r.updated_at,
            }
        return out

    async def initialize_defaults(
        self, defaults: Iterable[Dict[str, Any]]
    ) -> int:
        """Insert missing keys; existing values are left alone."""
        created = 0
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    for d in defaults:
                        if await db.get(SystemConfig, d["key"]) is not None:
                            continue
                        type_, text = cv.serialize(cv.wrap(d["value"]))
                        db.add(SystemConfig(
                            key=d["key"],
                            value=text,
                            type=type_,
                            category=d.get("category", "general"),
                            description=d.get("description"),
                            is_editable=d.get("is_editable", True),
                            updated_at=now_ts(),
                        ))
                        created += 1
        return created
