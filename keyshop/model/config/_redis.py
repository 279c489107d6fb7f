# model/config/_redis.py
from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, Optional

import redis.asyncio as redis

from . import values as cv
from ...helpers import now_ts

logger = logging.getLogger(__name__)


# ---- keys
def k_cfg(key: str) -> str: return f"cfg:{key}"
def k_cat(category: str) -> str: return f"cfg:cat:{category}"


ALL_INDEX = "cfg:keys"


def _decode(h: Dict[str, str]) -> Any:
    return cv.unwrap(cv.deserialize(h.get("type", cv.STRING), h.get("value")))


class ConfigStore:
    """One hash per config key plus a key index per category.
    Needs a client created with decode_responses=True."""

    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def get_config(self, key: str, default: Any = None) -> Any:
        h = await self.r.hgetall(k_cfg(key))
        if not h:
            return default
        try:
            return _decode(h)
        except ValueError:
            logger.warning("config %s holds a malformed %s value %r",
                           key, h.get("type"), h.get("value"))
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
        existing = await self.r.hgetall(k_cfg(key))
        mapping = {
            "value": text,
            "type": type_,
            "updated_by": "" if actor_id is None else str(actor_id),
            "updated_at": str(now_ts()),
        }
        if not existing:
            mapping.update({
                "category": category,
                "description": description or "",
                "is_editable": "1",
            })
            cat = category
        else:
            if description:
                mapping["description"] = description
            cat = existing.get("category", category)

        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_cfg(key), mapping=mapping)
        pipe.sadd(ALL_INDEX, key)
        pipe.sadd(k_cat(cat), key)
        await pipe.execute()
        logger.info("config %s set to %s (%s) by %s",
                    key, text, type_, actor_id)
        return cv.unwrap(cv.deserialize(type_, text))

    async def get_all(self, category: Optional[str] = None
                      ) -> Dict[str, Dict[str, Any]]:
        index = k_cat(category) if category else ALL_INDEX
        keys = sorted(await self.r.smembers(index))

        # Pipeline to fetch all config hashes
        pipe = self.r.pipeline()
        for key in keys:
            pipe.hgetall(k_cfg(key))
        rows = await pipe.execute()

        out = {}
        for key, h in zip(keys, rows):
            if not h:
                continue
            try:
                value = _decode(h)
            except ValueError:
                value = h.get("value")
            updated_at = h.get("updated_at")
            out[key] = {
                "value": value,
                "description": h.get("description") or None,
                "category": h.get("category", "general"),
                "type": h.get("type", cv.STRING),
                "is_editable": h.get("is_editable", "1") == "1",
                "updated_at": float(updated_at) if updated_at else None,
            }
        return dict(sorted(out.items(),
                           key=lambda kv: (kv[1]["category"], kv[0])))

    async def initialize_defaults(
        self, defaults: Iterable[Dict[str, Any]]
    ) -> int:
        created = 0
        for d in defaults:
            if await self.r.exists(k_cfg(d["key"])):
                continue
            type_, text = cv.serialize(cv.wrap(d["value"]))
            category = d.get("category", "general")
            pipe = self.r.pipeline(transaction=True)
            pipe.hset(k_cfg(d["key"]), mapping={
                "value": text,
                "type": type_,
                "category": category,
                "description": d.get("description") or "",
                "is_editable": "1" if d.get("is_editable", True) else "0",
                "updated_by": "",
                "updated_at": str(now_ts()),
            })
            pipe.sadd(ALL_INDEX, d["key"])
            pipe.sadd(k_cat(category), d["key"])
            await pipe.execute()
            created += 1
        return created
