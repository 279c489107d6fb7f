# model/snapshot.py
"""
Per-table export written before destructive maintenance.

Format: gzipped NDJSON. First line is a header
  {"snapshot": <id>, "created_at": <epoch>, "tables": [...], "rows": {...}}
then one line per row: {"table": <name>, "row": {...}}.
Restoring is left to the operator.
"""
from __future__ import annotations
import gzip
import json
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import DigitalKey, Order, SystemConfig
from ..errors import ValidationError
from ..helpers import now_ts

logger = logging.getLogger(__name__)

TABLES = {
    "digital_keys": DigitalKey,
    "orders": Order,
    "system_configs": SystemConfig,
}


@dataclass
class SnapshotInfo:
    id: str
    path: str
    tables: List[str]
    rows: Dict[str, int]
    size_kb: float


def _row_dict(model, obj) -> Dict[str, Any]:
    return {c.name: getattr(obj, c.key) for c in model.__table__.columns}


async def export_tables(db: AsyncSession, tables: Iterable[str],
                        directory: str) -> SnapshotInfo:
    """Dump the named tables. Runs inside the caller's transaction so the
    snapshot matches what the caller is about to change."""
    tables = list(tables)
    unknown = [t for t in tables if t not in TABLES]
    if not tables or unknown:
        raise ValidationError(f"unknown tables for snapshot: {unknown}")

    snap_id = f"{int(now_ts())}-{uuid.uuid4().hex[:8]}"
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory,
                        f"snapshot-{'-'.join(tables)}-{snap_id}.ndjson.gz")

    lines = []
    counts = {}
    for name in tables:
        model = TABLES[name]
        objs = (await db.execute(select(model))).scalars().all()
        counts[name] = len(objs)
        for obj in objs:
            rec = {"table": name, "row": _row_dict(model, obj)}
            lines.append(json.dumps(rec, separators=(",", ":")) + "\n")

    header = {"snapshot": snap_id, "created_at": now_ts(),
              "tables": tables, "rows": counts}
    with gzip.open(path, "wb") as f:
        f.write((json.dumps(header, separators=(",", ":")) + "\n")
                .encode("utf-8"))
        f.write("".join(lines).encode("utf-8"))

    size_kb = round(os.path.getsize(path) / 1024, 2)
    logger.info("snapshot %s written to %s (%s)", snap_id, path, counts)
    return SnapshotInfo(id=snap_id, path=path, tables=tables, rows=counts,
                        size_kb=size_kb)


def read_snapshot(path: str) -> Dict[str, Any]:
    """-> {"header": {...}, "data": {table: [row, ...]}}"""
    with gzip.open(path, "rb") as f:
        raw = f.read().decode("utf-8").splitlines()
    if not raw:
        raise ValueError(f"empty snapshot: {path}")
    header = json.loads(raw[0])
    data: Dict[str, List[Dict[str, Any]]] = {t: [] for t in header["tables"]}
    for line in raw[1:]:
        rec = json.loads(line)
        data[rec["table"]].append(rec["row"])
    return {"header": header, "data": data}
