# model/apikeys.py
from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_iso
from ..infra.sql import touch


def mask(api_key: str) -> str:
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return api_key[:4] + "*" * (len(api_key) - 8) + api_key[-4:]


async def get_api_key(db: AsyncSession, location_id: str) -> Optional[str]:
    row = (await db.execute(text("""
        SELECT api_key FROM location_api_keys WHERE location_id = :loc
    """), {"loc": location_id})).first()
    return row[0] if row else None


async def list_api_keys(db: AsyncSession) -> List[Dict[str, Any]]:
    rows = (await db.execute(text("""
        SELECT id, location_id, api_key, created_at FROM location_api_keys
        ORDER BY created_at ASC
    """))).mappings().all()
    # never hand the secret back out in full
    return [{**dict(r), "api_key": mask(r["api_key"])} for r in rows]


async def upsert_api_key(
    db: AsyncSession, location_id: str, api_key: str
) -> Dict[str, Any]:
    row = (await db.execute(text("""
        INSERT INTO location_api_keys(id, location_id, api_key, created_at)
        VALUES (:id, :loc, :key, :created_at)
        ON CONFLICT (location_id) DO UPDATE SET api_key = EXCLUDED.api_key
        RETURNING id, location_id, api_key, created_at
    """), {
        "id": new_id(), "loc": location_id, "key": api_key,
        "created_at": now_iso(),
    })).mappings().first()
    touch(db, "location_api_keys")
    return {**dict(row), "api_key": mask(row["api_key"])}


async def delete_api_key(db: AsyncSession, key_id: str) -> bool:
    res = await db.execute(
        text("DELETE FROM location_api_keys WHERE id = :id"), {"id": key_id}
    )
    touch(db, "location_api_keys")
    return res.rowcount > 0
