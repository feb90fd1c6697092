import asyncio
import json
import time
from typing import List, Optional

import aiosqlite

from provider_daemon.errors import DataIntegrityError
from provider_daemon.ledger import DeploymentStatus

_SELECT = (
    "SELECT r.id, r.pc_id, pc.address, r.offer_id, r.provider_id, r.owner_address, r.name, "
    "r.deployment_status, r.details_json, r.group_name, r.is_active, r.created_at, r.updated_at "
    "FROM resources r JOIN product_categories pc ON pc.id = r.pc_id"
)

_UPDATABLE = ("name", "details", "deployment_status", "group_name", "is_active")


def _row_to_dict(row) -> dict:
    return {
        "id": row[0],
        "product_category_id": row[1],
        "product_category": row[2],
        "offer_id": row[3],
        "provider_id": row[4],
        "owner_address": row[5],
        "name": row[6],
        "deployment_status": DeploymentStatus(row[7]),
        "details": json.loads(row[8]),
        "group_name": row[9],
        "is_active": bool(row[10]),
        "created_at": row[11],
        "updated_at": row[12],
    }


class ResourceRepo:
    """CRUD operations for the resources table."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock):
        self._db = db
        self._lock = lock

    async def _pc_id(self, category_address: str) -> int:
        async with self._db.execute(
            "SELECT id FROM product_categories WHERE address = ?",
            (category_address.lower(),),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise DataIntegrityError(
                f"Product category not found in the database: {category_address.lower()}"
            )
        return row[0]

    async def create(
        self,
        resource_id: int,
        category_address: str,
        offer_id: int,
        provider_id: int,
        owner_address: str,
        name: str,
        deployment_status: DeploymentStatus,
        details: Optional[dict] = None,
        group_name: str = "default",
    ) -> dict:
        """Insert the resource, replacing an earlier row for the same agreement."""
        now = time.time()
        async with self._lock:
            pc_id = await self._pc_id(category_address)
            await self._db.execute(
                "INSERT INTO resources (id, pc_id, offer_id, provider_id, owner_address, name, "
                "deployment_status, details_json, group_name, is_active, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?) "
                "ON CONFLICT(id, pc_id) DO UPDATE SET offer_id = excluded.offer_id, "
                "provider_id = excluded.provider_id, owner_address = excluded.owner_address, "
                "name = excluded.name, deployment_status = excluded.deployment_status, "
                "details_json = excluded.details_json, group_name = excluded.group_name, "
                "is_active = 1, updated_at = excluded.updated_at",
                (
                    resource_id, pc_id, offer_id, provider_id, owner_address.lower(), name,
                    DeploymentStatus(deployment_status).value,
                    json.dumps(details or {}, sort_keys=True, default=str),
                    group_name, now, now,
                ),
            )
            await self._db.commit()
        return await self.get(resource_id, category_address)

    async def get(
        self, resource_id: int, category_address: str, owner_address: Optional[str] = None,
    ) -> Optional[dict]:
        query = f"{_SELECT} WHERE r.id = ? AND pc.address = ?"
        params: tuple = (resource_id, category_address.lower())
        if owner_address is not None:
            query += " AND r.owner_address = ?"
            params += (owner_address.lower(),)
        async with self._db.execute(query, params) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_dict(row)

    async def update(self, resource_id: int, category_address: str, **values) -> Optional[dict]:
        unknown = set(values) - set(_UPDATABLE)
        if unknown:
            raise ValueError(f"Cannot update resource fields: {', '.join(sorted(unknown))}")
        if not values:
            return await self.get(resource_id, category_address)
        sets = []
        params: list = []
        for key, value in values.items():
            if key == "details":
                sets.append("details_json = ?")
                params.append(json.dumps(value or {}, sort_keys=True, default=str))
            elif key == "deployment_status":
                sets.append("deployment_status = ?")
                params.append(DeploymentStatus(value).value)
            elif key == "is_active":
                sets.append("is_active = ?")
                params.append(1 if value else 0)
            else:
                sets.append(f"{key} = ?")
                params.append(value)
        sets.append("updated_at = ?")
        params.append(time.time())
        async with self._lock:
            await self._db.execute(
                f"UPDATE resources SET {', '.join(sets)} "
                "WHERE id = ? AND pc_id = (SELECT id FROM product_categories WHERE address = ?)",
                tuple(params) + (resource_id, category_address.lower()),
            )
            await self._db.commit()
        return await self.get(resource_id, category_address)

    async def mark_closed(self, resource_id: int, category_address: str) -> Optional[dict]:
        """Deactivate the resource and drop its details (credentials included)."""
        return await self.update(
            resource_id,
            category_address,
            is_active=False,
            deployment_status=DeploymentStatus.CLOSED,
            details={},
        )

    async def list_for_owner(
        self, owner_address: str, category_address: Optional[str] = None, active_only: bool = True,
    ) -> List[dict]:
        query = f"{_SELECT} WHERE r.owner_address = ?"
        params: tuple = (owner_address.lower(),)
        if category_address:
            query += " AND pc.address = ?"
            params += (category_address.lower(),)
        if active_only:
            query += " AND r.is_active = 1"
        query += " ORDER BY pc.address, r.id"
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def list_all(self, status: Optional[DeploymentStatus] = None) -> List[dict]:
        if status:
            query = f"{_SELECT} WHERE r.deployment_status = ? ORDER BY pc.address, r.id"
            params: tuple = (DeploymentStatus(status).value,)
        else:
            query = f"{_SELECT} ORDER BY pc.address, r.id"
            params = ()
        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append(_row_to_dict(row))
        return results

    async def count(self, status: Optional[DeploymentStatus] = None) -> int:
        if status:
            async with self._db.execute(
                "SELECT COUNT(*) FROM resources WHERE deployment_status = ?",
                (DeploymentStatus(status).value,),
            ) as cursor:
                row = await cursor.fetchone()
        else:
            async with self._db.execute("SELECT COUNT(*) FROM resources") as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0
