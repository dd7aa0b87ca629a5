from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional, Protocol
import uuid


Profile = dict[str, Any]
RoutineDoc = dict[str, Any]


class ProfileStore(Protocol):
    async def get_profile(self, user_id: str) -> Optional[Profile]: ...

    async def save_image_analysis(self, user_id: str, analysis: dict[str, Any]) -> bool: ...


class RoutineStore(Protocol):
    async def get_latest_routine(self, user_id: str) -> Optional[RoutineDoc]: ...

    async def save_routine(self, user_id: str, profile_id: Optional[str], payload: dict[str, Any]) -> Optional[dict[str, Any]]: ...


class CartStore(Protocol):
    async def upsert_item(self, user_id: str, product_id: str, quantity: int) -> bool: ...

    async def remove_item(self, user_id: str, product_id: str) -> bool: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryAccountStore(ProfileStore, RoutineStore, CartStore):
    """Profiles, routines and carts kept in process memory.

    Cart writes are upserts keyed by (user, product) and routine writes
    supersede the previous routine, so repeating a write is harmless.
    """

    def __init__(self, *, profiles: Optional[dict[str, Profile]] = None) -> None:
        self._lock = asyncio.Lock()
        self._profiles: dict[str, Profile] = {}
        self._routines: dict[str, list[RoutineDoc]] = {}
        self._carts: dict[str, dict[str, int]] = {}
        for user_id, profile in (profiles or {}).items():
            self._profiles[user_id] = {"id": f"profile_{user_id}", "user_id": user_id, **profile}

    async def get_profile(self, user_id: str) -> Optional[Profile]:
        async with self._lock:
            profile = self._profiles.get(user_id)
            return dict(profile) if profile else None

    async def save_image_analysis(self, user_id: str, analysis: dict[str, Any]) -> bool:
        async with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                return False
            profile["image_analysis"] = analysis
            profile["updated_at"] = _now_iso()
            return True

    async def get_latest_routine(self, user_id: str) -> Optional[RoutineDoc]:
        async with self._lock:
            rows = self._routines.get(user_id) or []
            return dict(rows[-1]) if rows else None

    async def save_routine(self, user_id: str, profile_id: Optional[str], payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        row = {
            "id": f"routine_{uuid.uuid4().hex}",
            "user_id": user_id,
            "profile_id": profile_id,
            "routine_data": payload,
            "created_at": _now_iso(),
        }
        async with self._lock:
            self._routines.setdefault(user_id, []).append(row)
        return {"id": row["id"]}

    async def upsert_item(self, user_id: str, product_id: str, quantity: int) -> bool:
        async with self._lock:
            self._carts.setdefault(user_id, {})[product_id] = max(1, int(quantity))
        return True

    async def remove_item(self, user_id: str, product_id: str) -> bool:
        async with self._lock:
            cart = self._carts.get(user_id) or {}
            cart.pop(product_id, None)
        return True

    async def cart_items(self, user_id: str) -> dict[str, int]:
        async with self._lock:
            return dict(self._carts.get(user_id) or {})
