"""
Collections and groups as seen by the decision engine.

Both are owned by other services; the engine only reads them. The in-memory
directory stands in for those services and is filled by whoever hosts the
engine (seed scripts, tests).
"""
from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class Collection(BaseModel):
    id: str
    name: str
    restaurant_ids: list[str] = Field(default_factory=list)
    owner_id: str | None = None
    group_id: str | None = None

    @field_validator("restaurant_ids")
    @classmethod
    def _unique_ids(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(value))


class Group(BaseModel):
    id: str
    name: str
    admin_ids: list[str] = Field(default_factory=list)
    member_ids: list[str] = Field(default_factory=list)

    @property
    def participants(self) -> list[str]:
        """Admins and members, de-duplicated, admins first."""
        return list(dict.fromkeys([*self.admin_ids, *self.member_ids]))

    def is_admin(self, user_id: str) -> bool:
        return user_id in self.admin_ids

    def is_member(self, user_id: str) -> bool:
        return user_id in self.admin_ids or user_id in self.member_ids


class Catalog:
    def __init__(self) -> None:
        self._collections: dict[str, Collection] = {}
        self._groups: dict[str, Group] = {}

    async def get_collection(self, collection_id: str) -> Collection | None:
        found = self._collections.get(collection_id)
        return found.model_copy(deep=True) if found else None

    async def get_group(self, group_id: str) -> Group | None:
        found = self._groups.get(group_id)
        return found.model_copy(deep=True) if found else None

    def put_collection(self, collection: Collection) -> None:
        self._collections[collection.id] = collection.model_copy(deep=True)

    def put_group(self, group: Group) -> None:
        self._groups[group.id] = group.model_copy(deep=True)

    def clear(self) -> None:
        self._collections.clear()
        self._groups.clear()


catalog = Catalog()


def clear_catalog() -> None:
    catalog.clear()
