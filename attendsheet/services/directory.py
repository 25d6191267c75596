"""
Employee directory lookup.

The ingestion side owns the directory and any caching of it; this service
only receives a read-only ``resolve`` capability.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Protocol


@dataclass(frozen=True)
class ChannelIdentity:
    """Ids an employee is known by on the notification provider."""

    user_id: str  # message recipient
    union_id: str  # task executor


class EmployeeDirectory(Protocol):
    async def resolve(self, employee_id: str) -> ChannelIdentity | None: ...


class PassthroughDirectory:
    """Employee id is the provider user id on both channels."""

    async def resolve(self, employee_id: str) -> ChannelIdentity | None:
        if not employee_id:
            return None
        return ChannelIdentity(user_id=employee_id, union_id=employee_id)


class StaticDirectory:
    def __init__(self, identities: Mapping[str, ChannelIdentity]) -> None:
        self._identities = dict(identities)

    async def resolve(self, employee_id: str) -> ChannelIdentity | None:
        return self._identities.get(employee_id)
