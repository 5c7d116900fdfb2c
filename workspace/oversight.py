"""
Cross-tenant reporting for the Owner.

Reads only plaintext metadata, the identity directory and stored value
sizes. Never touches ciphertext content or keys.
"""

from typing import Any
from dataclasses import dataclass, field

from .records import (
    ADMIN,
    WORKER,
    list_identities,
    metadata_key,
    payload_key,
    read_metadata,
    registry_key,
)
from .store import KeyValueStore


@dataclass
class AdminStat:
    """Usage figures for one Admin's workspace."""
    username: str
    worker_count: int = 0
    site_count: int = 0
    task_count: int = 0
    storage_bytes: int = 0

    @property
    def storage_kb(self) -> float:
        return round(self.storage_bytes / 1024, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "worker_count": self.worker_count,
            "site_count": self.site_count,
            "task_count": self.task_count,
            "storage_bytes": self.storage_bytes,
            "storage_kb": self.storage_kb,
        }


@dataclass
class OversightReport:
    admins: list[AdminStat] = field(default_factory=list)

    @property
    def total_admins(self) -> int:
        return len(self.admins)

    @property
    def total_storage_bytes(self) -> int:
        return sum(a.storage_bytes for a in self.admins)

    def to_dict(self) -> dict[str, Any]:
        return {
            "admins": [a.to_dict() for a in self.admins],
            "total_admins": self.total_admins,
            "total_storage_mb": round(self.total_storage_bytes / (1024 * 1024), 2),
        }


def oversight_report(store: KeyValueStore) -> OversightReport:
    """Build per-Admin usage figures, largest storage first."""
    identities = list_identities(store)
    stats = []

    for admin in (i for i in identities if i.role == ADMIN):
        name = admin.username
        metadata = read_metadata(store, name) or {}

        def count(key: str) -> int:
            value = metadata.get(key, 0)
            return value if isinstance(value, int) else 0

        stats.append(AdminStat(
            username=name,
            worker_count=sum(1 for i in identities if i.role == WORKER and i.admin_username == name),
            site_count=count("sites"),
            task_count=count("tasks"),
            storage_bytes=sum(store.size(k) for k in (payload_key(name), registry_key(name), metadata_key(name))),
        ))

    stats.sort(key=lambda s: s.storage_bytes, reverse=True)
    return OversightReport(admins=stats)
