from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiofiles

from kennel_v1.services.logger_service import LoggerService


SET_FILES: dict[str, str] = {
    "whitelist": "whitelist.json",
    "admin_users": "admin.json",
    "blacklist": "blacklist.json",
    "wet_list": "wetList.json",
    "ban_list": "banList.json",
    "perm_mv_users": "permMv.json",
    "locked_names": "lockedNames.json",
    "locked_text_channels": "lockedTextChannels.json",
}
DOGS_FILE = "dogs.json"
LIMIT_ROLES_FILE = "limitRoles.json"
COOLDOWNS_FILE = "cooldowns.json"
PV_FILE = "pvChannels.json"


class PersistenceError(Exception):
    """A single snapshot file could not be read, decoded or written."""


@dataclass
class LeashRelationship:
    executor_id: str
    locked_name: str

    def to_json(self) -> dict[str, str]:
        return {"executorId": self.executor_id, "lockedName": self.locked_name}


@dataclass
class PrivateVoiceChannel:
    owner_id: str
    allowed: set[str] = field(default_factory=set)

    def to_json(self) -> dict[str, Any]:
        return {"allowed": sorted(self.allowed), "ownerId": self.owner_id}


class SnapshotStore:
    """
    In-memory authority and relationship state, snapshotted to one JSON file per collection.

    Every read and write is per-file: a corrupt or unwritable collection falls back to its
    empty default (read) or is skipped (write) without touching the others.
    """

    def __init__(self, data_dir: Path, logger: LoggerService, flush_interval_sec: int = 60) -> None:
        self.data_dir = data_dir
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logger
        self.flush_interval_sec = flush_interval_sec
        self._lock = asyncio.Lock()
        self.sets: dict[str, set[str]] = {name: set() for name in SET_FILES}
        self.dogs: dict[str, LeashRelationship] = {}
        self._dogs_by_executor: dict[str, set[str]] = {}
        self.limit_roles: dict[str, int] = {}
        self.cooldowns: dict[str, float] = {}
        self.pv_channels: dict[str, PrivateVoiceChannel] = {}

    # ---- lifecycle ----

    async def load(self) -> None:
        for name, filename in SET_FILES.items():
            raw = await self._read_or_none(filename)
            self.sets[name] = self._decode_set(filename, raw)
        self.dogs = {}
        self._dogs_by_executor = {}
        for subordinate_id, relationship in self._decode_dogs(await self._read_or_none(DOGS_FILE)).items():
            self._put_dog(subordinate_id, relationship)
        self.limit_roles = self._decode_limit_roles(await self._read_or_none(LIMIT_ROLES_FILE))
        self.cooldowns = self._decode_cooldowns(await self._read_or_none(COOLDOWNS_FILE))
        self.pv_channels = self._decode_pv(await self._read_or_none(PV_FILE))
        self.logger.log(
            "store.loaded",
            data_dir=str(self.data_dir),
            dogs=len(self.dogs),
            whitelist=len(self.sets["whitelist"]),
            pv_channels=len(self.pv_channels),
        )

    async def flush(self) -> list[str]:
        async with self._lock:
            # Payloads are built before the first await so one flush never mixes two states.
            payloads = self._snapshot()
            failed: list[str] = []
            for filename, payload in payloads:
                try:
                    await self._write(filename, payload)
                except PersistenceError as exc:
                    failed.append(filename)
                    self.logger.log("store.write_failed", file=filename, error=str(exc)[:300])
            return failed

    async def autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_sec)
            await self.flush()

    # ---- identity sets ----

    def add_member(self, collection: str, identity_id: object) -> bool:
        members = self._set(collection)
        key = _clean_id(identity_id)
        if key in members:
            return False
        members.add(key)
        return True

    def remove_member(self, collection: str, identity_id: object) -> bool:
        members = self._set(collection)
        key = _clean_id(identity_id)
        if key not in members:
            return False
        members.discard(key)
        return True

    def has_member(self, collection: str, identity_id: object) -> bool:
        return _clean_id(identity_id) in self._set(collection)

    def members(self, collection: str) -> set[str]:
        return set(self._set(collection))

    def _set(self, collection: str) -> set[str]:
        try:
            return self.sets[collection]
        except KeyError:
            raise KeyError(f"Unknown identity set: {collection}") from None

    # ---- leash relationships ----

    def set_dog(self, subordinate_id: object, executor_id: object, locked_name: str) -> LeashRelationship | None:
        subordinate = _clean_id(subordinate_id)
        executor = _clean_id(executor_id)
        if not subordinate or not executor:
            raise ValueError("Leash relationship needs both a subordinate and an executor.")
        previous = self.pop_dog(subordinate)
        self._put_dog(subordinate, LeashRelationship(executor_id=executor, locked_name=str(locked_name)))
        return previous

    def get_dog(self, subordinate_id: object) -> LeashRelationship | None:
        return self.dogs.get(_clean_id(subordinate_id))

    def pop_dog(self, subordinate_id: object) -> LeashRelationship | None:
        subordinate = _clean_id(subordinate_id)
        relationship = self.dogs.pop(subordinate, None)
        if relationship is None:
            return None
        owned = self._dogs_by_executor.get(relationship.executor_id)
        if owned is not None:
            owned.discard(subordinate)
            if not owned:
                del self._dogs_by_executor[relationship.executor_id]
        return relationship

    def dogs_for_executor(self, executor_id: object) -> list[str]:
        return sorted(self._dogs_by_executor.get(_clean_id(executor_id), set()))

    def _put_dog(self, subordinate: str, relationship: LeashRelationship) -> None:
        self.dogs[subordinate] = relationship
        self._dogs_by_executor.setdefault(relationship.executor_id, set()).add(subordinate)

    # ---- dormant maps ----

    def set_limit_role(self, role_id: object, limit: int) -> None:
        self.limit_roles[_clean_id(role_id)] = int(limit)

    def remove_limit_role(self, role_id: object) -> bool:
        return self.limit_roles.pop(_clean_id(role_id), None) is not None

    def set_cooldown(self, key: str, timestamp: float) -> None:
        self.cooldowns[str(key)] = float(timestamp)

    def get_cooldown(self, key: str) -> float | None:
        return self.cooldowns.get(str(key))

    # ---- private voice channels ----

    def claim_pv(self, channel_id: object, owner_id: object) -> PrivateVoiceChannel:
        owner = _clean_id(owner_id)
        key = _clean_id(channel_id)
        existing = self.pv_channels.get(key)
        allowed = set(existing.allowed) if existing is not None else set()
        allowed.add(owner)
        row = PrivateVoiceChannel(owner_id=owner, allowed=allowed)
        self.pv_channels[key] = row
        return row

    def get_pv(self, channel_id: object) -> PrivateVoiceChannel | None:
        return self.pv_channels.get(_clean_id(channel_id))

    def pv_allow(self, channel_id: object, identity_id: object) -> bool:
        row = self.get_pv(channel_id)
        if row is None:
            return False
        row.allowed.add(_clean_id(identity_id))
        return True

    def pv_deny(self, channel_id: object, identity_id: object) -> bool:
        row = self.get_pv(channel_id)
        key = _clean_id(identity_id)
        if row is None or key == row.owner_id or key not in row.allowed:
            return False
        row.allowed.discard(key)
        return True

    def release_pv(self, channel_id: object) -> bool:
        return self.pv_channels.pop(_clean_id(channel_id), None) is not None

    # ---- encoding ----

    def _snapshot(self) -> list[tuple[str, Any]]:
        out: list[tuple[str, Any]] = [(filename, sorted(self.sets[name])) for name, filename in SET_FILES.items()]
        out.append((DOGS_FILE, [[key, rel.to_json()] for key, rel in self.dogs.items()]))
        out.append((LIMIT_ROLES_FILE, [[key, value] for key, value in self.limit_roles.items()]))
        out.append((COOLDOWNS_FILE, dict(self.cooldowns)))
        out.append((PV_FILE, {key: row.to_json() for key, row in self.pv_channels.items()}))
        return out

    def _decode_set(self, filename: str, raw: Any) -> set[str]:
        if raw is None:
            return set()
        if not isinstance(raw, list):
            self._log_shape(filename, "array")
            return set()
        return {_clean_id(item) for item in raw if _is_id(item)}

    def _decode_dogs(self, raw: Any) -> dict[str, LeashRelationship]:
        out: dict[str, LeashRelationship] = {}
        if raw is None:
            return out
        if not isinstance(raw, list):
            self._log_shape(DOGS_FILE, "array of pairs")
            return out
        for entry in raw:
            if not isinstance(entry, list) or len(entry) != 2:
                continue
            key, value = entry
            if not _is_id(key) or not isinstance(value, dict) or not _is_id(value.get("executorId")):
                continue
            out[_clean_id(key)] = LeashRelationship(
                executor_id=_clean_id(value["executorId"]),
                locked_name=str(value.get("lockedName", "")),
            )
        return out

    def _decode_limit_roles(self, raw: Any) -> dict[str, int]:
        out: dict[str, int] = {}
        if raw is None:
            return out
        if not isinstance(raw, list):
            self._log_shape(LIMIT_ROLES_FILE, "array of pairs")
            return out
        for entry in raw:
            if not isinstance(entry, list) or len(entry) != 2 or not _is_id(entry[0]):
                continue
            try:
                out[_clean_id(entry[0])] = int(entry[1])
            except (TypeError, ValueError):
                continue
        return out

    def _decode_cooldowns(self, raw: Any) -> dict[str, float]:
        out: dict[str, float] = {}
        if raw is None:
            return out
        if not isinstance(raw, dict):
            self._log_shape(COOLDOWNS_FILE, "object")
            return out
        for key, value in raw.items():
            try:
                out[str(key)] = float(value)
            except (TypeError, ValueError):
                continue
        return out

    def _decode_pv(self, raw: Any) -> dict[str, PrivateVoiceChannel]:
        out: dict[str, PrivateVoiceChannel] = {}
        if raw is None:
            return out
        if not isinstance(raw, dict):
            self._log_shape(PV_FILE, "object")
            return out
        for key, value in raw.items():
            if not isinstance(value, dict) or not _is_id(value.get("ownerId")):
                continue
            allowed = value.get("allowed", [])
            if not isinstance(allowed, list):
                allowed = []
            out[_clean_id(key)] = PrivateVoiceChannel(
                owner_id=_clean_id(value["ownerId"]),
                allowed={_clean_id(item) for item in allowed if _is_id(item)},
            )
        return out

    def _log_shape(self, filename: str, expected: str) -> None:
        self.logger.log("store.read_failed", file=filename, error=f"expected {expected}")

    # ---- file io ----

    async def _read_or_none(self, filename: str) -> Any:
        try:
            return await self._read(filename)
        except PersistenceError as exc:
            self.logger.log("store.read_failed", file=filename, error=str(exc)[:300])
            return None

    async def _read(self, filename: str) -> Any:
        path = self.data_dir / filename
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                raw = await f.read()
            return json.loads(raw)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"{filename}: {exc}") from exc

    async def _write(self, filename: str, payload: Any) -> None:
        path = self.data_dir / filename
        tmp = path.with_name(path.name + ".tmp")
        try:
            async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
                await f.write(json.dumps(payload, indent=2, ensure_ascii=False))
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as exc:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise PersistenceError(f"{filename}: {exc}") from exc


def _is_id(value: object) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and bool(value.strip())


def _clean_id(value: object) -> str:
    return str(value).strip()
