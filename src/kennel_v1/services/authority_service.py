from __future__ import annotations

import discord

from kennel_v1.config import Settings
from kennel_v1.storage import SnapshotStore


class AuthorityService:
    """Owner, whitelist and admin predicates. Always reads the live store, never caches."""

    def __init__(self, settings: Settings, store: SnapshotStore) -> None:
        self.settings = settings
        self.store = store

    def is_owner(self, user_id: object) -> bool:
        return str(user_id) == self.settings.owner_id

    def is_whitelisted(self, user_id: object) -> bool:
        return self.store.has_member("whitelist", user_id) or self.is_owner(user_id)

    def is_admin(self, member: discord.Member | None) -> bool:
        # No member context (member left) means no live role state to consult.
        if member is None:
            return False
        permissions = getattr(member, "guild_permissions", None)
        if permissions is not None and bool(getattr(permissions, "administrator", False)):
            return True
        return self.store.has_member("admin_users", member.id)

    def is_blacklisted(self, user_id: object) -> bool:
        return self.store.has_member("blacklist", user_id) and not self.is_owner(user_id)
