from __future__ import annotations

import discord

from kennel_v1.services.authority_service import AuthorityService
from kennel_v1.services.logger_service import LoggerService
from kennel_v1.storage import PrivateVoiceChannel, SnapshotStore
from kennel_v1.utils.discord_utils import GuildPlatform


class PrivateVoiceService:
    """Voice channels with a bot-side allow-list, independent of channel overwrites."""

    def __init__(self, store: SnapshotStore, authority: AuthorityService, logger: LoggerService) -> None:
        self.store = store
        self.authority = authority
        self.logger = logger

    def claim(self, channel_id: object, owner_id: object) -> PrivateVoiceChannel:
        row = self.store.claim_pv(channel_id, owner_id)
        self.logger.log("pv.claimed", channel_id=str(channel_id), owner_id=str(owner_id))
        return row

    def can_manage(self, member: discord.Member, channel_id: object) -> bool:
        row = self.store.get_pv(channel_id)
        if row is None:
            return False
        if row.owner_id == str(member.id):
            return True
        return self.authority.is_owner(member.id) or self.authority.is_admin(member)

    def may_join(self, member: discord.Member, channel_id: object, platform: GuildPlatform | None = None) -> bool:
        row = self.store.get_pv(channel_id)
        if row is None:
            return True
        uid = str(member.id)
        if self._listed(row, uid) or self.authority.is_admin(member):
            return True
        # A leashed subordinate is admitted wherever its executor is admitted.
        relationship = self.store.get_dog(uid)
        if relationship is None or relationship.executor_id == uid:
            return False
        executor_id = relationship.executor_id
        if self._listed(row, executor_id) or self.store.has_member("admin_users", executor_id):
            return True
        return platform is not None and platform.has_administrator_permission(executor_id)

    def _listed(self, row: PrivateVoiceChannel, identity_id: str) -> bool:
        return identity_id == row.owner_id or identity_id in row.allowed or self.authority.is_owner(identity_id)

    async def on_voice_state_update(self, platform: GuildPlatform, member: discord.Member, new_location: str | None) -> bool:
        if new_location is None or self.may_join(member, new_location, platform):
            return False
        kicked = await platform.set_voice_location(str(member.id), None)
        self.logger.log("pv.intruder_disconnected", channel_id=new_location, member_id=str(member.id), kicked=kicked)
        return True
