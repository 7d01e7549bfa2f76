from __future__ import annotations

import discord

from kennel_v1.services.logger_service import LoggerService


async def get_bot_member(bot: discord.Client, guild: discord.Guild) -> discord.Member | None:
    """
    Resolve the bot's Member object for a guild.

    `guild.me` can be None depending on cache state/intents; this helper tries cache
    and then falls back to an API fetch.
    """

    me = guild.me
    if me is not None:
        return me
    if bot.user is None:
        return None
    cached = guild.get_member(bot.user.id)
    if cached is not None:
        return cached
    try:
        return await guild.fetch_member(bot.user.id)
    except (discord.Forbidden, discord.HTTPException):
        return None


def simple_embed(title: str, description: str, color: int) -> discord.Embed:
    return discord.Embed(title=title, description=description, color=color)


class GuildPlatform:
    """
    Voice and nickname operations against one guild, keyed by opaque string IDs.

    Mutations never raise: a rejected call is logged as `platform.<op>_failed`
    and reported as False.
    """

    def __init__(self, guild: discord.Guild, logger: LoggerService) -> None:
        self.guild = guild
        self.logger = logger

    def member(self, member_id: str) -> discord.Member | None:
        try:
            return self.guild.get_member(int(member_id))
        except (TypeError, ValueError):
            return None

    def get_voice_location(self, member_id: str) -> str | None:
        member = self.member(member_id)
        if member is None or member.voice is None or member.voice.channel is None:
            return None
        return str(member.voice.channel.id)

    def voice_location_ids(self) -> list[str]:
        return [str(channel.id) for channel in self.guild.voice_channels]

    def display_name(self, member_id: str) -> str:
        member = self.member(member_id)
        return member.display_name if member is not None else str(member_id)

    def account_name(self, member_id: str) -> str:
        member = self.member(member_id)
        if member is None:
            return str(member_id)
        return member.global_name or member.name

    def get_display_name_override(self, member_id: str) -> str | None:
        member = self.member(member_id)
        return member.nick if member is not None else None

    def has_administrator_permission(self, member_id: str) -> bool:
        member = self.member(member_id)
        return bool(member is not None and member.guild_permissions.administrator)

    async def set_voice_location(self, member_id: str, location: str | None) -> bool:
        member = self.member(member_id)
        if member is None:
            self._failed("set_voice_location", member_id, "member not found", location=location)
            return False
        channel = None
        if location is not None:
            channel = self.guild.get_channel(int(location))
            if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
                self._failed("set_voice_location", member_id, "voice channel not found", location=location)
                return False
        try:
            await member.move_to(channel, reason="kennel voice relocation")
        except discord.HTTPException as exc:
            self._failed("set_voice_location", member_id, str(exc), location=location)
            return False
        return True

    async def set_display_name_override(self, member_id: str, name: str | None) -> bool:
        member = self.member(member_id)
        if member is None:
            self._failed("set_display_name_override", member_id, "member not found")
            return False
        try:
            await member.edit(nick=name)
        except discord.HTTPException as exc:
            self._failed("set_display_name_override", member_id, str(exc))
            return False
        return True

    def _failed(self, operation: str, member_id: str, error: str, **data: object) -> None:
        self.logger.log(
            f"platform.{operation}_failed",
            guild_id=self.guild.id,
            member_id=str(member_id),
            error=error[:300],
            **data,
        )
