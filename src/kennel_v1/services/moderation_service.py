from __future__ import annotations

import asyncio
import random
from typing import Iterable

import discord

from kennel_v1.services.logger_service import LoggerService
from kennel_v1.utils.discord_utils import GuildPlatform

CLEAR_MAX = 100
WAKEUP_MOVES = 10
SNAP_MESSAGES = 5
STEP_DELAY_SEC = 0.5


class ModerationService:
    """Bulk and repeated platform operations. One failed step never stops the loop."""

    def __init__(self, logger: LoggerService, *, step_delay_sec: float = STEP_DELAY_SEC, rng: random.Random | None = None) -> None:
        self.logger = logger
        self.step_delay_sec = step_delay_sec
        self._rng = rng or random.Random()

    async def clear(self, channel: discord.TextChannel, amount: int, target_id: int | None = None) -> int:
        try:
            if target_id is not None:
                deleted = await channel.purge(limit=CLEAR_MAX, check=lambda m: m.author.id == target_id)
            else:
                deleted = await channel.purge(limit=max(1, min(amount, CLEAR_MAX)))
        except discord.HTTPException as exc:
            self.logger.log("platform.purge_failed", channel_id=channel.id, error=str(exc)[:300])
            return 0
        return len(deleted)

    async def wakeup(self, platform: GuildPlatform, member_id: str, repetitions: int = WAKEUP_MOVES) -> int:
        locations = platform.voice_location_ids()
        if not locations:
            return 0
        moved = 0
        for _ in range(repetitions):
            if await platform.set_voice_location(member_id, self._rng.choice(locations)):
                moved += 1
            await asyncio.sleep(self.step_delay_sec)
        self.logger.log("moderation.wakeup", member_id=member_id, moved=moved, attempts=repetitions)
        return moved

    async def send_repeated(self, user: discord.abc.User, text: str, repetitions: int = SNAP_MESSAGES) -> int:
        sent = 0
        for _ in range(repetitions):
            if await self._send_dm(user, text):
                sent += 1
            await asyncio.sleep(self.step_delay_sec)
        return sent

    async def dm_all(self, members: Iterable[discord.Member], text: str) -> int:
        sent = 0
        for member in members:
            if member.bot:
                continue
            if await self._send_dm(member, text):
                sent += 1
            await asyncio.sleep(self.step_delay_sec)
        self.logger.log("moderation.dm_all", sent=sent)
        return sent

    async def _send_dm(self, user: discord.abc.User, text: str) -> bool:
        try:
            await user.send(text)
        except discord.HTTPException as exc:
            self.logger.log("platform.send_dm_failed", user_id=user.id, error=str(exc)[:300])
            return False
        return True
