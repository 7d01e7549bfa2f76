from __future__ import annotations

import asyncio
from dataclasses import dataclass

from kennel_v1.services.logger_service import LoggerService
from kennel_v1.storage import LeashRelationship, SnapshotStore
from kennel_v1.utils.discord_utils import GuildPlatform

NICKNAME_MAX_LEN = 32


@dataclass
class LeashResult:
    relationship: LeashRelationship
    previous: LeashRelationship | None
    nickname_applied: bool


class DogService:
    """
    Leash relationships: a subordinate's voice location follows its executor's.

    Enforcement is reactive. Each voice-state event re-asserts every relationship the
    moving member takes part in, and a rejected relocation is left for the next event.
    """

    def __init__(self, store: SnapshotStore, logger: LoggerService) -> None:
        self.store = store
        self.logger = logger
        self._mutation_lock = asyncio.Lock()

    @staticmethod
    def locked_name_for(target_name: str, executor_name: str) -> str:
        return f"{target_name} ( 🐶 {executor_name} )"

    async def leash(self, platform: GuildPlatform, executor_id: object, target_id: object) -> LeashResult:
        executor = str(executor_id)
        target = str(target_id)
        if executor == target:
            raise ValueError("A member cannot be leashed to themselves.")
        async with self._mutation_lock:
            previous = self.store.get_dog(target)
            # A re-leash would otherwise stack the old suffix onto the new nickname.
            if previous is not None:
                base_name = platform.account_name(target)
            else:
                base_name = platform.display_name(target)
            locked_name = self.locked_name_for(base_name, platform.display_name(executor))
            previous_nick = platform.get_display_name_override(target)
            # Discord caps nicknames; the relationship keeps the full text.
            applied = await platform.set_display_name_override(target, locked_name[:NICKNAME_MAX_LEN])
            try:
                replaced = self.store.set_dog(target, executor, locked_name)
            except ValueError:
                if applied:
                    await platform.set_display_name_override(target, previous_nick)
                self.logger.log("dog.leash_rolled_back", target_id=target, executor_id=executor)
                raise
            relationship = LeashRelationship(executor_id=executor, locked_name=locked_name)
            self.logger.log(
                "dog.leashed",
                target_id=target,
                executor_id=executor,
                replaced_executor_id=replaced.executor_id if replaced else None,
                nickname_applied=applied,
            )
            return LeashResult(relationship=relationship, previous=replaced, nickname_applied=applied)

    async def release(self, platform: GuildPlatform, target_id: object) -> LeashRelationship | None:
        target = str(target_id)
        async with self._mutation_lock:
            relationship = self.store.pop_dog(target)
            if relationship is None:
                return None
            cleared = await platform.set_display_name_override(target, None)
            self.logger.log(
                "dog.released",
                target_id=target,
                executor_id=relationship.executor_id,
                nickname_cleared=cleared,
            )
            return relationship

    def corrective_moves(self, platform: GuildPlatform, member_id: str, new_location: str | None) -> list[tuple[str, str]]:
        moves: list[tuple[str, str]] = []
        # The mover as executor: every subordinate follows into the new location.
        if new_location is not None:
            for subordinate in self.store.dogs_for_executor(member_id):
                if subordinate == member_id:
                    continue
                if platform.get_voice_location(subordinate) == new_location:
                    continue
                moves.append((subordinate, new_location))
        # The mover as subordinate: pulled back to wherever its executor sits.
        relationship = self.store.get_dog(member_id)
        if relationship is not None and relationship.executor_id != member_id:
            executor_location = platform.get_voice_location(relationship.executor_id)
            if executor_location is not None and executor_location != new_location:
                moves.append((member_id, executor_location))
        return moves

    async def on_voice_state_update(
        self,
        platform: GuildPlatform,
        member_id: object,
        new_location: str | None,
    ) -> list[tuple[str, str]]:
        moves = self.corrective_moves(platform, str(member_id), new_location)
        for subordinate, location in moves:
            moved = await platform.set_voice_location(subordinate, location)
            self.logger.log(
                "dog.relocated" if moved else "dog.relocate_failed",
                target_id=subordinate,
                location=location,
                trigger_id=str(member_id),
            )
        return moves
