from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import discord
from discord.ext import commands

from kennel_v1.config import Settings
from kennel_v1.services.authority_service import AuthorityService
from kennel_v1.services.dog_service import DogService
from kennel_v1.services.keepalive_service import KeepaliveService
from kennel_v1.services.logger_service import LoggerService
from kennel_v1.services.moderation_service import CLEAR_MAX, ModerationService
from kennel_v1.services.private_voice_service import PrivateVoiceService
from kennel_v1.services.snipe_service import SnipeService
from kennel_v1.storage import SnapshotStore
from kennel_v1.utils.discord_utils import GuildPlatform, get_bot_member, simple_embed


DENIED_TITLE = "Accès refusé"
DENIED_TEXT = "Tu n'as pas la permission."
SNAP_TEXT = "Donne ton snap !"
LOG_CHANNEL_NAMES: dict[str, str] = {
    "messages": "messages-logs",
    "roles": "role-logs",
    "boosts": "boost-logs",
    "commands": "commande-logs",
}


class KennelBot(commands.Bot):
    def __init__(self, settings: Settings) -> None:
        intents = discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.messages = True
        intents.message_content = True
        intents.voice_states = True
        super().__init__(
            command_prefix=settings.command_prefix,
            intents=intents,
            help_command=None,
            case_insensitive=True,
            strip_after_prefix=True,
        )
        self.settings = settings
        self.logger = LoggerService()
        self.store = SnapshotStore(settings.data_dir, self.logger, settings.flush_interval_sec)
        self.authority = AuthorityService(settings, self.store)
        self.dogs = DogService(self.store, self.logger)
        self.moderation = ModerationService(self.logger)
        self.private_voice = PrivateVoiceService(self.store, self.authority, self.logger)
        self.snipes = SnipeService()
        self.keepalive = KeepaliveService(settings.keepalive_port, settings.keepalive_body, self.logger)
        self.started_at = datetime.now(tz=timezone.utc)
        self._autosave_task: asyncio.Task | None = None
        self._store_loaded = False
        self._ready_once = False
        self.logger.subscribe(self._on_log_row)
        self._register_commands()

    async def setup_hook(self) -> None:
        await self.store.load()
        self._store_loaded = True
        self._autosave_task = asyncio.create_task(self.store.autosave_loop(), name="snapshot-autosave")
        await self.keepalive.start()

    async def close(self) -> None:
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            self._autosave_task = None
        # Never overwrite the snapshots with empty state from a run that failed before loading.
        if self._store_loaded:
            await self.store.flush()
        await self.keepalive.stop()
        await super().close()

    # ---- helpers ----

    def _platform(self, guild: discord.Guild) -> GuildPlatform:
        return GuildPlatform(guild, self.logger)

    def _embed(self, title: str, description: str = "") -> discord.Embed:
        return simple_embed(title, description, self.settings.embed_color)

    def _log_command(self, ctx: commands.Context, name: str, **data: object) -> None:
        self.logger.log(
            f"command.{name}",
            guild_id=ctx.guild.id if ctx.guild else 0,
            actor_id=ctx.author.id,
            **data,
        )

    async def _send_denied(self, ctx: commands.Context) -> None:
        try:
            await ctx.send(embed=self._embed(DENIED_TITLE, DENIED_TEXT))
        except discord.HTTPException as exc:
            self.logger.log("platform.send_failed", channel_id=ctx.channel.id, error=str(exc)[:300])

    async def _require_admin(self, ctx: commands.Context) -> bool:
        if self.authority.is_admin(ctx.author):
            return True
        self._log_command(ctx, "denied", command=ctx.command.name if ctx.command else "unknown")
        await self._send_denied(ctx)
        return False

    @staticmethod
    def _first_mention(ctx: commands.Context) -> discord.abc.User | None:
        mentions = list(getattr(ctx.message, "mentions", None) or [])
        return mentions[0] if mentions else None

    async def _resolve_user(self, ctx: commands.Context, user_ref: str | None) -> discord.abc.User | None:
        mention = self._first_mention(ctx)
        if mention is not None:
            return mention
        if not user_ref:
            return ctx.author
        try:
            return await self.fetch_user(int(user_ref))
        except (ValueError, discord.HTTPException):
            return None

    @staticmethod
    def _author_voice_channel(ctx: commands.Context) -> discord.abc.GuildChannel | None:
        voice = getattr(ctx.author, "voice", None)
        return voice.channel if voice is not None else None

    # ---- commands ----

    def _register_commands(self) -> None:
        prefix = self.settings.command_prefix

        @self.command(name="ping")
        async def ping(ctx: commands.Context) -> None:
            await ctx.reply("ta cru j'étais off btrd?")

        @self.command(name="help")
        async def help_cmd(ctx: commands.Context) -> None:
            embed = self._embed("Liste des commandes", f"Préfixe: `{prefix}`")
            embed.add_field(
                name="Admin",
                value="`clear`, `serverpic`, `dog`, `wakeup`, `snap`, `bl`, `unbl`, `lock`, `unlock`",
                inline=False,
            )
            embed.add_field(name="Fun/Util", value="`pic`, `banner`, `snipe`, `undog`, `pv`", inline=False)
            embed.add_field(name="Owner", value="`wl`, `unwl`, `admin`, `unadmin`, `dmall`", inline=False)
            await ctx.send(embed=embed)

        @self.command(name="pic")
        async def pic(ctx: commands.Context, user_ref: str | None = None) -> None:
            target = await self._resolve_user(ctx, user_ref)
            if target is None:
                await ctx.reply("Utilisateur introuvable.")
                return
            embed = self._embed(f"Avatar de {target}")
            embed.set_image(url=target.display_avatar.with_size(1024).url)
            await ctx.send(embed=embed)

        @self.command(name="banner")
        async def banner(ctx: commands.Context, user_ref: str | None = None) -> None:
            target = await self._resolve_user(ctx, user_ref)
            if target is None:
                await ctx.reply("Utilisateur introuvable.")
                return
            try:
                fetched = await self.fetch_user(target.id)
            except discord.HTTPException:
                await ctx.reply("Utilisateur introuvable.")
                return
            if fetched.banner is None:
                await ctx.reply("Pas de bannière.")
                return
            embed = self._embed(f"Bannière de {target}")
            embed.set_image(url=fetched.banner.with_size(1024).url)
            await ctx.send(embed=embed)

        @self.command(name="serverpic")
        async def serverpic(ctx: commands.Context) -> None:
            if not await self._require_admin(ctx):
                return
            if ctx.guild.icon is None:
                await ctx.reply("Ce serveur n'a pas d'icône.")
                return
            embed = self._embed(ctx.guild.name)
            embed.set_image(url=ctx.guild.icon.with_size(1024).url)
            await ctx.send(embed=embed)

        @self.command(name="clear")
        async def clear(ctx: commands.Context, amount: str | None = None) -> None:
            if not await self._require_admin(ctx):
                return
            target = self._first_mention(ctx)
            if target is not None:
                deleted = await self.moderation.clear(ctx.channel, CLEAR_MAX, target_id=target.id)
                self._log_command(ctx, "clear", target_id=target.id, deleted=deleted)
                await ctx.send(f"Nettoyage des messages de {target} terminé.")
                return
            count = _parse_count(amount, CLEAR_MAX)
            deleted = await self.moderation.clear(ctx.channel, count)
            self._log_command(ctx, "clear", requested=count, deleted=deleted)
            await ctx.send(f"Supprimé {deleted} messages.", delete_after=3)

        @self.command(name="dog")
        async def dog(ctx: commands.Context) -> None:
            if not await self._require_admin(ctx):
                return
            target = self._first_mention(ctx)
            if target is None:
                await ctx.reply("Mentionne un membre.")
                return
            if target.id == ctx.author.id:
                await ctx.reply("Tu ne peux pas te mettre toi-même en laisse.")
                return
            result = await self.dogs.leash(self._platform(ctx.guild), ctx.author.id, target.id)
            self._log_command(
                ctx,
                "dog",
                target_id=target.id,
                nickname_applied=result.nickname_applied,
                replaced_executor_id=result.previous.executor_id if result.previous else None,
            )
            await ctx.send(f"{target.mention} est maintenant en laisse.")

        @self.command(name="undog")
        async def undog(ctx: commands.Context) -> None:
            target = self._first_mention(ctx)
            relationship = self.store.get_dog(target.id) if target is not None else None
            if target is None or relationship is None:
                await ctx.reply("Cible invalide.")
                return
            allowed = (
                relationship.executor_id == str(ctx.author.id)
                or self.authority.is_owner(ctx.author.id)
                or self.authority.is_admin(ctx.author)
            )
            if not allowed:
                self._log_command(ctx, "denied", command="undog")
                await self._send_denied(ctx)
                return
            released = await self.dogs.release(self._platform(ctx.guild), target.id)
            if released is None:
                await ctx.reply("Cible invalide.")
                return
            self._log_command(ctx, "undog", target_id=target.id)
            await ctx.send(f"{target.mention} est libre.")

        @self.command(name="wakeup")
        async def wakeup(ctx: commands.Context) -> None:
            if not await self._require_admin(ctx):
                return
            target = self._first_mention(ctx)
            platform = self._platform(ctx.guild)
            if target is None or platform.get_voice_location(str(target.id)) is None:
                await ctx.reply("Cible non connectée en vocal.")
                return
            moved = await self.moderation.wakeup(platform, str(target.id))
            self._log_command(ctx, "wakeup", target_id=target.id, moved=moved)
            await ctx.send(f"Réveil de {target.mention} terminé.")

        @self.command(name="snap")
        async def snap(ctx: commands.Context) -> None:
            if not await self._require_admin(ctx):
                return
            target = self._first_mention(ctx)
            if target is None:
                await ctx.reply("Mentionne quelqu'un.")
                return
            sent = await self.moderation.send_repeated(target, SNAP_TEXT)
            self._log_command(ctx, "snap", target_id=target.id, sent=sent)
            await ctx.send("Demandes envoyées.")

        @self.command(name="snipe")
        async def snipe(ctx: commands.Context) -> None:
            entry = self.snipes.get(ctx.channel.id)
            if entry is None:
                await ctx.reply("Aucun message supprimé récemment.")
                return
            embed = self._embed(f"Snipe: {entry.author_name}", entry.content or "*(vide)*")
            embed.timestamp = datetime.fromtimestamp(entry.timestamp, tz=timezone.utc)
            await ctx.send(embed=embed)

        @self.command(name="wl")
        async def wl(ctx: commands.Context) -> None:
            if not self.authority.is_owner(ctx.author.id):
                return
            target = self._first_mention(ctx)
            if target is None:
                return
            added = self.store.add_member("whitelist", target.id)
            failed = await self.store.flush()
            self._log_command(ctx, "wl", target_id=target.id, added=added, flush_failed=failed)
            await ctx.reply(f"{target} est WL.")

        @self.command(name="unwl")
        async def unwl(ctx: commands.Context) -> None:
            if not self.authority.is_owner(ctx.author.id):
                return
            target = self._first_mention(ctx)
            if target is None:
                return
            removed = self.store.remove_member("whitelist", target.id)
            failed = await self.store.flush()
            self._log_command(ctx, "unwl", target_id=target.id, removed=removed, flush_failed=failed)
            await ctx.reply(f"{target} n'est plus WL.")

        @self.command(name="admin")
        async def admin(ctx: commands.Context) -> None:
            if not self.authority.is_owner(ctx.author.id):
                return
            target = self._first_mention(ctx)
            if target is None:
                return
            added = self.store.add_member("admin_users", target.id)
            self._log_command(ctx, "admin", target_id=target.id, added=added)
            await ctx.reply(f"{target} est admin du bot.")

        @self.command(name="unadmin")
        async def unadmin(ctx: commands.Context) -> None:
            if not self.authority.is_owner(ctx.author.id):
                return
            target = self._first_mention(ctx)
            if target is None:
                return
            removed = self.store.remove_member("admin_users", target.id)
            self._log_command(ctx, "unadmin", target_id=target.id, removed=removed)
            await ctx.reply(f"{target} n'est plus admin du bot.")

        @self.command(name="bl")
        async def bl(ctx: commands.Context) -> None:
            if not await self._require_admin(ctx):
                return
            target = self._first_mention(ctx)
            if target is None:
                await ctx.reply("Mentionne quelqu'un.")
                return
            if self.authority.is_owner(target.id) or target.id == ctx.author.id:
                await ctx.reply("Cible invalide.")
                return
            added = self.store.add_member("blacklist", target.id)
            self._log_command(ctx, "bl", target_id=target.id, added=added)
            await ctx.send(f"{target} est blacklist.")

        @self.command(name="unbl")
        async def unbl(ctx: commands.Context) -> None:
            if not await self._require_admin(ctx):
                return
            target = self._first_mention(ctx)
            if target is None:
                await ctx.reply("Mentionne quelqu'un.")
                return
            removed = self.store.remove_member("blacklist", target.id)
            self._log_command(ctx, "unbl", target_id=target.id, removed=removed)
            await ctx.send(f"{target} n'est plus blacklist.")

        @self.command(name="lock")
        async def lock(ctx: commands.Context) -> None:
            if not await self._require_admin(ctx):
                return
            if not await self._set_send_messages(ctx, False):
                await ctx.reply("Impossible de verrouiller ce salon.")
                return
            self.store.add_member("locked_text_channels", ctx.channel.id)
            self._log_command(ctx, "lock", channel_id=ctx.channel.id)
            await ctx.send("🔒 Salon verrouillé.")

        @self.command(name="unlock")
        async def unlock(ctx: commands.Context) -> None:
            if not await self._require_admin(ctx):
                return
            if not await self._set_send_messages(ctx, None):
                await ctx.reply("Impossible de déverrouiller ce salon.")
                return
            self.store.remove_member("locked_text_channels", ctx.channel.id)
            self._log_command(ctx, "unlock", channel_id=ctx.channel.id)
            await ctx.send("🔓 Salon déverrouillé.")

        @self.group(name="pv", invoke_without_command=True, case_insensitive=True)
        async def pv(ctx: commands.Context) -> None:
            if not (self.authority.is_whitelisted(ctx.author.id) or self.authority.is_admin(ctx.author)):
                await self._send_denied(ctx)
                return
            channel = self._author_voice_channel(ctx)
            if channel is None:
                await ctx.reply("Rejoins un salon vocal d'abord.")
                return
            existing = self.store.get_pv(channel.id)
            if existing is not None:
                if existing.owner_id == str(ctx.author.id):
                    await ctx.reply("Ce salon est déjà privé.")
                else:
                    await ctx.reply("Ce salon appartient déjà à quelqu'un.")
                return
            self.private_voice.claim(channel.id, ctx.author.id)
            self._log_command(ctx, "pv", channel_id=channel.id)
            await ctx.send(f"🔐 {channel.name} est maintenant privé.")

        @pv.command(name="add")
        async def pv_add(ctx: commands.Context) -> None:
            channel = self._author_voice_channel(ctx)
            if channel is None or not self.private_voice.can_manage(ctx.author, channel.id):
                await self._send_denied(ctx)
                return
            target = self._first_mention(ctx)
            if target is None:
                await ctx.reply("Mentionne quelqu'un.")
                return
            self.store.pv_allow(channel.id, target.id)
            self._log_command(ctx, "pv_add", channel_id=channel.id, target_id=target.id)
            await ctx.send(f"{target} peut rejoindre {channel.name}.")

        @pv.command(name="remove")
        async def pv_remove(ctx: commands.Context) -> None:
            channel = self._author_voice_channel(ctx)
            if channel is None or not self.private_voice.can_manage(ctx.author, channel.id):
                await self._send_denied(ctx)
                return
            target = self._first_mention(ctx)
            if target is None:
                await ctx.reply("Mentionne quelqu'un.")
                return
            if not self.store.pv_deny(channel.id, target.id):
                await ctx.reply("Cible invalide.")
                return
            platform = self._platform(ctx.guild)
            if platform.get_voice_location(str(target.id)) == str(channel.id):
                await platform.set_voice_location(str(target.id), None)
            self._log_command(ctx, "pv_remove", channel_id=channel.id, target_id=target.id)
            await ctx.send(f"{target} ne peut plus rejoindre {channel.name}.")

        @pv.command(name="off")
        async def pv_off(ctx: commands.Context) -> None:
            channel = self._author_voice_channel(ctx)
            if channel is None or not self.private_voice.can_manage(ctx.author, channel.id):
                await self._send_denied(ctx)
                return
            self.store.release_pv(channel.id)
            self._log_command(ctx, "pv_off", channel_id=channel.id)
            await ctx.send(f"🔓 {channel.name} est de nouveau public.")

        @self.command(name="dmall")
        async def dmall(ctx: commands.Context, *, text: str = "") -> None:
            if not self.authority.is_owner(ctx.author.id):
                return
            if not text.strip():
                await ctx.reply("Texte vide.")
                return
            try:
                members = [member async for member in ctx.guild.fetch_members(limit=None)]
            except discord.HTTPException as exc:
                self.logger.log("platform.fetch_members_failed", guild_id=ctx.guild.id, error=str(exc)[:300])
                members = list(ctx.guild.members)
            sent = await self.moderation.dm_all(members, text)
            self._log_command(ctx, "dmall", sent=sent)
            await ctx.reply("DM envoyé à tout le serveur.")

    async def _set_send_messages(self, ctx: commands.Context, value: bool | None) -> bool:
        role = ctx.guild.default_role
        overwrite = ctx.channel.overwrites_for(role)
        overwrite.send_messages = value
        try:
            await ctx.channel.set_permissions(role, overwrite=overwrite, reason=f"lock toggled by {ctx.author.id}")
        except discord.HTTPException as exc:
            self.logger.log("platform.set_permissions_failed", channel_id=ctx.channel.id, error=str(exc)[:300])
            return False
        return True

    # ---- events ----

    async def on_ready(self) -> None:
        if self._ready_once:
            return
        self._ready_once = True
        self.logger.log("bot.ready", user_id=self.user.id if self.user else None, guilds=len(self.guilds))
        for guild in self.guilds:
            await self._ensure_log_channels(guild)
        try:
            await self.change_presence(activity=discord.Game(name=f"{self.settings.command_prefix}help"))
        except discord.HTTPException:
            self.logger.log("bot.presence_failed")
        print(f"Connected as {self.user} ({self.user.id if self.user else '?'})")

    async def on_guild_join(self, guild: discord.Guild) -> None:
        self.logger.log("guild.joined", guild_id=guild.id, guild_name=guild.name)
        await self._ensure_log_channels(guild)

    async def on_command_error(self, ctx: commands.Context, exception: Exception) -> None:
        # Unknown commands and failed guards stay silent.
        if isinstance(exception, (commands.CommandNotFound, commands.CheckFailure)):
            return
        self.logger.log("command.error", error=str(exception)[:300], command=ctx.command.name if ctx.command else "unknown")

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or message.guild is None:
            return
        if not message.content.startswith(self.settings.command_prefix):
            return
        if self.authority.is_blacklisted(message.author.id):
            self.logger.log("command.ignored_blacklisted", guild_id=message.guild.id, actor_id=message.author.id)
            return
        await self.process_commands(message)

    async def on_message_delete(self, message: discord.Message) -> None:
        if message.author is None or message.author.bot or message.guild is None:
            return
        self.snipes.record(message.channel.id, message.content, message.author.id, str(message.author))
        self.logger.log(
            "message.deleted",
            guild_id=message.guild.id,
            channel_id=message.channel.id,
            author_id=message.author.id,
            content=message.content[:300],
        )

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        new_location = str(after.channel.id) if after.channel is not None else None
        platform = self._platform(member.guild)
        await self.dogs.on_voice_state_update(platform, member.id, new_location)
        await self.private_voice.on_voice_state_update(platform, member, new_location)

    # ---- log channels ----

    async def _ensure_log_channels(self, guild: discord.Guild) -> dict[str, discord.TextChannel | None]:
        me = await get_bot_member(self, guild)
        can_create = bool(me is not None and me.guild_permissions.manage_channels)
        out: dict[str, discord.TextChannel | None] = {}
        for key, name in LOG_CHANNEL_NAMES.items():
            channel = discord.utils.get(guild.text_channels, name=name)
            if channel is None and can_create:
                try:
                    channel = await guild.create_text_channel(name, reason="Kennel log channel")
                except discord.HTTPException as exc:
                    self.logger.log("platform.create_channel_failed", guild_id=guild.id, name=name, error=str(exc)[:300])
                    channel = None
            out[key] = channel
        return out

    def _on_log_row(self, row: dict[str, object]) -> None:
        event = str(row.get("event", ""))
        if event.startswith("command."):
            channel_name = LOG_CHANNEL_NAMES["commands"]
        elif event == "message.deleted":
            channel_name = LOG_CHANNEL_NAMES["messages"]
        else:
            return
        if not self._ready_once:
            return
        data = row.get("data", {})
        guild_id = data.get("guild_id", 0) if isinstance(data, dict) else 0
        if not guild_id:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(self._dispatch_log_row(int(guild_id), channel_name, row))

    async def _dispatch_log_row(self, guild_id: int, channel_name: str, row: dict[str, object]) -> None:
        guild = self.get_guild(guild_id)
        if guild is None:
            return
        channel = discord.utils.get(guild.text_channels, name=channel_name)
        if channel is None:
            return
        try:
            await channel.send(self._format_log_payload(row))
        except discord.HTTPException:
            pass

    def _format_log_payload(self, row: dict[str, object]) -> str:
        ts = str(row.get("ts", ""))
        event = str(row.get("event", "unknown"))
        data = row.get("data", {})
        if isinstance(data, dict):
            compact = json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)
        else:
            compact = str(data)
        message = f"[{ts}] {event} {compact}"
        if len(message) > 1900:
            message = message[:1900]
        return message


def _parse_count(raw: str | None, default: int) -> int:
    try:
        value = int(raw) if raw is not None else 0
    except ValueError:
        return default
    return value if value > 0 else default


def main() -> None:
    settings = Settings.load()
    bot = KennelBot(settings)
    bot.run(settings.discord_token)
