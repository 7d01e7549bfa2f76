from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

import discord

from kennel_v1.bot import DENIED_TITLE, KennelBot
from kennel_v1.storage import SnapshotStore
from kennel_v1.services.logger_service import LoggerService

from stubs import OWNER_ID, FakePlatform, make_member, make_settings


class StubChannel:
    def __init__(self, cid: int = 55) -> None:
        self.id = cid
        self.purge_calls: list[dict] = []
        self.overwrites: dict[object, discord.PermissionOverwrite] = {}

    async def purge(self, **kwargs):
        self.purge_calls.append(kwargs)
        return []

    def overwrites_for(self, target) -> discord.PermissionOverwrite:
        return self.overwrites.get(target, discord.PermissionOverwrite())

    async def set_permissions(self, target, *, overwrite, reason=None) -> None:
        self.overwrites[target] = overwrite


class StubContext:
    def __init__(self, author, *, mentions=(), command_name: str = "cmd") -> None:
        self.author = author
        self.guild = SimpleNamespace(id=1, name="guild", default_role="everyone")
        self.channel = StubChannel()
        self.message = SimpleNamespace(mentions=list(mentions))
        self.command = SimpleNamespace(name=command_name)
        self.sent: list[tuple[str | None, dict]] = []
        self.replies: list[str | None] = []

    async def send(self, content=None, **kwargs) -> None:
        self.sent.append((content, kwargs))

    async def reply(self, content=None, **kwargs) -> None:
        self.replies.append(content)


def _make_bot(tmp_path: Path) -> KennelBot:
    bot = KennelBot(make_settings(tmp_path))
    asyncio.run(bot.store.load())
    return bot


def _run(bot: KennelBot, name: str, ctx: StubContext, *args, **kwargs) -> None:
    command = bot.get_command(name)
    assert command is not None
    asyncio.run(command.callback(ctx, *args, **kwargs))


def _was_denied(ctx: StubContext) -> bool:
    return any(kwargs.get("embed") is not None and kwargs["embed"].title == DENIED_TITLE for _, kwargs in ctx.sent)


def test_every_documented_command_is_registered(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    for name in ("ping", "help", "pic", "banner", "serverpic", "clear", "dog", "undog", "wakeup", "snap", "snipe", "wl", "unwl", "admin", "unadmin", "bl", "unbl", "lock", "unlock", "pv", "dmall"):
        assert bot.get_command(name) is not None, name
    assert bot.get_command("PING") is not None


def test_non_admin_clear_is_denied_and_deletes_nothing(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    ctx = StubContext(make_member(10), command_name="clear")

    _run(bot, "clear", ctx, "5")

    assert _was_denied(ctx)
    assert ctx.channel.purge_calls == []


def test_admin_clear_defaults_to_one_hundred(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    ctx = StubContext(make_member(10, admin=True), command_name="clear")

    _run(bot, "clear", ctx, "nope")

    assert ctx.channel.purge_calls == [{"limit": 100}]
    assert not _was_denied(ctx)


def test_owner_wl_is_durable_across_restart(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    target = make_member(2002)
    ctx = StubContext(make_member(int(OWNER_ID)), mentions=[target])

    _run(bot, "wl", ctx)
    _run(bot, "wl", ctx)

    assert bot.authority.is_whitelisted(2002) is True
    fresh = SnapshotStore(bot.settings.data_dir, LoggerService())
    asyncio.run(fresh.load())
    assert fresh.members("whitelist") == {"2002"}


def test_wl_from_non_owner_is_silent(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    ctx = StubContext(make_member(3, admin=True), mentions=[make_member(2002)])

    _run(bot, "wl", ctx)

    assert ctx.sent == [] and ctx.replies == []
    assert bot.store.members("whitelist") == set()


def test_dog_by_second_admin_replaces_controller(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    platform = FakePlatform()
    platform.add("1", "A", location="vc-a")
    platform.add("2", "E", location="vc-e")
    platform.add("3", "F", location="vc-f")
    bot._platform = lambda guild: platform  # type: ignore[assignment]
    target = make_member(1, "A")

    _run(bot, "dog", StubContext(make_member(2, "E", admin=True), mentions=[target]))
    first = bot.store.get_dog(1)
    assert first is not None
    assert first.executor_id == "2"
    assert first.locked_name == "A ( 🐶 E )"

    _run(bot, "dog", StubContext(make_member(3, "F", admin=True), mentions=[target]))
    second = bot.store.get_dog(1)
    assert second is not None
    assert second.executor_id == "3"
    assert len(bot.store.dogs) == 1


def test_dog_requires_admin_and_a_mention(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    denied = StubContext(make_member(2), mentions=[make_member(1)], command_name="dog")
    _run(bot, "dog", denied)
    assert _was_denied(denied)

    missing = StubContext(make_member(2, admin=True))
    _run(bot, "dog", missing)
    assert missing.replies == ["Mentionne un membre."]
    assert bot.store.dogs == {}


def test_undog_allowed_for_executor_only_among_regular_members(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    platform = FakePlatform()
    platform.add("1", "A", location="vc-a")
    platform.add("2", "E", location="vc-e")
    bot._platform = lambda guild: platform  # type: ignore[assignment]
    bot.store.set_dog(1, 2, "A ( 🐶 E )")
    target = make_member(1, "A")

    bystander = StubContext(make_member(9), mentions=[target])
    _run(bot, "undog", bystander)
    assert _was_denied(bystander)
    assert bot.store.get_dog(1) is not None

    executor = StubContext(make_member(2), mentions=[target])
    _run(bot, "undog", executor)
    assert bot.store.get_dog(1) is None
    assert platform.nicks["1"] is None


def test_undog_unknown_target_reports_invalid(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    ctx = StubContext(make_member(2, admin=True), mentions=[make_member(1)])
    _run(bot, "undog", ctx)
    assert ctx.replies == ["Cible invalide."]


def test_snipe_shows_last_deleted_message(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    ctx = StubContext(make_member(2))
    _run(bot, "snipe", ctx)
    assert ctx.replies == ["Aucun message supprimé récemment."]

    bot.snipes.record(ctx.channel.id, "oops", 7, "seven", timestamp=1700000000.0)
    _run(bot, "snipe", ctx)
    embed = ctx.sent[-1][1]["embed"]
    assert embed.description == "oops"
    assert "seven" in embed.title


def test_blacklisted_author_commands_are_ignored(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    processed: list[object] = []

    async def fake_process(message) -> None:
        processed.append(message)

    bot.process_commands = fake_process  # type: ignore[assignment]
    bot.store.add_member("blacklist", 9)
    guild = SimpleNamespace(id=1)

    asyncio.run(bot.on_message(SimpleNamespace(author=make_member(9), guild=guild, content="+ping")))
    asyncio.run(bot.on_message(SimpleNamespace(author=make_member(8), guild=guild, content="+ping")))
    asyncio.run(bot.on_message(SimpleNamespace(author=make_member(8), guild=guild, content="hello")))
    asyncio.run(bot.on_message(SimpleNamespace(author=make_member(8, bot=True), guild=guild, content="+ping")))
    asyncio.run(bot.on_message(SimpleNamespace(author=make_member(8), guild=None, content="+ping")))

    assert len(processed) == 1
    assert processed[0].author.id == 8


def _in_voice(member: SimpleNamespace, cid: int = 900) -> SimpleNamespace:
    member.voice = SimpleNamespace(channel=SimpleNamespace(id=cid, name="vc"))
    return member


def test_lock_and_unlock_toggle_everyone_send_permission(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    ctx = StubContext(make_member(10, admin=True), command_name="lock")

    _run(bot, "lock", ctx)

    assert ctx.channel.overwrites["everyone"].send_messages is False
    assert bot.store.has_member("locked_text_channels", 55)

    _run(bot, "unlock", ctx)

    assert ctx.channel.overwrites["everyone"].send_messages is None
    assert not bot.store.has_member("locked_text_channels", 55)
    assert not _was_denied(ctx)


def test_lock_from_non_admin_is_denied(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    ctx = StubContext(make_member(10), command_name="lock")

    _run(bot, "lock", ctx)

    assert _was_denied(ctx)
    assert ctx.channel.overwrites == {}
    assert bot.store.members("locked_text_channels") == set()


def test_pv_claim_needs_whitelist_or_admin(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    stranger = StubContext(_in_voice(make_member(6)), command_name="pv")

    _run(bot, "pv", stranger)

    assert _was_denied(stranger)
    assert bot.store.get_pv(900) is None

    bot.store.add_member("whitelist", 5)
    _run(bot, "pv", StubContext(_in_voice(make_member(5)), command_name="pv"))

    row = bot.store.get_pv(900)
    assert row is not None and row.owner_id == "5"


def test_pv_on_claimed_channel_leaves_row_untouched(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    bot.store.claim_pv(900, 5)
    bot.store.pv_allow(900, 6)
    bot.store.add_member("whitelist", 5)

    owner_ctx = StubContext(_in_voice(make_member(5)), command_name="pv")
    admin_ctx = StubContext(_in_voice(make_member(8, admin=True)), command_name="pv")
    _run(bot, "pv", owner_ctx)
    _run(bot, "pv", admin_ctx)

    row = bot.store.get_pv(900)
    assert row.owner_id == "5"
    assert row.allowed == {"5", "6"}
    assert owner_ctx.replies == ["Ce salon est déjà privé."]
    assert admin_ctx.replies == ["Ce salon appartient déjà à quelqu'un."]


def test_pv_management_limited_to_owner_or_admin(tmp_path: Path) -> None:
    bot = _make_bot(tmp_path)
    platform = FakePlatform()
    platform.add("7", "Guest", location="900")
    bot._platform = lambda guild: platform  # type: ignore[assignment]
    bot.store.claim_pv(900, 5)
    guest = make_member(7)

    for name in ("pv add", "pv remove", "pv off"):
        ctx = StubContext(_in_voice(make_member(6)), mentions=[guest], command_name=name)
        _run(bot, name, ctx)
        assert _was_denied(ctx), name
    assert bot.store.get_pv(900).allowed == {"5"}

    _run(bot, "pv add", StubContext(_in_voice(make_member(5)), mentions=[guest]))
    assert bot.store.get_pv(900).allowed == {"5", "7"}

    _run(bot, "pv remove", StubContext(_in_voice(make_member(5)), mentions=[guest]))
    assert bot.store.get_pv(900).allowed == {"5"}
    assert platform.locations["7"] is None

    _run(bot, "pv off", StubContext(_in_voice(make_member(5))))
    assert bot.store.get_pv(900) is None
