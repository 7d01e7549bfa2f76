from __future__ import annotations

from pathlib import Path

import pytest

from kennel_v1.config import DEFAULT_OWNER_ID, Settings


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("DISCORD_TOKEN", "OWNER_ID", "COMMAND_PREFIX", "DATA_DIR", "FLUSH_INTERVAL_SEC", "PORT", "KEEPALIVE_BODY", "EMBED_COLOR"):
        monkeypatch.delenv(key, raising=False)


def test_load_reads_passwords_file_with_defaults(tmp_path: Path) -> None:
    path = tmp_path / "passwords.txt"
    path.write_text("# secrets\nDISCORD_TOKEN = abc\n\nnot a pair\nDATA_DIR=state\n", encoding="utf-8")

    settings = Settings.load(path)

    assert settings.discord_token == "abc"
    assert settings.owner_id == DEFAULT_OWNER_ID
    assert settings.command_prefix == "+"
    assert settings.data_dir == Path("state")
    assert settings.flush_interval_sec == 60
    assert settings.keepalive_port == 10000
    assert settings.keepalive_body == "OK"
    assert settings.embed_color == 0x8A2BE2


def test_environment_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "passwords.txt"
    path.write_text("DISCORD_TOKEN=file\nPORT=1\n", encoding="utf-8")
    monkeypatch.setenv("DISCORD_TOKEN", "env")
    monkeypatch.setenv("PORT", "8080")

    settings = Settings.load(path)

    assert settings.discord_token == "env"
    assert settings.keepalive_port == 8080


def test_missing_file_accepted_when_env_has_token(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DISCORD_TOKEN", "env")
    assert Settings.load(tmp_path / "absent.txt").discord_token == "env"


def test_missing_token_raises(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError, match="DISCORD_TOKEN"):
        Settings.load(tmp_path / "absent.txt")


def test_non_integer_setting_raises(tmp_path: Path) -> None:
    path = tmp_path / "passwords.txt"
    path.write_text("DISCORD_TOKEN=abc\nFLUSH_INTERVAL_SEC=soon\n", encoding="utf-8")
    with pytest.raises(RuntimeError, match="FLUSH_INTERVAL_SEC"):
        Settings.load(path)
