from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_OWNER_ID = "726063885492158474"
SETTING_KEYS = (
    "DISCORD_TOKEN",
    "OWNER_ID",
    "COMMAND_PREFIX",
    "DATA_DIR",
    "FLUSH_INTERVAL_SEC",
    "PORT",
    "KEEPALIVE_BODY",
    "EMBED_COLOR",
)


@dataclass(frozen=True)
class Settings:
    discord_token: str
    owner_id: str
    command_prefix: str
    data_dir: Path
    flush_interval_sec: int
    keepalive_port: int
    keepalive_body: str
    embed_color: int

    @staticmethod
    def load(path: Path = Path("passwords.txt")) -> "Settings":
        values = _parse_passwords_file(path)
        for key in SETTING_KEYS:
            env_value = os.environ.get(key)
            if env_value is not None and env_value.strip():
                values[key] = env_value.strip()
        token = values.get("DISCORD_TOKEN", "").strip()
        if not token:
            raise RuntimeError("DISCORD_TOKEN is required in passwords.txt or the environment.")
        return Settings(
            discord_token=token,
            owner_id=values.get("OWNER_ID", DEFAULT_OWNER_ID).strip() or DEFAULT_OWNER_ID,
            command_prefix=values.get("COMMAND_PREFIX", "+") or "+",
            data_dir=Path(values.get("DATA_DIR", "data")),
            flush_interval_sec=_to_int(values, "FLUSH_INTERVAL_SEC", 60),
            keepalive_port=_to_int(values, "PORT", 10000),
            keepalive_body=values.get("KEEPALIVE_BODY", "OK"),
            embed_color=_to_int(values, "EMBED_COLOR", 0x8A2BE2),
        )


def _to_int(values: dict[str, str], key: str, default: int) -> int:
    raw = values.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw, 0)
    except ValueError as exc:
        raise RuntimeError(f"{key} must be an integer, got {raw!r}.") from exc


def _parse_passwords_file(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    if not path.exists():
        return values
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values
