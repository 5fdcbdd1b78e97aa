"""
Nerve Cord Configuration
"""
import os
import json
from dataclasses import dataclass
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except Exception:
        pass


def _setting(name: str, default: str) -> str:
    return os.getenv(f"NERVECORD_{name}", str(config_data.get(name, default)))


# HTTP server - bots live on other machines, so listen on all interfaces by default
HOST = _setting("HOST", "0.0.0.0")
PORT = int(_setting("PORT", "9999"))

# Bearer tokens. Only the full token is mandatory; an empty value disables a tier.
DEFAULT_TOKEN = "nerve-cord-default-token"
TOKEN = _setting("TOKEN", DEFAULT_TOKEN)
LARVA_TOKEN = _setting("LARVA_TOKEN", "")
READONLY_TOKEN = _setting("READONLY_TOKEN", "")
# Sent in X-Admin-Token, only needed for DELETE /bots/{name}
ADMIN_TOKEN = _setting("ADMIN_TOKEN", "")

# Persistence
DATA_DIR = Path(_setting("DATA_DIR", str(BASE_DIR / "data")))
BACKEND = _setting("BACKEND", "json").lower()          # json | sqlite
DB_PATH = _setting("DB", str(DATA_DIR / "nervecord.db"))
# How often the expiry sweep + full save runs (seconds)
SAVE_INTERVAL = int(_setting("SAVE_INTERVAL", "30"))

# Request bodies past this many bytes are rejected
MAX_BODY_BYTES = int(_setting("MAX_BODY_BYTES", "1000000"))

# Bot-facing API guide served at /skill
SKILL_FILE = Path(_setting("SKILL_FILE", str(BASE_DIR / "SKILL.md")))

BUS_VERSION = "0.1.0"

# Retention and liveness windows (seconds)
MESSAGE_TTL = 24 * 60 * 60
HEARTBEAT_TIMEOUT = 30
LARVA_EXPIRY = 60 * 60
LARVA_PURGE = 2 * LARVA_EXPIRY


@dataclass
class Settings:
    data_dir: Path
    token: str
    larva_token: str = ""
    readonly_token: str = ""
    admin_token: str = ""
    backend: str = "json"
    db_path: str | None = None
    save_interval: float = 30
    max_body_bytes: int = 1_000_000
    skill_file: Path = SKILL_FILE

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            data_dir=DATA_DIR,
            token=TOKEN,
            larva_token=LARVA_TOKEN,
            readonly_token=READONLY_TOKEN,
            admin_token=ADMIN_TOKEN,
            backend=BACKEND,
            db_path=DB_PATH,
            save_interval=SAVE_INTERVAL,
            max_body_bytes=MAX_BODY_BYTES,
            skill_file=SKILL_FILE,
        )
