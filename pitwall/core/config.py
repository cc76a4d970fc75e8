import os
from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

def _flag(name: str, default: bool) -> bool:
    v = os.getenv(name)
    return default if v is None else v.lower() in ("1", "true", "yes", "on")

def _pairs_from_env(var: str) -> dict[str, int]:
    """"F1:123,F2:456" -> {"F1": 123, "F2": 456}; les entrées invalides sont ignorées."""
    raw = os.getenv(var, "").strip()
    out: dict[str, int] = {}
    if not raw:
        return out
    for part in raw.split(","):
        series, _, ident = part.strip().partition(":")
        if series and ident.strip().isdigit():
            out[series.strip()] = int(ident.strip())
    return out

class Settings(BaseModel):
    token: str = Field(default_factory=lambda: os.getenv("DISCORD_TOKEN",""))
    guild_id: int = Field(default_factory=lambda: int(os.getenv("GUILD_ID","0") or 0))
    data_dir: str = Field(default_factory=lambda: os.getenv("DATA_DIR","./data"))
    db_name: str = Field(default_factory=lambda: os.getenv("DB_NAME","pitwall.db"))
    sync_scope: str = Field(default_factory=lambda: os.getenv("SYNC_SCOPE", "both"))

    notify_enabled: bool = Field(default_factory=lambda: _flag("NOTIFY_ENABLED", True))
    poll_interval_s: int = Field(default_factory=lambda: int(os.getenv("POLL_INTERVAL_S","30")), gt=0)
    reap_interval_s: int = Field(default_factory=lambda: int(os.getenv("REAP_INTERVAL_S","120")), gt=0)
    send_timeout_s: float = Field(default_factory=lambda: float(os.getenv("SEND_TIMEOUT_S","5")), gt=0)
    max_workers: int = Field(default_factory=lambda: int(os.getenv("MAX_WORKERS","4")), ge=1)

    # calendrier persistant par série, rafraîchi au rythme du reap
    calendar_enabled: bool = Field(default_factory=lambda: _flag("CALENDAR_ENABLED", True))
    calendar_weekends: int = Field(default_factory=lambda: int(os.getenv("CALENDAR_WEEKENDS","5")), ge=1)

    # série -> channel / rôle à mentionner
    series_channels: dict[str, int] = Field(default_factory=lambda: _pairs_from_env("SERIES_CHANNELS"))
    series_roles: dict[str, int] = Field(default_factory=lambda: _pairs_from_env("SERIES_ROLES"))

settings = Settings()
