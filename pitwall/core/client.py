# pitwall/core/client.py
from __future__ import annotations
import logging, importlib, os
import discord
from discord import app_commands

from .config import settings
from .db.base import get_conn
from .db.migrations import migrate_if_needed

from pitwall.core.calendar import CalendarService
from pitwall.core.dispatcher import DiscordDispatcher
from pitwall.core.scheduler import NotificationTicker, SchedulerCore, routes_from_settings

# ── Logging
log = logging.getLogger("pitwall")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

# ── Guilds de test (supporte 1..n guilds)
SYNC_SCOPE = settings.sync_scope

def _list_from_env(var: str) -> list[int]:
    raw = os.getenv(var, "").strip()
    if not raw:
        return []
    out: list[int] = []
    for part in raw.split(","):
        s = part.strip()
        if s.isdigit():
            out.append(int(s))
    return out

def _test_guild_ids() -> list[int]:
    if SYNC_SCOPE not in ("guild", "both"):
        return []
    env_ids = _list_from_env("TEST_GUILD_IDS")
    if env_ids:
        return env_ids
    return [int(settings.guild_id)] if settings.guild_id else []

TEST_GUILD_IDS = _test_guild_ids()
TEST_GUILDS = [discord.Object(id=g) for g in TEST_GUILD_IDS]

# ═══════════════════════════════════════════════════════════════════
# Où publier chaque module
MODULES_GLOBAL = [
    "pitwall.modules.schedule.upcoming",
]

MODULES_TEST_ONLY = [
    "pitwall.modules.system.health",
]


class PitwallClient(discord.Client):
    def __init__(self) -> None:
        intents = discord.Intents.default()
        super().__init__(intents=intents)
        self.tree = app_commands.CommandTree(self)
        self.core: SchedulerCore | None = None
        self.calendar: CalendarService | None = None
        self._synced = False

    async def on_ready(self):
        log.info("Boot: SYNC_SCOPE=%s • TEST_GUILD_IDS=%s", SYNC_SCOPE, TEST_GUILD_IDS)
        try:
            if not self._synced:
                await _sync_commands(self)
                self._synced = True
        except discord.Forbidden as e:
            log.error("403 Missing Access on sync. Invite the bot with scope applications.commands. %s", e)
        except Exception as e:
            log.exception("Sync error: %s", e)

        await DiscordDispatcher.init(self)
        if self.core is None:
            self.core = SchedulerCore(
                DiscordDispatcher.send, DiscordDispatcher.retract,
                routes=routes_from_settings(settings),
                max_workers=settings.max_workers,
                send_timeout=settings.send_timeout_s,
            )
        if self.calendar is None and settings.calendar_enabled:
            self.calendar = CalendarService(
                DiscordDispatcher.send, DiscordDispatcher.edit,
                routes=self.core.routes,
                send_timeout=settings.send_timeout_s,
                weekends=settings.calendar_weekends,
            )
        NotificationTicker.start(
            self.core,
            poll_interval=settings.poll_interval_s,
            reap_interval=settings.reap_interval_s,
            enabled=lambda: settings.notify_enabled,
            calendar=self.calendar,
        )
        log.info("pitwall connected as %s", self.user)

    async def close(self):
        # Les envois en vol se terminent avant la fermeture de la gateway
        await NotificationTicker.stop()
        await super().close()


# Utilitaires d’enregistrement
def _register_one_module(client: PitwallClient, dotted: str, guild_obj: discord.Object | None):
    mod = importlib.import_module(dotted)
    if hasattr(mod, "register") and callable(mod.register):
        log.info("Register via register(): %s (guild=%s)", dotted, getattr(guild_obj, "id", None))
        return mod.register(client.tree, guild_obj, client)
    log.warning("Module %s: no register() found, ignored.", dotted)

def _register_modules(client: PitwallClient, modules: list[str], guilds: list[discord.Object | None]):
    for dotted in modules:
        for g in guilds:
            try:
                _register_one_module(client, dotted, g)
            except Exception as e:
                log.exception("Failed to register module %s on %s: %s", dotted, getattr(g, "id", None), e)

async def _sync_commands(client: PitwallClient):
    tree = client.tree
    if SYNC_SCOPE == "guild":
        if not TEST_GUILDS:
            raise RuntimeError("SYNC_SCOPE=guild but no test guild is configured.")
        _register_modules(client, MODULES_GLOBAL + MODULES_TEST_ONLY, TEST_GUILDS)
        for g in TEST_GUILDS:
            synced_g = await tree.sync(guild=g)
            log.info("Synced %d commands on guild %s: %s", len(synced_g), g.id, [c.name for c in synced_g])
        return

    _register_modules(client, MODULES_GLOBAL, [None])
    _register_modules(client, MODULES_TEST_ONLY, TEST_GUILDS)
    g_synced = await tree.sync()
    log.info("Synced %d GLOBAL commands: %s", len(g_synced), [c.name for c in g_synced])
    if SYNC_SCOPE == "both":
        for g in TEST_GUILDS:
            tree.copy_global_to(guild=g)
            y_synced = await tree.sync(guild=g)
            log.info("Copied & synced %d commands to guild %s: %s",
                     len(y_synced), g.id, [c.name for c in y_synced])


def run():
    # 1) Migrations au boot
    con = get_conn()
    ver = migrate_if_needed(con)
    log.info("Database ready (user_version=%s)", ver)

    # 2) Lancement du client
    PitwallClient().run(settings.token, log_handler=None)
