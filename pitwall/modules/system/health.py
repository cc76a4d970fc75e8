# pitwall/modules/system/health.py
from __future__ import annotations
import time, platform, os
import discord
from discord import app_commands, Interaction

from pitwall.core.db.base import get_conn
from pitwall.core.scheduler import NotificationTicker
from pitwall.domain import clock
from pitwall.domain.errors import LedgerUnavailable
from pitwall.persistence import messages as repo_messages

BOT_START_TIME = time.time()

def _fmt_uptime(seconds: int) -> str:
    h = seconds // 3600
    m = (seconds % 3600) // 60
    s = seconds % 60
    return f"{h}h {m}m {s}s"

def _sqlite_info() -> dict:
    """Infos légères sur la DB (chemin, taille, journal_mode, user_version)."""
    con = get_conn()
    info: dict = {}
    for _, name, file in con.execute("PRAGMA database_list;").fetchall():
        if name == "main" and file and os.path.exists(file):
            info["db_path"] = file
            info["db_size_mb"] = os.path.getsize(file) / 1024**2
    (journal_mode,) = con.execute("PRAGMA journal_mode;").fetchone()
    info["journal_mode"] = str(journal_mode).upper()
    (user_version,) = con.execute("PRAGMA user_version;").fetchone()
    info["user_version"] = int(user_version or 0)
    return info

def _ledger_text() -> str:
    try:
        n = repo_messages.count()
        nxt = repo_messages.next_expiry()
    except LedgerUnavailable as e:
        return f"indisponible ({e})"
    if nxt is None:
        return f"{n} rappel(s)"
    return f"{n} rappel(s) • prochaine expiration <t:{clock.epoch(nxt)}:R>"

def _tick_text() -> str:
    core = NotificationTicker.core
    rep = core.last_report if core else None
    if rep is None:
        return "aucun tick"
    state = "ABORTED" if rep.aborted else "ok"
    return (f"<t:{clock.epoch(rep.at)}:R> {state} • sessions={rep.sessions} due={rep.due} "
            f"sent={rep.sent} failed={rep.failed} skipped={rep.skipped}")

def _calendar_text() -> str:
    cal = NotificationTicker.calendar
    if cal is None:
        return "désactivé"
    if cal.last_refresh is None:
        return "jamais rafraîchi"
    at, touched = cal.last_refresh
    return f"<t:{clock.epoch(at)}:R> • {touched} message(s) mis à jour"

def build_debug_embed(latency_ms: int) -> discord.Embed:
    embed = discord.Embed(title="🛠️ Debug pitwall", color=discord.Color.blurple())
    embed.add_field(name="📡 Latence", value=f"{latency_ms} ms", inline=True)
    embed.add_field(name="⏳ Uptime", value=_fmt_uptime(int(time.time() - BOT_START_TIME)), inline=True)
    embed.add_field(name="🔁 Ticker", value="running" if NotificationTicker.running() else "stopped", inline=True)
    embed.add_field(name="🏁 Dernier tick", value=_tick_text(), inline=False)
    embed.add_field(name="📨 Registre", value=_ledger_text(), inline=False)
    embed.add_field(name="🗓️ Calendrier", value=_calendar_text(), inline=False)
    embed.add_field(name="🐍 Python", value=platform.python_version(), inline=True)
    embed.add_field(name="🤖 discord.py", value=discord.__version__, inline=True)

    dbi = _sqlite_info()
    if dbi.get("db_path"):
        embed.add_field(name="📂 DB", value=f"{dbi['db_path']} ({dbi['db_size_mb']:.1f} MB)", inline=False)
    embed.add_field(name="⚙️ SQLite", value=f"journal={dbi['journal_mode']} • user_version={dbi['user_version']}",
                    inline=True)
    return embed

def register(tree: app_commands.CommandTree, guild_obj: discord.Object | None, client: discord.Client | None = None):
    """Expose /debug pour inspecter l'état du moteur de rappels (test-only idéalement)."""

    @tree.command(name="debug", description="État du bot (latence, ticker, registre, DB)")
    @app_commands.guilds(guild_obj) if guild_obj else (lambda f: f)
    async def debug_cmd(inter: Interaction):
        latency_ms = round(inter.client.latency * 1000) if inter.client.latency else 0
        await inter.response.send_message(embed=build_debug_embed(latency_ms), ephemeral=True)
