from __future__ import annotations
import discord
from discord import app_commands, Interaction

from pitwall.core import notification_builders as builders
from pitwall.domain import clock
from pitwall.domain.errors import StoreUnavailable
from pitwall.persistence import schedule as repo_schedule

def build_upcoming_embed(now, limit: int = 10) -> discord.Embed | None:
    rows = repo_schedule.list_upcoming(now, limit)
    if not rows:
        return None
    e = discord.Embed(title="🏁 Prochaines sessions", color=discord.Color.red())
    # un champ par weekend, sessions dans l'ordre chronologique
    grouped: dict[int, list] = {}
    for weekend, session in rows:
        grouped.setdefault(weekend.id, [weekend]).append(session)
    for weekend, *sessions in grouped.values():
        lines = [builders.build_upcoming_line(s) for s in sessions]
        e.add_field(name=f"{weekend.series} {weekend.name}", value="\n".join(lines), inline=False)
    return e

@app_commands.command(name="upcoming", description="Les prochaines sessions au programme.")
async def upcoming(inter: Interaction):
    try:
        e = build_upcoming_embed(clock.utcnow())
    except StoreUnavailable:
        await inter.response.send_message("Planning indisponible, réessaie plus tard.", ephemeral=True); return
    if e is None:
        await inter.response.send_message("Rien au programme pour l’instant.", ephemeral=True); return
    await inter.response.send_message(embed=e, ephemeral=True)

def register(tree, guild_obj, client=None):
    if guild_obj:
        tree.add_command(upcoming, guild=guild_obj)
    else:
        tree.add_command(upcoming)
