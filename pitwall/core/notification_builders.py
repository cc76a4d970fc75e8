from __future__ import annotations

from pitwall.domain import clock
from pitwall.domain.models import Weekend, Session
from pitwall.domain.tiers import Tier

def build_reminder(weekend: Weekend, session: Session, tier: Tier, *,
                   role_id: int | None = None, last_tier: bool = True) -> str:
    """
    Rappel texte pour une session.
    <t:…:R> laisse Discord afficher le compte à rebours dans le fuseau du lecteur.
    """
    ts = clock.epoch(session.start_time)
    line = f"**{weekend.series} {weekend.name} - {session.name or 'Unnamed Session'} starting <t:{ts}:R>**"
    if not last_tier:
        line += f" ({tier.name} reminder)"
    if role_id:
        line += f"\n<@&{int(role_id)}>"
    return line

def build_upcoming_line(session: Session) -> str:
    ts = clock.epoch(session.start_time)
    return f"> **`{session.name}`** <t:{ts}:f> (<t:{ts}:R>)"

DISCORD_MESSAGE_LIMIT = 2000

def build_calendar(series: str, entries) -> str:
    """Calendrier d'une série: un bloc par weekend (date de début puis sessions)."""
    lines = [f"## 🏁 {series} calendar"]
    if not entries:
        lines.append("*No upcoming weekends.*")
    for weekend, sessions in entries:
        start, _ = clock.weekend_span(weekend.start_date)
        lines.append(f"**{weekend.name}** <t:{clock.epoch(start)}:D>")
        if sessions:
            lines.extend(build_upcoming_line(s) for s in sessions)
        else:
            lines.append("> *Sessions TBA*")
    text = "\n".join(lines)
    if len(text) > DISCORD_MESSAGE_LIMIT:
        text = text[:DISCORD_MESSAGE_LIMIT - 1] + "…"
    return text
