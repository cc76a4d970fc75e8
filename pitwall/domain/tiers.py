"""
Paliers de notification d'une session.

Encodage stocké dans sessions.notify: liste de délais séparés par des virgules,
chacun "<entier><unité>" avec unité parmi d/h/m/s ("24h,10m").
"" ou "off" = aucun rappel.

Forme canonique: plus grande unité qui divise exactement la valeur, sans doublon,
triée du plus long délai au plus court (ordre de déclenchement).
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from datetime import timedelta

_UNITS = (("d", 86400), ("h", 3600), ("m", 60), ("s", 1))
_UNIT_SECONDS = dict(_UNITS)
_ITEM = re.compile(r"^(\d+)\s*([dhms])$")
OFF = "off"


@dataclass(frozen=True, order=True)
class Tier:
    seconds: int

    @property
    def name(self) -> str:
        for unit, size in _UNITS:
            if self.seconds % size == 0:
                return f"{self.seconds // size}{unit}"
        return f"{self.seconds}s"  # pragma: no cover

    @property
    def lead(self) -> timedelta:
        return timedelta(seconds=self.seconds)


def parse_tier(item: str) -> Tier:
    m = _ITEM.match(item.strip().lower())
    if not m:
        raise ValueError(f"invalid notify tier: {item!r}")
    seconds = int(m.group(1)) * _UNIT_SECONDS[m.group(2)]
    if seconds <= 0:
        raise ValueError(f"notify tier must be positive: {item!r}")
    return Tier(seconds)


def parse_tiers(raw: str | None) -> list[Tier]:
    text = (raw or "").strip()
    if not text or text.lower() == OFF:
        return []
    tiers = {parse_tier(part) for part in text.split(",") if part.strip()}
    return sorted(tiers, reverse=True)


def format_tiers(tiers) -> str:
    uniq = sorted(set(tiers), reverse=True)
    return ",".join(t.name for t in uniq)


def normalize(raw: str | None) -> str:
    """Valide et renvoie la forme canonique (lève ValueError si invalide)."""
    return format_tiers(parse_tiers(raw))


def dedup_key(session_id: int, tier: Tier) -> str:
    return f"session:{int(session_id)}:{tier.name}"
