"""
Calendrier persistant: un message par série dans son channel, réécrit en place.

Le message est suivi dans le registre sous la clé "calendar:<série>", avec pour échéance
la fin de fenêtre du dernier weekend affiché. Quand plus rien n'est à l'affiche,
l'entrée expire et le reap retire le message.
"""
from __future__ import annotations
import asyncio, logging
from datetime import datetime
from typing import Awaitable, Callable

from pitwall.core import notification_builders as builders
from pitwall.domain import clock
from pitwall.domain.errors import LedgerUnavailable, SendFailed, StoreUnavailable
from pitwall.persistence import messages as repo_messages
from pitwall.persistence import schedule as repo_schedule

log = logging.getLogger(__name__)

EditFn = Callable[[str, str, str], Awaitable[bool]]


def calendar_key(series: str) -> str:
    return f"calendar:{series}"


class CalendarService:
    def __init__(self, send, edit: EditFn, *, routes, send_timeout: float = 5.0, weekends: int = 5,
                 store=repo_schedule, ledger=repo_messages):
        self._send = send
        self._edit = edit
        self.routes = routes
        self.send_timeout = float(send_timeout)
        self.weekends = int(weekends)
        self.store = store
        self.ledger = ledger
        # dernier contenu publié par clé: pas d'édition si rien n'a changé
        self._posted: dict[str, str] = {}
        self.last_refresh: tuple[datetime, int] | None = None

    async def refresh(self, now: datetime) -> int:
        """Publie ou met à jour le calendrier de chaque série routée. Renvoie le nb de messages touchés."""
        now = clock.to_utc(now)
        touched = 0
        for series, route in self.routes.items():
            try:
                if await self._refresh_series(series, route, now):
                    touched += 1
            except StoreUnavailable as e:
                log.warning("Calendar refresh skipped, schedule store unavailable: %s", e)
                break
            except (LedgerUnavailable, SendFailed, asyncio.TimeoutError) as e:
                log.warning("Calendar for %s not refreshed: %r", series, e)
        self.last_refresh = (now, touched)
        return touched

    async def _refresh_series(self, series: str, route, now: datetime) -> bool:
        entries = self.store.list_calendar(series, now, self.weekends)
        key = calendar_key(series)
        content = builders.build_calendar(series, entries)
        current = self.ledger.get(key)

        if current is not None:
            if self._posted.get(key) == content:
                return False
            edited = await asyncio.wait_for(self._edit(current.channel_id, current.message_id, content),
                                            self.send_timeout)
            if edited:
                if entries:
                    self.ledger.set_expiry(key, clock.weekend_span(entries[-1][0].start_date)[1])
                self._posted[key] = content
                return True
            log.info("Calendar message for %s is gone, posting a new one", series)
            self.ledger.forget(key)

        if not entries:
            return False
        message_id = await asyncio.wait_for(self._send(route.channel_id, content), self.send_timeout)
        expires_at = clock.weekend_span(entries[-1][0].start_date)[1]
        try:
            self.ledger.record(route.channel_id, message_id, key, series, expires_at)
        except LedgerUnavailable as e:
            log.error("Posted %s calendar (message %s) but ledger write failed, may duplicate: %s",
                      series, message_id, e)
            return True
        self._posted[key] = content
        log.info("Posted %s calendar to channel %s (message %s)", series, route.channel_id, message_id)
        return True
