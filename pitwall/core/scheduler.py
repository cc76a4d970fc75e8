"""
Moteur de rappels.

Par couple (session, palier): PENDING tant que now < début - délai, puis DUE jusqu'à ce que
le registre contienne la clé (SENT), puis EXPIRED une fois l'entrée purgée.
Le temps est toujours passé en paramètre (now), jamais lu ici.
"""
from __future__ import annotations
import asyncio, logging, random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from pitwall.core import notification_builders as builders
from pitwall.domain import clock, tiers
from pitwall.domain.errors import (
    LedgerUnavailable, ScheduleInconsistency, SendFailed, StoreUnavailable,
)
from pitwall.domain.models import Session, SessionStatus, Weekend
from pitwall.persistence import messages as repo_messages
from pitwall.persistence import schedule as repo_schedule

log = logging.getLogger(__name__)

SendFn = Callable[[int, str], Awaitable[str]]
RetractFn = Callable[[str, str], Awaitable[None]]


@dataclass(frozen=True)
class Route:
    channel_id: int
    role_id: Optional[int] = None


def routes_from_settings(cfg) -> dict[str, Route]:
    return {
        series: Route(int(cid), cfg.series_roles.get(series))
        for series, cid in cfg.series_channels.items()
    }


@dataclass
class TickReport:
    at: datetime
    sessions: int = 0
    due: int = 0
    sent: int = 0
    already_sent: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: bool = False
    errors: list[str] = field(default_factory=list)


def due_tiers(session: Session, now: datetime, session_tiers: list[tiers.Tier]) -> list[tiers.Tier]:
    """Paliers dont le seuil est franchi. Rien une fois la session finie: le rappel serait déjà expiré."""
    now = clock.to_utc(now)
    if now >= session.end_time:
        return []
    return [t for t in session_tiers if now >= session.start_time - t.lead]


class SchedulerCore:
    def __init__(self, send: SendFn, retract: Optional[RetractFn] = None, *,
                 routes: dict[str, Route], max_workers: int = 4, send_timeout: float = 5.0,
                 store=repo_schedule, ledger=repo_messages):
        self._send = send
        self._retract = retract
        self.routes = routes
        self.send_timeout = float(send_timeout)
        self.store = store
        self.ledger = ledger
        self._sem = asyncio.Semaphore(max(1, int(max_workers)))
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self.last_report: TickReport | None = None
        self.last_reap: tuple[datetime, int] | None = None

    def _check(self, weekend: Weekend, session: Session) -> tuple[list[tiers.Tier], Route]:
        if not weekend.contains(session.start_time):
            raise ScheduleInconsistency(session.id, f"start {clock.format_ts(session.start_time)} "
                                                    f"outside weekend {weekend.id} span")
        if session.duration <= 0:
            raise ScheduleInconsistency(session.id, f"non-positive duration {session.duration}")
        try:
            session_tiers = tiers.parse_tiers(session.notify)
        except ValueError as e:
            raise ScheduleInconsistency(session.id, str(e)) from e
        route = self.routes.get(weekend.series)
        if session_tiers and route is None:
            raise ScheduleInconsistency(session.id, f"no channel configured for series {weekend.series}")
        return session_tiers, route

    async def run_tick(self, now: datetime) -> TickReport:
        now = clock.to_utc(now)
        report = TickReport(at=now)
        try:
            active = self.store.list_active_sessions(now)
        except StoreUnavailable as e:
            log.warning("Tick aborted, schedule store unavailable: %s", e)
            report.aborted = True
            report.errors.append(str(e))
            self.last_report = report
            return report

        report.sessions = len(active)
        jobs = []
        notified_candidates: list[tuple[Session, list[tiers.Tier]]] = []
        # ordre du store = début croissant: les sessions les plus proches prennent le sémaphore en premier
        for weekend, session in active:
            try:
                session_tiers, route = self._check(weekend, session)
            except ScheduleInconsistency as e:
                log.warning("Skipping inconsistent session: %s", e)
                report.skipped += 1
                report.errors.append(str(e))
                continue

            if not session_tiers:
                continue
            if session.status == SessionStatus.PENDING:
                notified_candidates.append((session, session_tiers))
            for tier in due_tiers(session, now, session_tiers):
                report.due += 1
                last = tier == session_tiers[-1]
                jobs.append(asyncio.create_task(
                    self._notify_one(weekend, session, tier, route, last, report)
                ))

        for res in await asyncio.gather(*jobs, return_exceptions=True):
            if isinstance(res, Exception):
                log.error("Notification job crashed: %r", res, exc_info=res)
                report.failed += 1
                report.errors.append(repr(res))

        for session, session_tiers in notified_candidates:
            self._maybe_mark_notified(session, session_tiers)

        if report.sent or report.failed or report.skipped:
            log.info("Tick %s: sent=%d failed=%d skipped=%d already=%d",
                     clock.format_ts(now), report.sent, report.failed, report.skipped, report.already_sent)
        self.last_report = report
        return report

    async def _notify_one(self, weekend: Weekend, session: Session, tier: tiers.Tier,
                          route: Route, last: bool, report: TickReport) -> None:
        key = tiers.dedup_key(session.id, tier)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            # has_sent -> send -> record, séquentiel pour une même clé
            async with lock, self._sem:
                await self._attempt(key, weekend, session, tier, route, last, report)
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def _attempt(self, key: str, weekend: Weekend, session: Session, tier: tiers.Tier,
                       route: Route, last: bool, report: TickReport) -> None:
        try:
            if self.ledger.has_sent(key):
                report.already_sent += 1
                return
        except LedgerUnavailable as e:
            log.warning("Ledger unavailable before %s, retrying next tick: %s", key, e)
            report.failed += 1
            report.errors.append(str(e))
            return

        content = builders.build_reminder(weekend, session, tier, role_id=route.role_id, last_tier=last)
        try:
            message_id = await asyncio.wait_for(self._send(route.channel_id, content), self.send_timeout)
        except asyncio.TimeoutError:
            log.warning("Send timed out after %.1fs for %s, retrying next tick", self.send_timeout, key)
            report.failed += 1
            report.errors.append(f"{key}: timeout")
            return
        except SendFailed as e:
            log.warning("Send failed for %s, retrying next tick: %s", key, e)
            report.failed += 1
            report.errors.append(f"{key}: {e}")
            return
        except Exception as e:
            log.exception("Unexpected transport error for %s", key)
            report.failed += 1
            report.errors.append(f"{key}: {e!r}")
            return

        try:
            self.ledger.record(route.channel_id, message_id, key, weekend.series, session.end_time)
        except LedgerUnavailable as e:
            # envoyé mais non consigné: sera probablement renvoyé au prochain tick
            log.error("Sent %s (message %s) but ledger write failed, may duplicate: %s", key, message_id, e)
            report.failed += 1
            report.errors.append(str(e))
            return

        report.sent += 1
        log.info("Sent %s to channel %s (message %s)", key, route.channel_id, message_id)

    def _maybe_mark_notified(self, session: Session, session_tiers: list[tiers.Tier]) -> None:
        try:
            keys = [tiers.dedup_key(session.id, t) for t in session_tiers]
            if not all(self.ledger.has_sent(k) for k in keys):
                return
            self.store.mark_session_notified(session.id, keys[-1])
        except (StoreUnavailable, LedgerUnavailable) as e:
            log.warning("Could not mark session %s notified: %s", session.id, e)

    async def reap(self, now: datetime) -> int:
        """Retire les rappels expirés (message Discord puis registre) et fait le ménage du planning."""
        now = clock.to_utc(now)
        removed = 0
        try:
            expired = self.ledger.list_expired(now)
            if self._retract is not None:
                for entry in expired:
                    try:
                        await asyncio.wait_for(self._retract(entry.channel_id, entry.message_id), self.send_timeout)
                    except (SendFailed, asyncio.TimeoutError) as e:
                        log.warning("Could not retract %s (message %s): %r", entry.kind, entry.message_id, e)
            removed = self.ledger.reap_expired(now)
            if removed:
                log.info("Reaped %d expired reminder(s)", removed)
        except LedgerUnavailable as e:
            log.warning("Reap skipped, ledger unavailable: %s", e)

        try:
            self.store.advance_lifecycle(now)
            self.store.delete_orphan_sessions()
        except StoreUnavailable as e:
            log.warning("Schedule housekeeping skipped: %s", e)

        self.last_reap = (now, removed)
        return removed


class NotificationTicker:
    _task: asyncio.Task | None = None
    _stop: asyncio.Event | None = None
    core: SchedulerCore | None = None
    calendar = None

    @classmethod
    def start(cls, core: SchedulerCore, *, poll_interval: float, reap_interval: float,
              enabled: Callable[[], bool] = lambda: True,
              now_fn: Callable[[], datetime] = clock.utcnow,
              initial_delay: float | None = None,
              calendar=None) -> None:
        if cls._task and not cls._task.done():
            return
        cls.core = core
        cls.calendar = calendar
        cls._stop = asyncio.Event()
        cls._task = asyncio.create_task(
            cls._run(core, float(poll_interval), float(reap_interval), enabled, now_fn, initial_delay, calendar)
        )

    @classmethod
    def running(cls) -> bool:
        return bool(cls._task and not cls._task.done())

    @classmethod
    async def stop(cls, timeout: float = 30.0) -> None:
        """Laisse le tick en cours finir (pas de coupure entre envoi et écriture du registre)."""
        if cls._task is None:
            return
        if cls._stop is not None:
            cls._stop.set()
        try:
            await asyncio.wait_for(asyncio.shield(cls._task), timeout)
        except asyncio.TimeoutError:
            log.warning("Notification ticker did not stop within %.0fs, cancelling", timeout)
            cls._task.cancel()
        cls._task = None

    @classmethod
    async def _sleep(cls, seconds: float) -> bool:
        """Dort ou se réveille dès stop(). Renvoie True si arrêt demandé."""
        try:
            await asyncio.wait_for(cls._stop.wait(), timeout=max(0.0, seconds))
            return True
        except asyncio.TimeoutError:
            return False

    @classmethod
    async def _run(cls, core: SchedulerCore, poll_interval: float, reap_interval: float,
                   enabled, now_fn, initial_delay, calendar=None):
        # Jitter initial pour ne pas tirer pile au boot
        delay = initial_delay if initial_delay is not None else random.uniform(2, 10)
        if await cls._sleep(delay):
            return
        last_reap: datetime | None = None
        while not cls._stop.is_set():
            try:
                if enabled():
                    now = now_fn()
                    await core.run_tick(now)
                    if last_reap is None or (now - last_reap).total_seconds() >= reap_interval:
                        await core.reap(now)
                        if calendar is not None:
                            await calendar.refresh(now)
                        last_reap = now
                pause = poll_interval + random.uniform(-0.1, 0.1) * poll_interval
            except Exception:
                log.exception("Notification ticker error")
                pause = min(10.0, poll_interval)
            if await cls._sleep(pause):
                break
        log.info("Notification ticker stopped")
