"""Tests for the scheduler core: due tiers, dedup, failure isolation, reaping."""

import asyncio
import logging
from datetime import timedelta

from conftest import F1_CHANNEL, F1_ROLE, T, FakeSender
from pitwall.core.scheduler import SchedulerCore, due_tiers
from pitwall.domain.errors import LedgerUnavailable, SendFailed, StoreUnavailable
from pitwall.domain.models import SessionStatus
from pitwall.domain.tiers import dedup_key, parse_tier, parse_tiers
from pitwall.persistence import messages as repo_messages
from pitwall.persistence import schedule as repo_schedule

H = timedelta(hours=1)


class TestDueTiers:
    def test_pending_before_threshold(self, race):
        assert due_tiers(race, T - 25 * H, parse_tiers(race.notify)) == []

    def test_due_once_threshold_crossed(self, race):
        assert due_tiers(race, T - 24 * H, parse_tiers(race.notify)) == [parse_tier("24h")]
        assert due_tiers(race, T - timedelta(minutes=10), parse_tiers(race.notify)) == parse_tiers("24h,10m")

    def test_missed_tiers_stay_due_after_start(self, race):
        # reprise après une coupure: session commencée, pas encore terminée
        assert due_tiers(race, T + timedelta(minutes=30), parse_tiers(race.notify)) == parse_tiers("24h,10m")

    def test_nothing_once_session_ended(self, race):
        assert due_tiers(race, T + H, parse_tiers(race.notify)) == []


class TestTimeline:
    async def test_24h_and_10m_scenario(self, core, sender, race):
        report = await core.run_tick(T - 25 * H)
        assert report.sent == 0
        assert sender.sent == []

        report = await core.run_tick(T - 23 * H)
        assert report.sent == 1
        assert repo_messages.has_sent(dedup_key(race.id, parse_tier("24h")))
        assert not repo_messages.has_sent(dedup_key(race.id, parse_tier("10m")))

        report = await core.run_tick(T - 22 * H)
        assert report.sent == 0
        assert report.already_sent == 1
        assert len(sender.sent) == 1

        entry = repo_messages.get(dedup_key(race.id, parse_tier("24h")))
        assert entry.expires_at == T + H
        assert [e.kind for e in repo_messages.list_expired(T + H)] == [entry.kind]

    async def test_all_tiers_recorded_marks_session_notified(self, core, sender, race):
        await core.run_tick(T - 23 * H)
        assert repo_schedule.get_session(race.id).status == SessionStatus.PENDING

        await core.run_tick(T - timedelta(minutes=5))
        assert len(sender.sent) == 2
        assert repo_schedule.get_session(race.id).status == SessionStatus.NOTIFIED

    async def test_downtime_sends_every_missed_tier_once(self, core, sender, race):
        report = await core.run_tick(T + timedelta(minutes=1))
        assert report.sent == 2
        report = await core.run_tick(T + timedelta(minutes=2))
        assert report.sent == 0
        assert len(sender.sent) == 2

    async def test_content_mentions_role_and_start(self, core, sender, race):
        await core.run_tick(T - timedelta(minutes=5))
        channels = {c for c, _ in sender.sent}
        assert channels == {F1_CHANNEL}
        contents = [c for _, c in sender.sent]
        assert all(f"<@&{F1_ROLE}>" in c for c in contents)
        assert all(f"<t:{int(T.timestamp())}:R>" in c for c in contents)
        assert any("(1d reminder)" in c for c in contents)

    async def test_session_without_tiers_is_ignored(self, core, sender, weekend):
        repo_schedule.add_session(weekend.id, "Shakedown", T, 3600, "off")
        report = await core.run_tick(T - timedelta(minutes=1))
        assert report.due == 0
        assert sender.sent == []


class TestInconsistencies:
    async def test_session_outside_weekend_span_is_skipped(self, db, core, sender, race, caplog):
        db.execute("INSERT INTO sessions(weekend_id, start_time, name, duration, notify, status) "
                   "VALUES(?, '2026-04-01T14:00:00Z', 'Stray', 3600, '24h', 'pending')", (race.weekend_id,))

        with caplog.at_level(logging.WARNING):
            report = await core.run_tick(T - 23 * H)

        assert report.skipped == 1
        assert report.sent == 1
        assert "outside weekend" in caplog.text
        assert repo_messages.has_sent(dedup_key(race.id, parse_tier("24h")))

    async def test_unreadable_notify_is_skipped(self, db, core, sender, race):
        db.execute("INSERT INTO sessions(weekend_id, start_time, name, duration, notify, status) "
                   "VALUES(?, '2026-03-15T10:00:00Z', 'Broken', 3600, 'soon', 'pending')", (race.weekend_id,))
        report = await core.run_tick(T - 23 * H)
        assert report.skipped == 1
        assert report.sent == 1

    async def test_unreadable_start_time_does_not_stop_the_tick(self, db, core, sender, race, caplog):
        db.execute("INSERT INTO sessions(weekend_id, start_time, name, duration, notify, status) "
                   "VALUES(?, '2026-03-15 10:00:00', 'Hand-written', 3600, '24h', 'pending')", (race.weekend_id,))

        with caplog.at_level(logging.WARNING):
            report = await core.run_tick(T - 23 * H)
            await core.reap(T - 23 * H)

        assert report.aborted is False
        assert report.sent == 1
        assert repo_messages.has_sent(dedup_key(race.id, parse_tier("24h")))
        assert "Skipping unreadable row" in caplog.text

    async def test_series_without_channel_is_skipped(self, core, sender):
        other = repo_schedule.create_weekend("Monaco", "F3", T.date())
        repo_schedule.add_session(other.id, "Sprint Race", T, 2700, "10m")
        report = await core.run_tick(T - timedelta(minutes=5))
        assert report.skipped == 1
        assert sender.sent == []


class TestFailures:
    async def test_transient_send_failure_is_retried_next_tick(self, db, race, routes):
        sender = FakeSender(fail_times=1)
        core = SchedulerCore(sender.send, routes=routes)
        key = dedup_key(race.id, parse_tier("24h"))

        report = await core.run_tick(T - 23 * H)
        assert report.failed == 1
        assert not repo_messages.has_sent(key)

        report = await core.run_tick(T - 23 * H + timedelta(seconds=30))
        assert report.sent == 1
        assert repo_messages.count() == 1
        assert len(sender.sent) == 1

    async def test_failure_does_not_block_other_sessions(self, db, weekend, routes):
        async def flaky(channel_id, content):
            if "Qualifying" in content:
                raise SendFailed(channel_id, "rate limited")
            return "m-1"

        repo_schedule.add_session(weekend.id, "Qualifying", T - timedelta(minutes=20), 3600, "10m")
        race = repo_schedule.add_session(weekend.id, "Race", T, 3600, "10m")
        core = SchedulerCore(flaky, routes=routes)

        report = await core.run_tick(T - timedelta(minutes=5))
        assert report.failed == 1
        assert report.sent == 1
        assert repo_messages.has_sent(dedup_key(race.id, parse_tier("10m")))

    async def test_unexpected_transport_error_is_isolated(self, db, race, routes, caplog):
        async def boom(channel_id, content):
            raise RuntimeError("gateway exploded")

        core = SchedulerCore(boom, routes=routes)
        with caplog.at_level(logging.ERROR):
            report = await core.run_tick(T - 23 * H)
        assert report.failed == 1
        assert "Unexpected transport error" in caplog.text

    async def test_send_timeout_counts_as_failure(self, db, race, routes):
        sender = FakeSender(delay=1.0)
        core = SchedulerCore(sender.send, routes=routes, send_timeout=0.05)
        report = await core.run_tick(T - 23 * H)
        assert report.failed == 1
        assert repo_messages.count() == 0

    async def test_store_unavailable_aborts_tick_only(self, core, sender, race, monkeypatch):
        def down(as_of):
            raise StoreUnavailable("list_active_sessions: disk I/O error")

        monkeypatch.setattr(repo_schedule, "list_active_sessions", down)
        report = await core.run_tick(T - 23 * H)
        assert report.aborted is True
        assert sender.sent == []

        monkeypatch.undo()
        report = await core.run_tick(T - 23 * H)
        assert report.sent == 1

    async def test_ledger_write_failure_after_send_resends_next_tick(self, core, sender, race, monkeypatch):
        real_record = repo_messages.record

        def down(*args, **kwargs):
            raise LedgerUnavailable("record: database is locked")

        monkeypatch.setattr(repo_messages, "record", down)
        report = await core.run_tick(T - 23 * H)
        assert report.failed == 1
        assert len(sender.sent) == 1

        monkeypatch.setattr(repo_messages, "record", real_record)
        report = await core.run_tick(T - 23 * H)
        assert report.sent == 1
        assert len(sender.sent) == 2
        assert repo_messages.count() == 1

    async def test_mark_notified_failure_is_only_logged(self, core, sender, race, monkeypatch, caplog):
        def down(session_id, kind):
            raise StoreUnavailable("mark_session_notified: readonly database")

        monkeypatch.setattr(repo_schedule, "mark_session_notified", down)
        with caplog.at_level(logging.WARNING):
            report = await core.run_tick(T - timedelta(minutes=5))
        assert report.sent == 2
        assert "Could not mark session" in caplog.text


class TestConcurrency:
    async def test_overlapping_ticks_send_each_pair_once(self, db, race, routes):
        sender = FakeSender(delay=0.05)
        core = SchedulerCore(sender.send, routes=routes)

        reports = await asyncio.gather(core.run_tick(T - 23 * H), core.run_tick(T - 23 * H))

        assert len(sender.sent) == 1
        assert sum(r.sent for r in reports) == 1
        assert sum(r.already_sent for r in reports) == 1
        assert core._locks == {}

    async def test_worker_limit_bounds_parallel_sends(self, db, weekend, routes):
        for i in range(6):
            repo_schedule.add_session(weekend.id, f"FP{i}", T + timedelta(minutes=i), 3600, "10m")
        sender = FakeSender(delay=0.02)
        core = SchedulerCore(sender.send, routes=routes, max_workers=2)

        report = await core.run_tick(T - timedelta(minutes=5))

        assert report.sent == 6
        assert sender.max_in_flight == 2

    async def test_earlier_sessions_attempted_first(self, db, weekend, routes):
        repo_schedule.add_session(weekend.id, "Race", T, 3600, "10m")
        repo_schedule.add_session(weekend.id, "Qualifying", T - timedelta(minutes=20), 3600, "10m")
        sender = FakeSender()
        core = SchedulerCore(sender.send, routes=routes, max_workers=1)

        await core.run_tick(T - timedelta(minutes=5))

        assert ["Qualifying" in c for _, c in sender.sent] == [True, False]


class TestReap:
    async def test_reap_retracts_then_purges(self, core, sender, race):
        await core.run_tick(T - timedelta(minutes=5))
        assert repo_messages.count() == 2

        assert await core.reap(T + H - timedelta(seconds=1)) == 0
        assert await core.reap(T + H) == 2
        assert len(sender.retracted) == 2
        assert {c for c, _ in sender.retracted} == {str(F1_CHANNEL)}
        assert repo_messages.count() == 0

    async def test_reap_is_idempotent(self, core, sender, race):
        await core.run_tick(T - 23 * H)
        assert await core.reap(T + H) == 1
        assert await core.reap(T + H) == 0

    async def test_retract_failure_still_purges(self, core, sender, race, caplog):
        sender.retract_error = SendFailed(F1_CHANNEL, "Missing Access")
        await core.run_tick(T - 23 * H)
        with caplog.at_level(logging.WARNING):
            assert await core.reap(T + H) == 1
        assert "Could not retract" in caplog.text

    async def test_no_resend_after_reap(self, core, sender, race):
        await core.run_tick(T - timedelta(minutes=5))
        await core.reap(T + H)
        report = await core.run_tick(T + H + timedelta(minutes=1))
        assert report.sent == 0
        assert len(sender.sent) == 2
        assert repo_schedule.get_session(race.id).status == SessionStatus.COMPLETED

    async def test_reap_cleans_orphans(self, db, core, race):
        db.execute("PRAGMA foreign_keys=OFF;")
        db.execute("INSERT INTO sessions(weekend_id, start_time, name, duration, notify, status) "
                   "VALUES(999, '2026-03-15T14:00:00Z', 'Ghost', 3600, '10m', 'pending')")
        db.execute("PRAGMA foreign_keys=ON;")
        await core.reap(T)
        (n,) = db.execute("SELECT COUNT(*) FROM sessions WHERE weekend_id=999").fetchone()
        assert n == 0

    async def test_ledger_unavailable_skips_reap(self, core, race, monkeypatch):
        def down(as_of):
            raise LedgerUnavailable("list_expired: disk I/O error")

        monkeypatch.setattr(repo_messages, "list_expired", down)
        assert await core.reap(T + H) == 0
