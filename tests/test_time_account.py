"""Unit tests for TimeAccount: background debit, expiry, credits, reload."""

import json
import logging
from unittest.mock import ANY

import pytest

from screen_time.events import (
    CreditsAdded,
    TimeExpired,
    TimeUpdate,
    TrackingStarted,
    TrackingStopped,
)
from screen_time.lifecycle import AppState
from screen_time.store import TIMER_KEY
from screen_time.time_account import (
    PERSIST_INTERVAL_MS,
    TICK_JOB_ID,
    AccountState,
    TimeAccount,
    format_time,
)

from conftest import T0


# ---- Helpers ----

@pytest.fixture
def account(channel, records, scheduler, notifier, lifecycle, clock):
    return TimeAccount(channel, records, scheduler, notifier, lifecycle, clock=clock)


def funded(account: TimeAccount, seconds: int) -> TimeAccount:
    account.add_time_credits(seconds, now_ms=T0)
    return account


def background(account: TimeAccount, now_ms: int = T0) -> None:
    account.handle_app_state(AppState.BACKGROUND, now_ms)


# ---- format_time ----

class TestFormatTime:
    def test_zero(self):
        assert format_time(0) == "0:00"

    def test_under_a_minute(self):
        assert format_time(59) == "0:59"

    def test_minutes(self):
        assert format_time(3599) == "59:59"

    def test_hours(self):
        assert format_time(3600) == "1:00:00"
        assert format_time(3725) == "1:02:05"

    def test_negative_clamps(self):
        assert format_time(-30) == "0:00"


# ---- Credits ----

class TestCredits:
    async def test_add_credits(self, account, recorder):
        assert account.add_time_credits(300, now_ms=T0) == 300
        assert recorder.of_type(CreditsAdded) == [CreditsAdded(300, 300)]

    async def test_negative_credit_clamps_at_zero(self, account):
        funded(account, 10)
        assert account.add_time_credits(-50, now_ms=T0) == 0
        assert account.available_time == 0

    async def test_balance_never_negative(self, account):
        operations = [120, -30, -500, 45, 0, -45, 10, -11, 3600, -3599, -2]
        for seconds in operations:
            account.add_time_credits(seconds, now_ms=T0)
            assert account.available_time >= 0

    async def test_invalid_credit_ignored(self, account):
        funded(account, 60)
        assert account.add_time_credits("lots", now_ms=T0) == 60


# ---- Background tracking ----

class TestBackgroundTracking:
    async def test_enter_background_starts_tracking(self, account, scheduler, recorder):
        funded(account, 100)
        background(account)
        assert account.state == AccountState.TRACKING
        assert account.background_entered_ms == T0
        assert scheduler.add_job.call_args.kwargs["id"] == TICK_JOB_ID
        assert recorder.of_type(TrackingStarted) == [TrackingStarted(100, T0)]

    async def test_inactive_counts_as_background(self, account):
        funded(account, 100)
        account.handle_app_state(AppState.INACTIVE, T0)
        assert account.is_tracking

    async def test_tick_debits_elapsed_seconds(self, account, recorder):
        funded(account, 100)
        background(account)
        account.tick(T0 + 1000)
        account.tick(T0 + 2000)
        assert account.available_time == 98
        assert [e.elapsed for e in recorder.of_type(TimeUpdate)] == [1, 1]

    async def test_tick_is_idempotent_for_same_now(self, account):
        funded(account, 100)
        background(account)
        account.tick(T0 + 5000)
        once = account.get_tracking_status()
        account.tick(T0 + 5000)
        assert account.get_tracking_status() == once
        assert account.available_time == 95

    async def test_sub_second_remainder_carries(self, account):
        funded(account, 100)
        background(account)
        account.tick(T0 + 1500)
        account.tick(T0 + 2000)
        assert account.available_time == 98

    async def test_late_tick_reconciles_and_expires_once(self, account, scheduler, recorder):
        funded(account, 100)
        background(account)
        account.tick(T0 + 150_000)
        account.tick(T0 + 151_000)
        account.tick(T0 + 152_000)
        assert account.available_time == 0
        assert account.state == AccountState.EXPIRED
        assert len(recorder.of_type(TimeExpired)) == 1
        scheduler.remove_job.assert_any_call(TICK_JOB_ID)

    async def test_late_tick_reports_when_balance_ran_out(self, account, recorder):
        funded(account, 100)
        background(account)
        account.tick(T0 + 150_000)
        expired = recorder.of_type(TimeExpired)[0]
        assert expired.at_ms == T0 + 100_000
        assert expired.expired_during == "background"

    async def test_settle_applies_pending_debit(self, account):
        funded(account, 100)
        background(account)
        assert account.settle(T0 + 30_500) == 70
        account.tick(T0 + 31_000)
        assert account.available_time == 69

    async def test_settle_in_foreground_is_noop(self, account):
        funded(account, 100)
        assert account.settle(T0 + 60_000) == 100

    async def test_expiry_notifies(self, account, notifier):
        funded(account, 5)
        background(account)
        account.tick(T0 + 5000)
        notifier.schedule_at.assert_any_call("time-expired", ANY, T0 + 5000)

    async def test_background_with_zero_balance_is_expired(self, account, scheduler, recorder):
        background(account)
        assert account.state == AccountState.EXPIRED
        assert recorder.of_type(TimeExpired) == [TimeExpired(at_ms=T0, expired_during="background")]
        scheduler.add_job.assert_not_called()

    async def test_foreground_reconciles_final_debit(self, account, recorder):
        funded(account, 100)
        background(account)
        account.handle_app_state(AppState.ACTIVE, T0 + 42_500)
        assert account.available_time == 58
        assert account.state == AccountState.FOREGROUND
        stopped = recorder.of_type(TrackingStopped)
        assert stopped == [TrackingStopped(58, 42, T0 + 42_500)]

    async def test_foreground_stops_further_debit(self, account):
        funded(account, 100)
        background(account)
        account.handle_app_state(AppState.ACTIVE, T0 + 10_000)
        account.tick(T0 + 60_000)
        assert account.available_time == 90

    async def test_clock_moving_backwards_skips_debit(self, account, caplog):
        funded(account, 100)
        background(account)
        account.tick(T0 + 10_000)
        with caplog.at_level(logging.WARNING):
            account.tick(T0 + 4_000)
        assert account.available_time == 90
        assert "Clock moved backwards" in caplog.text
        # Debits resume from the new base
        account.tick(T0 + 6_000)
        assert account.available_time == 88

    async def test_low_time_warnings_scheduled(self, account, notifier):
        funded(account, 600)
        background(account)
        scheduled = {c.args[0]: c.args[2] for c in notifier.schedule_at.call_args_list}
        assert scheduled["time-warning-5"] == T0 + 300_000
        assert scheduled["time-warning-1"] == T0 + 540_000

    async def test_low_time_warning_skipped_when_balance_short(self, account, notifier):
        funded(account, 120)
        background(account)
        ids = [c.args[0] for c in notifier.schedule_at.call_args_list]
        assert ids == ["time-warning-1"]

    async def test_notifier_failure_is_swallowed(self, account, notifier):
        notifier.schedule_at.side_effect = RuntimeError("push service down")
        funded(account, 600)
        background(account)
        assert account.is_tracking


class TestCreditsWhileBackgrounded:
    async def test_credit_while_expired_resumes_tracking(self, account, recorder):
        background(account)
        account.add_time_credits(60, now_ms=T0 + 5_000)
        assert account.state == AccountState.TRACKING
        assert recorder.of_type(TrackingStarted) == [TrackingStarted(60, T0 + 5_000)]
        account.tick(T0 + 15_000)
        assert account.available_time == 50

    async def test_credit_settles_running_debit_first(self, account):
        funded(account, 100)
        background(account)
        account.add_time_credits(30, now_ms=T0 + 20_000)
        assert account.available_time == 110

    async def test_clearing_balance_while_tracking_expires(self, account, recorder):
        funded(account, 100)
        background(account)
        account.add_time_credits(-100, now_ms=T0)
        assert account.state == AccountState.EXPIRED
        assert len(recorder.of_type(TimeExpired)) == 1

    async def test_zero_credit_while_expired_stays_expired(self, account):
        background(account)
        account.add_time_credits(0, now_ms=T0 + 1000)
        assert account.state == AccountState.EXPIRED


# ---- Persistence ----

class TestPersistence:
    async def test_round_trip_with_zero_elapsed(
        self, account, records, scheduler, notifier, lifecycle, channel, clock
    ):
        funded(account, 1234)
        account.persist(T0)
        await records.flush()

        reloaded = TimeAccount(channel, records, scheduler, notifier, lifecycle, clock=clock)
        assert await reloaded.load(T0) == 1234

    async def test_round_trip_while_tracking(
        self, account, records, scheduler, notifier, lifecycle, channel, clock
    ):
        funded(account, 500)
        background(account)
        account.tick(T0 + 7_000)
        account.persist(T0 + 7_000)
        await records.flush()

        reloaded = TimeAccount(channel, records, scheduler, notifier, lifecycle, clock=clock)
        assert await reloaded.load(T0 + 7_000) == 493

    async def test_periodic_persist_every_30_seconds(self, account, memory_store, records):
        funded(account, 500)
        background(account)
        await records.flush()
        memory_store.data.clear()

        account.tick(T0 + 10_000)
        await records.flush()
        assert TIMER_KEY not in memory_store.data

        account.tick(T0 + PERSIST_INTERVAL_MS)
        await records.flush()
        saved = json.loads(memory_store.data[TIMER_KEY])
        assert saved["availableTime"] == 470
        assert saved["wasTracking"] is True
        assert saved["backgroundStartTime"] == T0

    async def test_restart_while_tracking_debits_gap_once(
        self, account, records, scheduler, notifier, lifecycle, channel, clock
    ):
        funded(account, 600)
        background(account)
        account.tick(T0 + 30_000)  # persists at the 30s mark
        await records.flush()

        # Process dies; relaunched 100s after the last persisted tick
        reloaded = TimeAccount(channel, records, scheduler, notifier, lifecycle, clock=clock)
        assert await reloaded.load(T0 + 130_000) == 470

    async def test_restart_uses_background_start_for_legacy_records(
        self, memory_store, records, scheduler, notifier, lifecycle, channel, clock
    ):
        memory_store.data[TIMER_KEY] = json.dumps({
            "availableTime": 300,
            "wasTracking": True,
            "backgroundStartTime": T0,
            "lastUpdated": "2026-03-10T12:00:00",
        })
        account = TimeAccount(channel, records, scheduler, notifier, lifecycle, clock=clock)
        assert await account.load(T0 + 60_000) == 240

    async def test_restart_clamps_at_zero(
        self, memory_store, records, scheduler, notifier, lifecycle, channel, clock
    ):
        memory_store.data[TIMER_KEY] = json.dumps({
            "availableTime": 30,
            "wasTracking": True,
            "backgroundStartTime": T0,
            "lastUpdated": T0,
        })
        account = TimeAccount(channel, records, scheduler, notifier, lifecycle, clock=clock)
        assert await account.load(T0 + 3_600_000) == 0

    async def test_restart_that_empties_balance_reports_expiry(
        self, memory_store, records, scheduler, notifier, lifecycle, channel, recorder, clock
    ):
        memory_store.data[TIMER_KEY] = json.dumps({
            "availableTime": 30,
            "wasTracking": True,
            "backgroundStartTime": T0,
            "lastUpdated": T0,
        })
        account = TimeAccount(channel, records, scheduler, notifier, lifecycle, clock=clock)
        await account.load(T0 + 3_600_000)
        assert recorder.of_type(TimeExpired) == [
            TimeExpired(at_ms=T0 + 3_600_000, expired_during="foreground")
        ]

    async def test_restart_with_time_left_does_not_report_expiry(
        self, memory_store, records, scheduler, notifier, lifecycle, channel, recorder, clock
    ):
        memory_store.data[TIMER_KEY] = json.dumps({
            "availableTime": 300,
            "wasTracking": True,
            "backgroundStartTime": T0,
            "lastUpdated": T0,
        })
        account = TimeAccount(channel, records, scheduler, notifier, lifecycle, clock=clock)
        await account.load(T0 + 60_000)
        assert recorder.of_type(TimeExpired) == []

    async def test_malformed_payload_uses_defaults(
        self, memory_store, records, scheduler, notifier, lifecycle, channel, clock, caplog
    ):
        memory_store.data[TIMER_KEY] = "{not json"
        account = TimeAccount(channel, records, scheduler, notifier, lifecycle, clock=clock)
        with caplog.at_level(logging.WARNING):
            assert await account.load(T0) == 0
        assert "Malformed payload" in caplog.text

    async def test_wrong_types_use_defaults(
        self, memory_store, records, scheduler, notifier, lifecycle, channel, clock
    ):
        memory_store.data[TIMER_KEY] = json.dumps({"availableTime": "many"})
        account = TimeAccount(channel, records, scheduler, notifier, lifecycle, clock=clock)
        assert await account.load(T0) == 0

    async def test_storage_read_failure_uses_defaults(
        self, memory_store, records, scheduler, notifier, lifecycle, channel, clock
    ):
        memory_store.fail_reads = True
        account = TimeAccount(channel, records, scheduler, notifier, lifecycle, clock=clock)
        assert await account.load(T0) == 0

    async def test_write_failure_is_tolerated(self, account, memory_store, records, caplog):
        memory_store.fail_writes = True
        with caplog.at_level(logging.WARNING):
            funded(account, 60)
            await records.flush()
        assert account.available_time == 60
        assert "Storage write failed" in caplog.text


# ---- Startup / cleanup ----

class TestStartAndCleanup:
    async def test_start_applies_current_background_state(
        self, channel, records, scheduler, notifier, lifecycle, clock
    ):
        lifecycle.set_state(AppState.BACKGROUND)
        account = TimeAccount(channel, records, scheduler, notifier, lifecycle, clock=clock)
        account.add_time_credits(100, now_ms=T0)
        account.start(T0)
        assert account.is_tracking

    async def test_lifecycle_source_drives_transitions(self, account, lifecycle, clock):
        funded(account, 100)
        account.start()
        lifecycle.set_state(AppState.BACKGROUND)
        assert account.is_tracking
        clock.advance(20)
        lifecycle.set_state(AppState.ACTIVE)
        assert account.available_time == 80

    async def test_cleanup_is_idempotent(self, account, notifier):
        account.start()
        account.cleanup()
        account.cleanup()
        assert not account.is_active
        notifier.cancel_all.assert_called_once()

    async def test_late_lifecycle_callback_ignored(self, account, lifecycle):
        funded(account, 100)
        account.start()
        account.cleanup()
        account.handle_app_state(AppState.BACKGROUND, T0)
        lifecycle.set_state(AppState.BACKGROUND)
        assert not account.is_tracking
        assert account.app_state == AppState.ACTIVE

    async def test_no_mutation_after_cleanup(self, account, clock):
        funded(account, 100)
        background(account)
        clock.now = T0 + 10_000
        account.cleanup()
        assert account.available_time == 90
        account.tick(T0 + 50_000)
        account.add_time_credits(500)
        assert account.available_time == 90

    async def test_cleanup_keeps_tracking_flag_for_relaunch(
        self, account, records, memory_store, clock
    ):
        funded(account, 100)
        background(account)
        clock.now = T0 + 10_000
        account.cleanup()
        await records.flush()
        saved = json.loads(memory_store.data[TIMER_KEY])
        assert saved["wasTracking"] is True
        assert saved["availableTime"] == 90

    async def test_tick_job_swallows_errors(self, account, monkeypatch, caplog):
        def boom(now_ms):
            raise RuntimeError("tick exploded")

        monkeypatch.setattr(account, "tick", boom)
        with caplog.at_level(logging.ERROR):
            await account._tick_job()
        assert "tick failed" in caplog.text

    async def test_reset_clears_balance(self, account, recorder):
        funded(account, 100)
        background(account)
        account.reset(T0 + 1000)
        assert account.available_time == 0
        assert not account.is_tracking
        assert account.state == AccountState.EXPIRED
