"""Tests for the account coordinator: polling, optimistic updates and aggregation.

Background work runs inline (or deferred, for ordering tests); no Qt event loop
or timers are started.
"""

from datetime import timedelta

import pytest

from shared.models import AccountStatus, SearchKind, SearchResult, SourceKind
from shared.utils import format_date, local_today, parse_remote_datetime
from client.backends import TASK_MODEL, TIMESHEET_MODEL
from client.coordinator import PLACEHOLDER_ID_START, AccountCoordinator
from tests.conftest import DeferredRunner, remote_now


def run_inline(fn):
    fn()


@pytest.fixture
def coordinator(app_config, credentials, connector):
    return AccountCoordinator(app_config, credentials, connector=connector, run_async=run_inline)


def running_ids(coordinator, account_id):
    return [record.id for record in coordinator.timers_for(account_id) if record.is_running]


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------

class TestPolling:

    def test_successful_poll_fills_cache_and_clears_error(self, coordinator, remotes):
        remotes["work"].add_timesheet(1, name="Review")
        statuses = []
        coordinator.account_status_changed.connect(lambda account_id, status: statuses.append((account_id, status)))

        assert coordinator.refresh_account("work")

        assert [record.id for record in coordinator.timers_for("work")] == [1]
        assert coordinator.statuses()["work"] == {'status': "polling", 'error': None}
        assert ("work", "polling") in statuses

    def test_failed_poll_keeps_previous_slice(self, coordinator, remotes):
        remotes["work"].add_timesheet(1, name="Review")
        coordinator.refresh_account("work")
        remotes["work"].fail_models.add(TIMESHEET_MODEL)

        assert not coordinator.refresh_account("work")

        assert [record.id for record in coordinator.timers_for("work")] == [1]
        status = coordinator.statuses()["work"]
        assert status['status'] == AccountStatus.ERRORING.value
        assert "unavailable" in status['error']

    def test_failing_account_does_not_affect_others(self, coordinator, remotes):
        remotes["work"].auth_error = True
        remotes["side"].add_timesheet(3, name="Side job")

        coordinator.poll_all()

        assert coordinator.statuses()["work"]['status'] == "erroring"
        assert coordinator.statuses()["side"]['status'] == "polling"
        assert [record.id for record in coordinator.all_timers()] == [3]

    def test_missing_credential_is_unconfigured(self, app_config, credentials, connector):
        credentials.delete_api_key("side")
        coordinator = AccountCoordinator(app_config, credentials, connector=connector, run_async=run_inline)

        assert coordinator.statuses()["side"]['status'] == "unconfigured"
        assert not coordinator.refresh_account("side")
        assert "set-key side" in coordinator.account_error("side")

    def test_stale_poll_result_is_discarded(self, app_config, credentials, connector, remotes):
        runner = DeferredRunner()
        coordinator = AccountCoordinator(app_config, credentials, connector=connector, run_async=runner)
        remotes["work"].add_timesheet(1)

        coordinator.poll_now("work")
        first_poll = runner.pending.pop(0)
        remotes["work"].add_timesheet(2)
        coordinator.poll_now("work")
        runner.run_all()
        assert [record.id for record in coordinator.timers_for("work")] == [1, 2]

        # The older poll lands last with an outdated view
        remotes["work"].timesheets.pop(2)
        first_poll()

        assert [record.id for record in coordinator.timers_for("work")] == [1, 2]

    def test_at_most_one_running_per_account_after_poll(self, coordinator, remotes):
        remotes["work"].add_timesheet(1, timer_start="2026-03-02 08:00:00")
        remotes["work"].add_timesheet(2, timer_start="2026-03-02 10:00:00")

        coordinator.refresh_account("work")

        assert running_ids(coordinator, "work") == [2]

    def test_timers_changed_emitted(self, coordinator, remotes):
        emitted = []
        coordinator.timers_changed.connect(lambda: emitted.append(True))
        coordinator.refresh_account("work")
        assert emitted


# ---------------------------------------------------------------------------
# Optimistic mutations
# ---------------------------------------------------------------------------

class TestOptimisticUpdates:

    def test_start_converges_to_server_state(self, coordinator, remotes):
        work = remotes["work"]
        work.add_timesheet(41, name="Old", timer_start=remote_now())
        work.add_timesheet(42, name="New")
        coordinator.refresh_account("work")

        assert coordinator.start_timer("work", 42)

        assert running_ids(coordinator, "work") == [42]
        record = coordinator.find_timer("work:42")
        assert record.timer_start == parse_remote_datetime(work.timesheets[42]['timer_start'])

    def test_optimistic_write_precedes_remote_call(self, app_config, credentials, connector, remotes):
        runner = DeferredRunner()
        coordinator = AccountCoordinator(app_config, credentials, connector=connector, run_async=runner)
        remotes["work"].add_timesheet(41, timer_start=remote_now())
        remotes["work"].add_timesheet(42)
        remotes["side"].add_timesheet(7, timer_start=remote_now())
        coordinator.refresh_account("work")
        coordinator.refresh_account("side")

        coordinator.start_timer("work", 42)

        # Nothing has reached the server yet, but every other running flag is cleared
        assert remotes["work"].running_ids() == [41]
        assert running_ids(coordinator, "work") == [42]
        assert running_ids(coordinator, "side") == []
        assert coordinator.running_timer().composite_id == "work:42"

        runner.run_all()
        assert remotes["work"].running_ids() == [42]
        assert running_ids(coordinator, "work") == [42]

    def test_poll_in_flight_does_not_undo_optimistic_write(self, app_config, credentials, connector, remotes):
        runner = DeferredRunner()
        coordinator = AccountCoordinator(app_config, credentials, connector=connector, run_async=runner)
        remotes["work"].add_timesheet(42)
        coordinator.refresh_account("work")

        coordinator.poll_now("work")
        in_flight = runner.pending.pop(0)
        coordinator.start_timer("work", 42)
        in_flight()

        assert running_ids(coordinator, "work") == [42]

    def test_failed_remote_call_is_corrected_by_poll(self, coordinator, remotes):
        work = remotes["work"]
        work.add_timesheet(41, timer_start=remote_now())
        work.add_timesheet(42)
        work.fail_methods.add((TIMESHEET_MODEL, 'action_timer_start'))
        coordinator.refresh_account("work")

        assert coordinator.start_timer("work", 42)

        assert running_ids(coordinator, "work") == [41]

    def test_stop(self, coordinator, remotes):
        remotes["work"].add_timesheet(41, timer_start=remote_now())
        coordinator.refresh_account("work")

        assert coordinator.stop_timer("work", 41)

        assert running_ids(coordinator, "work") == []
        assert remotes["work"].running_ids() == []

    def test_toggle(self, coordinator, remotes):
        remotes["work"].add_timesheet(42)
        coordinator.refresh_account("work")

        coordinator.toggle_timer("work", 42)
        assert running_ids(coordinator, "work") == [42]
        coordinator.toggle_timer("work", 42)
        assert running_ids(coordinator, "work") == []

    def test_delete(self, coordinator, remotes):
        remotes["work"].add_timesheet(42)
        remotes["work"].add_timesheet(43)
        coordinator.refresh_account("work")

        assert coordinator.delete_timer("work", 42)

        assert [record.id for record in coordinator.timers_for("work")] == [43]
        assert 42 not in remotes["work"].timesheets

    def test_unknown_timer(self, coordinator):
        assert not coordinator.start_timer("work", 999)
        assert not coordinator.stop_timer("bogus", 1)
        assert not coordinator.toggle_timer("work", 999)
        assert not coordinator.delete_timer("work", 999)


# ---------------------------------------------------------------------------
# Starting from search results
# ---------------------------------------------------------------------------

class TestStartFromSearch:

    def test_placeholder_shown_until_poll(self, app_config, credentials, connector, remotes):
        runner = DeferredRunner()
        coordinator = AccountCoordinator(app_config, credentials, connector=connector, run_async=runner)
        remotes["work"].add_task(7, "Fix login", project=(3, "Internal"))

        hit = SearchResult(id=7, name="Fix login", kind=SearchKind.TASK, project_name="Internal")
        assert coordinator.start_from_search_result("work", hit)

        placeholder = coordinator.running_timer()
        assert placeholder.id <= PLACEHOLDER_ID_START
        assert placeholder.source.kind is SourceKind.TASK
        assert placeholder.project_name == "Internal"

        runner.run_all()

        running = coordinator.running_timer()
        assert running.id > 0
        assert running.source.id == 7
        assert [record for record in coordinator.timers_for("work") if record.is_placeholder] == []
        assert (TASK_MODEL, 'action_timer_start', [7]) in [call[1:] for call in remotes["work"].calls
                                                            if call[0] == 'call_method']

    def test_placeholder_ids_are_unique(self, app_config, credentials, connector):
        runner = DeferredRunner()
        coordinator = AccountCoordinator(app_config, credentials, connector=connector, run_async=runner)
        hit = SearchResult(id=9, name="Printer jam", kind=SearchKind.TICKET)

        coordinator.start_from_search_result("work", hit)
        coordinator.start_from_search_result("work", hit)

        ids = [record.id for record in coordinator.timers_for("work")]
        assert len(set(ids)) == 2
        assert all(record_id < 0 for record_id in ids)

    def test_recent_timesheet_in_cache_is_restarted(self, coordinator, remotes):
        remotes["work"].add_timesheet(30, name="Meeting")
        coordinator.refresh_account("work")
        hit = SearchResult(id=30, name="Meeting", kind=SearchKind.RECENT_TIMESHEET,
                           timesheet_id=30, source_kind=SourceKind.STANDALONE)

        assert coordinator.start_from_search_result("work", hit)

        assert running_ids(coordinator, "work") == [30]
        assert len(coordinator.timers_for("work")) == 1

    def test_older_standalone_timesheet_can_be_stopped_before_poll(self, app_config, credentials,
                                                                  connector, remotes):
        runner = DeferredRunner()
        coordinator = AccountCoordinator(app_config, credentials, connector=connector, run_async=runner)
        earlier = format_date(local_today() - timedelta(days=3))
        remotes["work"].add_timesheet(30, name="Meeting", date=earlier)
        hit = SearchResult(id=30, name="Meeting", kind=SearchKind.RECENT_TIMESHEET,
                           timesheet_id=30, source_kind=SourceKind.STANDALONE)

        coordinator.start_from_search_result("work", hit)
        started = coordinator.running_timer()
        assert started.id == 30

        assert coordinator.stop_timer("work", started.id)
        runner.run_all()

        stops = [call[1:] for call in remotes["work"].calls
                 if call[0] == 'call_method' and call[2] == 'action_timer_stop']
        assert stops == [(TIMESHEET_MODEL, 'action_timer_stop', [30])]
        assert remotes["work"].running_ids() == []

    def test_task_hit_restarts_cached_timesheet(self, coordinator, remotes):
        remotes["work"].add_task(7, "Fix login", project=(3, "Internal"))
        remotes["work"].add_timesheet(41, task=(7, "Fix login"), project=(3, "Internal"))
        coordinator.refresh_account("work")
        hit = SearchResult(id=7, name="Fix login", kind=SearchKind.TASK, project_name="Internal")

        assert coordinator.start_from_search_result("work", hit)

        assert [record.id for record in coordinator.timers_for("work")] == [41]
        assert running_ids(coordinator, "work") == [41]
        assert remotes["work"].running_ids() == [41]

    def test_task_hit_restart_leaves_no_duplicate_row_before_poll(self, app_config, credentials,
                                                                  connector, remotes):
        runner = DeferredRunner()
        coordinator = AccountCoordinator(app_config, credentials, connector=connector, run_async=runner)
        remotes["work"].add_timesheet(41, task=(7, "Fix login"))
        coordinator.refresh_account("work")

        coordinator.start_from_search_result("work", SearchResult(id=7, name="Fix login", kind=SearchKind.TASK))

        assert [(record.id, record.is_running) for record in coordinator.timers_for("work")] == [(41, True)]

    def test_unknown_account(self, coordinator):
        hit = SearchResult(id=7, name="Fix login", kind=SearchKind.TASK)
        assert not coordinator.start_from_search_result("bogus", hit)

    def test_task_hit_without_id(self, coordinator):
        with pytest.raises(ValueError):
            coordinator.start_from_search_result("work", SearchResult(id=None, name="x", kind=SearchKind.TASK))


# ---------------------------------------------------------------------------
# Queries and search
# ---------------------------------------------------------------------------

class TestQueries:

    def test_all_timers_running_first(self, coordinator, remotes):
        remotes["work"].add_timesheet(1)
        remotes["side"].add_timesheet(2, timer_start=remote_now())
        coordinator.poll_all()

        assert [record.composite_id for record in coordinator.all_timers()] == ["side:2", "work:1"]
        assert coordinator.has_running_timer()
        assert coordinator.running_timer().composite_id == "side:2"

    @pytest.mark.parametrize("composite_id", ["bogus:999", "work", "work:abc", "", ":1"])
    def test_find_timer_unknown(self, coordinator, remotes, composite_id):
        remotes["work"].add_timesheet(1)
        coordinator.refresh_account("work")
        assert coordinator.find_timer(composite_id) is None

    def test_find_timer_splits_on_first_colon(self, coordinator, remotes):
        remotes["work"].add_timesheet(1)
        coordinator.refresh_account("work")
        assert coordinator.find_timer("work:1").id == 1

    def test_base_url(self, coordinator):
        assert coordinator.base_url("work") == "https://work.example.com"
        assert coordinator.base_url("bogus") is None

    def test_search_fans_out_per_account(self, coordinator, remotes):
        remotes["work"].add_task(7, "Fix login")
        remotes["side"].add_task(8, "Login page")
        remotes["side"].fail_models.add(TASK_MODEL)

        results = coordinator.search("login")

        assert set(results) == {"work", "side"}
        assert [hit.id for hit in results["work"]] == [7]
        assert results["side"] == []
