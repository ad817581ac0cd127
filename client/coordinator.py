"""
Account coordinator for TimeBar.
Owns one record service per configured account, polls each account on its own
timer, holds the local timer cache and applies user actions optimistically.

The cache is only touched under ``_lock``. Polls and remote mutation calls run
on background threads and hand their results back through that lock.
"""

import itertools
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from PyQt6.QtCore import QObject, QTimer, pyqtSignal

from shared.config import CredentialStore
from shared.exceptions import MissingCredentialError
from shared.logging_config import get_sync_logger
from shared.models import (AccountConfig, AccountStatus, AppConfig, SearchKind, SearchResult, SourceKind,
                           TimerRecord, TimerSource)
from shared.utils import format_date, local_today, sanitize_url
from client.capabilities import CapabilityDetector
from client.connection import Connection, make_connection
from client.timer_service import TimerService, recent_source

logger = get_sync_logger()

# Placeholders for search starts count down from here so they never collide
# with the -<timer.timer id> placeholders of the legacy backend
PLACEHOLDER_ID_START = -1_000_000_000

Connector = Callable[..., Connection]


def run_in_thread(fn: Callable[[], None]) -> None:
    """Run fn on a daemon thread, logging anything it raises"""
    def background():
        try:
            fn()
        except Exception as e:
            logger.error(f"Background task error: {e}")

    thread = threading.Thread(target=background, daemon=True)
    thread.start()


class _AccountState:
    """Per-account slice of the coordinator state"""

    def __init__(self, account: AccountConfig):
        self.account = account
        self.status = AccountStatus.CONNECTING
        self.error: Optional[str] = None
        self.timers: List[TimerRecord] = []
        self.service: Optional[TimerService] = None
        self.detector = CapabilityDetector(account.id)
        self.connect_lock = threading.Lock()

        # Sequence numbers: issued when a poll tick fires, applied when its result lands
        self.issued_seq = 0
        self.applied_seq = 0


class AccountCoordinator(QObject):
    """
    Coordinates all configured accounts:
    - Per-account poll loops with stale-result protection
    - Optimistic start/stop/delete reconciled by an immediate poll
    - Cross-account aggregation and search
    """

    timers_changed = pyqtSignal()
    account_status_changed = pyqtSignal(str, str)  # account id, status value

    def __init__(self, config: AppConfig, credentials: Optional[CredentialStore] = None,
                 connector: Connector = make_connection,
                 run_async: Callable[[Callable[[], None]], None] = run_in_thread,
                 parent=None):
        super().__init__(parent)

        self.config = config
        self.credentials = credentials or CredentialStore()
        self._connector = connector
        self._run_async = run_async

        self._lock = threading.RLock()
        self._states: Dict[str, _AccountState] = {}
        self._poll_timers: Dict[str, QTimer] = {}
        self._placeholder_ids = itertools.count(PLACEHOLDER_ID_START, -1)

        for account in config.accounts:
            state = _AccountState(account)
            if not self.credentials.get_api_key(account.id):
                state.status = AccountStatus.UNCONFIGURED
                state.error = str(MissingCredentialError(account.id))
            self._states[account.id] = state

        logger.info(f"Coordinator ready with {len(self._states)} account(s)")

    # Connection

    def _service(self, account_id: str) -> TimerService:
        """Return the account's record service, connecting on first use"""
        state = self._states[account_id]
        if state.service is not None:
            return state.service

        with state.connect_lock:
            if state.service is None:
                api_key = self.credentials.get_api_key(account_id)
                if not api_key:
                    raise MissingCredentialError(account_id)

                self._set_status(account_id, AccountStatus.CONNECTING, None)
                connection = self._connector(state.account, api_key, timeout=self.config.request_timeout)
                state.service = TimerService(account_id, connection, state.detector)
                logger.info(f"[{account_id}] Connected using {connection.dialect.value} dialect")
        return state.service

    def _set_status(self, account_id: str, status: AccountStatus, error: Optional[str]) -> None:
        with self._lock:
            state = self._states[account_id]
            changed = state.status is not status or state.error != error
            state.status = status
            state.error = error
        if changed:
            self.account_status_changed.emit(account_id, status.value)

    # Polling

    def start_polling(self) -> None:
        """Start one poll timer per account and poll everything right away"""
        interval_ms = self.config.poll_interval * 1000
        for account_id in self._states:
            if account_id not in self._poll_timers:
                timer = QTimer(self)
                timer.timeout.connect(lambda aid=account_id: self.poll_now(aid))
                self._poll_timers[account_id] = timer
            self._poll_timers[account_id].start(interval_ms)
            self.poll_now(account_id)
        logger.info(f"Polling {len(self._states)} account(s) every {self.config.poll_interval}s")

    def stop_polling(self) -> None:
        for timer in self._poll_timers.values():
            timer.stop()
        logger.info("Polling stopped")

    def _next_seq(self, account_id: str) -> int:
        with self._lock:
            state = self._states[account_id]
            state.issued_seq += 1
            return state.issued_seq

    def poll_now(self, account_id: str) -> None:
        """Poll one account in the background"""
        if account_id not in self._states:
            return
        seq = self._next_seq(account_id)
        self._run_async(lambda: self._poll(account_id, seq))

    def poll_all(self) -> None:
        for account_id in list(self._states):
            self.poll_now(account_id)

    def refresh_account(self, account_id: str) -> bool:
        """Poll one account on the calling thread. Returns True when the fetch succeeded."""
        if account_id not in self._states:
            return False
        return self._poll(account_id, self._next_seq(account_id))

    def _poll(self, account_id: str, seq: int) -> bool:
        try:
            records = self._service(account_id).fetch_today()
        except MissingCredentialError as e:
            self._apply_failure(account_id, seq, AccountStatus.UNCONFIGURED, str(e))
            return False
        except Exception as e:
            logger.error(f"[{account_id}] Poll failed: {e}")
            self._apply_failure(account_id, seq, AccountStatus.ERRORING, str(e))
            return False

        return self._apply_records(account_id, seq, records)

    def _is_stale(self, state: _AccountState, seq: int) -> bool:
        if seq <= state.applied_seq:
            logger.debug(f"[{state.account.id}] Discarding stale poll #{seq} (applied #{state.applied_seq})")
            return True
        state.applied_seq = seq
        return False

    def _apply_records(self, account_id: str, seq: int, records: List[TimerRecord]) -> bool:
        """Replace the account's cache slice with a poll result"""
        with self._lock:
            state = self._states[account_id]
            if self._is_stale(state, seq):
                return False
            state.timers = list(records)

        running = sum(1 for record in records if record.is_running)
        logger.debug(f"[{account_id}] Poll #{seq}: {running} running, {len(records) - running} stopped")
        self._set_status(account_id, AccountStatus.POLLING, None)
        self.timers_changed.emit()
        return True

    def _apply_failure(self, account_id: str, seq: int, status: AccountStatus, error: str) -> None:
        """Record a poll failure, keeping the previous cache slice"""
        with self._lock:
            if self._is_stale(self._states[account_id], seq):
                return
        self._set_status(account_id, status, error)

    # Optimistic mutations

    def _invalidate_in_flight(self, state: _AccountState) -> None:
        """Polls issued before an optimistic write must not overwrite it"""
        state.applied_seq = state.issued_seq

    def _mark_running(self, target: Optional[TimerRecord], now: datetime) -> None:
        """Stop every cached timer in every account and start target (caller holds the lock)"""
        for state in self._states.values():
            state.timers = [
                record.with_running(True, now) if target is not None and record is target
                else record.with_running(False) if record.is_running
                else record
                for record in state.timers
            ]

    def _run_remote(self, account_id: str, action: str,
                    call: Callable[[TimerService], None]) -> None:
        """Fire the remote call in the background, then reconcile with a poll"""
        def remote():
            try:
                call(self._service(account_id))
            except Exception as e:
                logger.warning(f"[{account_id}] {action} failed: {e}")
            self._poll(account_id, self._next_seq(account_id))

        self._run_async(remote)

    def _find(self, account_id: str, record_id: int) -> Optional[TimerRecord]:
        state = self._states.get(account_id)
        if state is None:
            return None
        for record in state.timers:
            if record.id == record_id:
                return record
        return None

    def start_timer(self, account_id: str, record_id: int) -> bool:
        """Start a cached timer. Returns False when it is unknown."""
        with self._lock:
            record = self._find(account_id, record_id)
            if record is None:
                return False
            self._mark_running(record, datetime.now(timezone.utc))
            self._invalidate_in_flight(self._states[account_id])

        logger.info(f"[{account_id}] Starting #{record_id}")
        self.timers_changed.emit()
        self._run_remote(account_id, f"Start #{record_id}", lambda service: service.start_timer(record))
        return True

    def stop_timer(self, account_id: str, record_id: int) -> bool:
        """Stop a cached timer. Returns False when it is unknown."""
        with self._lock:
            record = self._find(account_id, record_id)
            if record is None:
                return False
            state = self._states[account_id]
            state.timers = [item.with_running(False) if item is record else item for item in state.timers]
            self._invalidate_in_flight(state)

        logger.info(f"[{account_id}] Stopping #{record_id}")
        self.timers_changed.emit()
        self._run_remote(account_id, f"Stop #{record_id}", lambda service: service.stop_timer(record))
        return True

    def toggle_timer(self, account_id: str, record_id: int) -> bool:
        with self._lock:
            record = self._find(account_id, record_id)
        if record is None:
            return False
        if record.is_running:
            return self.stop_timer(account_id, record_id)
        return self.start_timer(account_id, record_id)

    def delete_timer(self, account_id: str, record_id: int) -> bool:
        """Drop a timer from the cache and delete it remotely"""
        with self._lock:
            record = self._find(account_id, record_id)
            if record is None:
                return False
            state = self._states[account_id]
            state.timers = [item for item in state.timers if item is not record]
            self._invalidate_in_flight(state)

        logger.info(f"[{account_id}] Deleting #{record_id}")
        self.timers_changed.emit()
        self._run_remote(account_id, f"Delete #{record_id}", lambda service: service.delete_timesheet(record))
        return True

    def start_from_search_result(self, account_id: str, result: SearchResult) -> bool:
        """Start a timer from a search hit, showing a placeholder until the next poll.

        Returns False for an unknown account; raises ValueError for a hit
        that does not say what to start.
        """
        if account_id not in self._states:
            return False

        if result.kind is SearchKind.TASK or result.kind is SearchKind.TICKET:
            if result.id is None:
                raise ValueError(f"A {result.kind.value} search result needs an id")
        elif result.timesheet_id is None:
            raise ValueError("A recent timesheet search result needs a timesheetId")

        now = datetime.now(timezone.utc)
        with self._lock:
            state = self._states[account_id]
            if result.kind is SearchKind.RECENT_TIMESHEET:
                existing = self._find(account_id, result.timesheet_id)
            else:
                existing = self._find_by_source(account_id, result)

            if existing is not None:
                self._mark_running(existing, now)
            else:
                placeholder = self._make_placeholder(account_id, result, now)
                self._mark_running(None, now)
                state.timers = state.timers + [placeholder]
            self._invalidate_in_flight(state)

        logger.info(f"[{account_id}] Starting from {result.kind.value} search hit '{result.name}'")
        self.timers_changed.emit()
        self._run_remote(account_id, f"Start from '{result.name}'",
                         lambda service: self._start_remote(service, result, existing))
        return True

    def _find_by_source(self, account_id: str, result: SearchResult) -> Optional[TimerRecord]:
        """Today's cached timesheet for a task or ticket hit, if any"""
        kind = SourceKind.TASK if result.kind is SearchKind.TASK else SourceKind.TICKET
        for record in self._states[account_id].timers:
            if record.source.kind is kind and record.source.id == result.id:
                return record
        return None

    def _make_placeholder(self, account_id: str, result: SearchResult, now: datetime) -> TimerRecord:
        if result.kind is SearchKind.TASK:
            source = TimerSource.task(result.id, result.name)
        elif result.kind is SearchKind.TICKET:
            source = TimerSource.ticket(result.id, result.name)
        else:
            source = recent_source(result)

        # An older standalone timesheet already exists remotely; keep its id
        # so stop and delete reach it before the next poll
        if source.kind is SourceKind.STANDALONE:
            record_id = result.timesheet_id
        else:
            record_id = next(self._placeholder_ids)

        return TimerRecord(
            id=record_id,
            account_id=account_id,
            name=result.name,
            project_name=result.project_name,
            source=source,
            timer_start=now,
            date=format_date(local_today()),
        )

    @staticmethod
    def _start_remote(service: TimerService, result: SearchResult,
                      existing: Optional[TimerRecord]) -> None:
        if existing is not None:
            service.start_timer(existing)
        elif result.kind is SearchKind.TASK:
            service.start_timer_on_task(result.id)
        elif result.kind is SearchKind.TICKET:
            service.start_timer_on_ticket(result.id)
        else:
            source = recent_source(result)
            if source.kind is SourceKind.TASK:
                service.start_timer_on_task(source.id)
            elif source.kind is SourceKind.TICKET:
                service.start_timer_on_ticket(source.id)
            else:
                # Resume an older standalone timesheet
                service.start_timer(TimerRecord(id=result.timesheet_id, account_id=service.account_id,
                                                name=result.name))

    # Queries

    def accounts(self) -> List[AccountConfig]:
        return [state.account for state in self._states.values()]

    def base_url(self, account_id: str) -> Optional[str]:
        state = self._states.get(account_id)
        return sanitize_url(state.account.url) if state else None

    def statuses(self) -> Dict[str, Dict[str, Optional[str]]]:
        with self._lock:
            return {account_id: {'status': state.status.value, 'error': state.error}
                    for account_id, state in self._states.items()}

    def account_error(self, account_id: str) -> Optional[str]:
        with self._lock:
            state = self._states.get(account_id)
            return state.error if state else None

    def timers_for(self, account_id: str) -> List[TimerRecord]:
        with self._lock:
            state = self._states.get(account_id)
            return list(state.timers) if state else []

    def all_timers(self) -> List[TimerRecord]:
        """Every account's cached timers, running first"""
        with self._lock:
            records = [record for state in self._states.values() for record in state.timers]
        return sorted(records, key=lambda record: 0 if record.is_running else 1)

    def running_timer(self) -> Optional[TimerRecord]:
        for record in self.all_timers():
            if record.is_running:
                return record
        return None

    def has_running_timer(self) -> bool:
        return self.running_timer() is not None

    def find_timer(self, composite_id: str) -> Optional[TimerRecord]:
        """Resolve ``accountId:recordId``, splitting on the first colon"""
        account_id, sep, raw_id = (composite_id or "").partition(':')
        if not sep:
            return None
        try:
            record_id = int(raw_id)
        except ValueError:
            return None
        with self._lock:
            return self._find(account_id, record_id)

    # Search

    def _search_account(self, account_id: str, query: str) -> List[SearchResult]:
        try:
            return self._service(account_id).search(query)
        except Exception as e:
            logger.warning(f"[{account_id}] Search failed: {e}")
            return []

    def search(self, query: str) -> Dict[str, List[SearchResult]]:
        """Search every account concurrently, keyed by account id"""
        account_ids = list(self._states)
        if not account_ids:
            return {}
        with ThreadPoolExecutor(max_workers=len(account_ids)) as pool:
            futures = {account_id: pool.submit(self._search_account, account_id, query)
                       for account_id in account_ids}
            return {account_id: future.result() for account_id, future in futures.items()}
