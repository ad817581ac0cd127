"""
Record service for one account.
Fetches, parses and mutates timesheet records through the account's
transport and timer backend, and searches related record kinds.
"""

from datetime import date
from typing import Any, Dict, List, Optional

from shared.exceptions import TimeBarError
from shared.logging_config import get_sync_logger
from shared.models import (Capabilities, SearchKind, SearchResult, SourceKind,
                           TimerRecord, TimerSource)
from shared.utils import days_ago, format_date, local_today, parse_many2one, parse_remote_datetime
from client.backends import TASK_MODEL, TICKET_MODEL, TIMESHEET_MODEL
from client.capabilities import TICKET_FIELD, CapabilityDetector
from client.connection import Connection

logger = get_sync_logger()

BASE_FIELDS = ['name', 'project_id', 'task_id', 'unit_amount', 'timer_start', 'date']

TASK_SEARCH_LIMIT = 7
TICKET_SEARCH_LIMIT = 5
RECENT_SEARCH_LIMIT = 5
RECENT_DAYS = 7
RECENT_SCAN_LIMIT = 50


def parse_source(row: Dict[str, Any]) -> TimerSource:
    """Linked task wins over linked ticket; neither means standalone"""
    task = parse_many2one(row.get('task_id'))
    if task:
        return TimerSource.task(*task)
    ticket = parse_many2one(row.get(TICKET_FIELD))
    if ticket:
        return TimerSource.ticket(*ticket)
    return TimerSource.standalone()


def parse_record(row: Dict[str, Any], account_id: str) -> Optional[TimerRecord]:
    """Parse one timesheet row, None when it has no usable id.

    Optional fields may be absent or ``false``.
    """
    record_id = row.get('id')
    if isinstance(record_id, bool) or not isinstance(record_id, int):
        return None

    name = row.get('name')
    project = parse_many2one(row.get('project_id'))
    unit_amount = row.get('unit_amount')
    if isinstance(unit_amount, bool) or not isinstance(unit_amount, (int, float)):
        unit_amount = 0.0
    record_date = row.get('date')

    return TimerRecord(
        id=record_id,
        account_id=account_id,
        name=name if isinstance(name, str) else "",
        project_name=project[1] if project else None,
        source=parse_source(row),
        unit_amount=float(unit_amount),
        timer_start=parse_remote_datetime(row.get('timer_start')),
        date=record_date if isinstance(record_date, str) else "",
    )


def keep_single_running(records: List[TimerRecord], account_id: str = "") -> List[TimerRecord]:
    """Leave at most one record running: the most recently started one"""
    running = [record for record in records if record.is_running]
    if len(running) <= 1:
        return records

    keep = max(running, key=lambda record: record.timer_start)
    logger.warning(f"[{account_id}] {len(running)} running timers reported, keeping #{keep.id}")
    return [record if record is keep or not record.is_running else record.with_running(False)
            for record in records]


class TimerService:
    """Remote operations for one account"""

    def __init__(self, account_id: str, connection: Connection,
                 detector: Optional[CapabilityDetector] = None):
        self.account_id = account_id
        self.connection = connection
        self.detector = detector or CapabilityDetector(account_id)

    @property
    def transport(self):
        return self.connection.transport

    @property
    def backend(self):
        return self.connection.backend

    def capabilities(self) -> Capabilities:
        return self.detector.detect(self.transport)

    def fields_to_fetch(self) -> List[str]:
        fields = list(BASE_FIELDS)
        if self.capabilities().has_ticket_field:
            fields.append(TICKET_FIELD)
        return fields

    # Fetching

    def fetch_today(self, today: Optional[date] = None) -> List[TimerRecord]:
        """All of today's timesheets for the session user, running state merged in"""
        uid = self.transport.authenticate()
        day = format_date(today or local_today())
        fields = self.fields_to_fetch()
        capabilities = self.capabilities()

        rows = self.transport.search_read(
            TIMESHEET_MODEL,
            [['user_id', '=', uid], ['date', '=', day]],
            fields,
        )

        records = []
        for row in rows:
            record = parse_record(row, self.account_id) if isinstance(row, dict) else None
            if record is None:
                logger.debug(f"[{self.account_id}] Skipping unparseable timesheet row: {row!r}")
                continue
            records.append(record)

        records = self.backend.enrich_running_state(records, self.transport, uid,
                                                    self.account_id, capabilities)
        return keep_single_running(records, self.account_id)

    # Mutations

    def start_timer(self, record: TimerRecord) -> None:
        self.backend.start_timer(record, self.transport)

    def stop_timer(self, record: TimerRecord) -> Any:
        return self.backend.stop_timer(record, self.transport)

    def delete_timesheet(self, record: TimerRecord) -> None:
        """Delete a timesheet. Placeholders have no remote record."""
        if record.is_placeholder:
            logger.debug(f"[{self.account_id}] #{record.id} is a placeholder, nothing to unlink")
            return
        self.transport.call_method(TIMESHEET_MODEL, 'unlink', [record.id])

    def start_timer_on_task(self, task_id: int) -> None:
        """Start a timer on a task; the server creates the timesheet"""
        self.transport.call_method(TASK_MODEL, 'action_timer_start', [task_id])

    def start_timer_on_ticket(self, ticket_id: int) -> None:
        """Start a timer on a helpdesk ticket; the server creates the timesheet"""
        self.transport.call_method(TICKET_MODEL, 'action_timer_start', [ticket_id])

    # Search

    def search_tasks(self, query: str, limit: int = TASK_SEARCH_LIMIT) -> List[SearchResult]:
        """Timesheet-enabled tasks by name; an empty query lists the user's own tasks"""
        domain: List[list] = [['allow_timesheets', '=', True]]
        if not query:
            uid = self.transport.authenticate()
            domain.insert(0, ['user_ids', 'in', [uid]])

        pairs = self.transport.name_search(TASK_MODEL, query, domain, limit=limit)
        if not pairs:
            return []

        # name_search only returns (id, display_name)
        rows = self.transport.search_read(TASK_MODEL, [['id', 'in', [task_id for task_id, _ in pairs]]],
                                          ['id', 'project_id'])
        projects = {}
        for row in rows:
            project = parse_many2one(row.get('project_id'))
            if project and isinstance(row.get('id'), int):
                projects[row['id']] = project[1]

        return [SearchResult(id=task_id, name=name, kind=SearchKind.TASK,
                             project_name=projects.get(task_id))
                for task_id, name in pairs]

    def search_tickets(self, query: str, limit: int = TICKET_SEARCH_LIMIT) -> List[SearchResult]:
        if not self.capabilities().has_ticket_field:
            return []
        pairs = self.transport.name_search(TICKET_MODEL, query, [], limit=limit)
        return [SearchResult(id=ticket_id, name=name, kind=SearchKind.TICKET)
                for ticket_id, name in pairs]

    def search_recent_timesheets(self, query: str, limit: int = RECENT_SEARCH_LIMIT,
                                 today: Optional[date] = None) -> List[SearchResult]:
        """Timesheets of the last week, one hit per task, ticket or standalone entry.

        Newest first; ``query`` matches the display label or the project name.
        """
        uid = self.transport.authenticate()
        since = format_date(days_ago(RECENT_DAYS, today))
        rows = self.transport.search_read(
            TIMESHEET_MODEL,
            [['user_id', '=', uid], ['date', '>=', since]],
            self.fields_to_fetch(),
            limit=RECENT_SCAN_LIMIT,
        )

        records = [record for record in (parse_record(row, self.account_id)
                                         for row in rows if isinstance(row, dict))
                   if record is not None]
        records.sort(key=lambda record: (record.date, record.id), reverse=True)

        needle = query.lower()
        seen = set()
        results: List[SearchResult] = []
        for record in records:
            if needle:
                in_label = needle in record.display_label.lower()
                in_project = needle in (record.project_name or "").lower()
                if not (in_label or in_project):
                    continue

            key = record.source.dedup_key(record.id)
            if key in seen:
                continue
            seen.add(key)

            results.append(SearchResult(
                id=record.source.id if record.source.is_linked else record.id,
                name=record.label,
                kind=SearchKind.RECENT_TIMESHEET,
                project_name=record.project_name,
                timesheet_id=record.id,
                source_kind=record.source.kind,
            ))
            if len(results) >= limit:
                break
        return results

    def search(self, query: str) -> List[SearchResult]:
        """Tasks, tickets and recent timesheets; each part is best-effort"""
        results: List[SearchResult] = []
        for label, part in (('tasks', self.search_tasks),
                            ('tickets', self.search_tickets),
                            ('recent timesheets', self.search_recent_timesheets)):
            try:
                results.extend(part(query))
            except TimeBarError as e:
                logger.warning(f"[{self.account_id}] Search of {label} failed: {e}")
        return results


def recent_source(result: SearchResult) -> TimerSource:
    """Source of a recent-timesheet hit, from what its id refers to"""
    if result.source_kind is SourceKind.TASK and result.id is not None:
        return TimerSource.task(result.id, result.name)
    if result.source_kind is SourceKind.TICKET and result.id is not None:
        return TimerSource.ticket(result.id, result.name)
    return TimerSource.standalone()
