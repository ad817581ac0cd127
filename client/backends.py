"""
Version-specific timer behavior.
Separates *how timers work* from the transport layer.

- ``Json2TimerBackend``: Odoo 19+, timers live directly on timesheets
- ``LegacyTimerBackend``: Odoo 14-18, running timers live in timer.timer and
  start/stop go through the originating task or ticket
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from shared.exceptions import TransportError
from shared.logging_config import get_sync_logger
from shared.models import Capabilities, SourceKind, TimerRecord, TimerSource
from shared.utils import format_date, local_today, parse_many2one, parse_remote_datetime, to_int_optional
from client.transport import Transport

logger = get_sync_logger()

TIMESHEET_MODEL = "account.analytic.line"
TASK_MODEL = "project.task"
TICKET_MODEL = "helpdesk.ticket"
TIMER_MODEL = "timer.timer"

# Remote record-kind that owns each linked source
SOURCE_MODELS = {
    SourceKind.TASK: TASK_MODEL,
    SourceKind.TICKET: TICKET_MODEL,
}

# Stop-confirmation wizards the server may return instead of stopping
TASK_WIZARD_MODEL = "project.task.create.timesheet"
TIMESHEET_WIZARD_MODEL = "hr.timesheet.stop.timer.confirmation.wizard"


def is_wizard_action(result: Any) -> bool:
    """Whether a stop result is a window action asking for a wizard"""
    return isinstance(result, dict) and isinstance(result.get('res_model'), str)


def _task_wizard_values(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    task_id = to_int_optional(context.get('active_id'))
    if task_id is None:
        return None
    values: Dict[str, Any] = {
        'task_id': task_id,
        'time_spent': float(context.get('default_time_spent') or 0.0),
    }
    if context.get('default_description'):
        values['description'] = context['default_description']
    return values


def _timesheet_wizard_values(context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    timesheet_id = to_int_optional(context.get('default_timesheet_id'))
    if timesheet_id is None:
        timesheet_id = to_int_optional(context.get('active_id'))
    if timesheet_id is None:
        return None
    return {'timesheet_id': timesheet_id}


# wizard model -> (values builder, confirmation method)
KNOWN_WIZARDS = {
    TASK_WIZARD_MODEL: (_task_wizard_values, 'save_timesheet'),
    TIMESHEET_WIZARD_MODEL: (_timesheet_wizard_values, 'action_stop_timer'),
}


def complete_stop_wizard(result: Dict[str, Any], transport: Transport) -> bool:
    """Create the wizard record from its context defaults and confirm it.

    Returns True when the wizard was confirmed. Unknown wizards are logged
    and left incomplete.
    """
    model = result.get('res_model')
    context = result.get('context') if isinstance(result.get('context'), dict) else {}

    known = KNOWN_WIZARDS.get(model)
    if known is None:
        logger.warning(f"Unrecognized stop wizard '{model}', timer left unconfirmed on the server")
        return False

    build_values, confirm_method = known
    values = build_values(context)
    if values is None:
        logger.warning(f"Stop wizard '{model}' has no usable context ({context}), timer left unconfirmed")
        return False

    wizard_id = transport.create(model, values)
    transport.call_method_with_args(model, confirm_method, [[wizard_id]], {'context': context})
    logger.info(f"Completed stop wizard {model} #{wizard_id}")
    return True


class TimerBackend(ABC):
    """Timer semantics of one server generation"""

    name = "base"

    @abstractmethod
    def enrich_running_state(self, records: List[TimerRecord], transport: Transport, uid: int,
                             account_id: str, capabilities: Capabilities) -> List[TimerRecord]:
        """Merge running-timer state kept outside the timesheet into the records"""

    @abstractmethod
    def _target(self, record: TimerRecord) -> Tuple[str, int]:
        """Model and id the timer actions of a record are sent to"""

    def start_timer(self, record: TimerRecord, transport: Transport) -> None:
        model, record_id = self._target(record)
        transport.call_method(model, 'action_timer_start', [record_id])

    def stop_timer(self, record: TimerRecord, transport: Transport) -> Any:
        """Stop the timer of a record, completing any stop wizard, and return the raw stop result"""
        model, record_id = self._target(record)
        result = transport.call_method(model, 'action_timer_stop', [record_id])
        if is_wizard_action(result):
            complete_stop_wizard(result, transport)
        return result


class Json2TimerBackend(TimerBackend):
    """Odoo 19+: timer_start on the timesheet is the source of truth"""

    name = "json2"

    def enrich_running_state(self, records, transport, uid, account_id, capabilities):
        return records

    def _target(self, record: TimerRecord):
        # A placeholder has no timesheet yet; address its task or ticket
        if record.is_placeholder and record.source.is_linked:
            return SOURCE_MODELS[record.source.kind], record.source.id
        return TIMESHEET_MODEL, record.id


class LegacyTimerBackend(TimerBackend):
    """Odoo 14-18: running timers live in timer.timer, keyed by res_model/res_id"""

    name = "legacy"

    def _target(self, record: TimerRecord):
        """Timers must go through the source model so timer.timer gets the right res_model"""
        kind = record.source.kind
        if kind is SourceKind.TASK or kind is SourceKind.TICKET:
            return SOURCE_MODELS[kind], record.source.id
        return TIMESHEET_MODEL, record.id

    def enrich_running_state(self, records, transport, uid, account_id, capabilities):
        if not capabilities.has_timer_model:
            return records

        result = list(records)
        for timer in self.fetch_running_timers(transport, uid, account_id):
            match = None
            for index, existing in enumerate(result):
                if existing.source.kind is timer.source.kind and existing.source.id == timer.source.id:
                    match = index
                    break

            if match is None:
                # No timesheet yet for this source; show the placeholder
                result.append(timer)
            else:
                existing = result[match]
                result[match] = TimerRecord(
                    id=existing.id,
                    account_id=existing.account_id,
                    name=existing.name,
                    project_name=existing.project_name or timer.project_name,
                    source=existing.source,
                    unit_amount=existing.unit_amount,
                    timer_start=timer.timer_start,
                    date=existing.date,
                )
        return result

    def fetch_running_timers(self, transport: Transport, uid: int, account_id: str) -> List[TimerRecord]:
        """Running timer.timer rows as placeholder records with negative ids"""
        timer_rows = transport.search_read(
            TIMER_MODEL,
            [['user_id', '=', uid], ['timer_start', '!=', False], ['timer_pause', '=', False]],
            ['timer_start', 'res_model', 'res_id'],
        )

        today = format_date(local_today())
        timers = []
        for row in timer_rows:
            res_model = row.get('res_model')
            res_id = to_int_optional(row.get('res_id'))
            timer_start = parse_remote_datetime(row.get('timer_start'))
            if not res_model or res_id is None or timer_start is None:
                continue

            if res_model == TASK_MODEL:
                name, project_name = self._lookup_source(transport, TASK_MODEL, res_id, f"Task #{res_id}")
                source = TimerSource.task(res_id, name)
            elif res_model == TICKET_MODEL:
                name, _ = self._lookup_source(transport, TICKET_MODEL, res_id, f"Ticket #{res_id}")
                source = TimerSource.ticket(res_id, name)
                project_name = None
            else:
                continue

            timer_id = to_int_optional(row.get('id')) or res_id
            timers.append(TimerRecord(
                id=-timer_id,
                account_id=account_id,
                name="",
                project_name=project_name,
                source=source,
                unit_amount=0.0,
                timer_start=timer_start,
                date=today,
            ))
        return timers

    @staticmethod
    def _lookup_source(transport: Transport, model: str, record_id: int, fallback: str):
        """Display name and project label of a task or ticket, best-effort"""
        fields = ['display_name', 'project_id'] if model == TASK_MODEL else ['display_name']
        try:
            rows = transport.search_read(model, [['id', '=', record_id]], fields, limit=1)
        except TransportError as e:
            logger.debug(f"Lookup of {model} #{record_id} failed: {e}")
            return fallback, None
        if not rows:
            return fallback, None
        project = parse_many2one(rows[0].get('project_id'))
        return rows[0].get('display_name') or fallback, project[1] if project else None
