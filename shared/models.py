"""
Shared data models for the TimeBar application.
Used by the sync core, the coordinator and the local control API.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from shared.utils import format_elapsed


class Dialect(Enum):
    """Remote protocol dialects"""
    AUTO = "auto"
    JSON2 = "json2"    # Odoo 19+: per-model endpoints, bearer token
    LEGACY = "legacy"  # Odoo 14-18: single /jsonrpc endpoint, session uid

    @classmethod
    def from_value(cls, value: Optional[str]) -> 'Dialect':
        """Parse a config value, defaulting to AUTO"""
        if not value:
            return cls.AUTO
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown dialect '{value}': must be one of auto, json2, legacy")


class TimerState(Enum):
    """Timer state derived from the timer start marker"""
    RUNNING = "running"
    STOPPED = "stopped"


class AccountStatus(Enum):
    """Per-account lifecycle in the coordinator"""
    UNCONFIGURED = "unconfigured"
    CONNECTING = "connecting"
    POLLING = "polling"
    ERRORING = "erroring"


class SourceKind(Enum):
    """What a timesheet is linked to"""
    TASK = "task"
    TICKET = "ticket"
    STANDALONE = "standalone"


@dataclass(frozen=True)
class TimerSource:
    """Origin of a timer: a linked task, a linked ticket, or nothing.

    Task and ticket sources carry the linked record's id and name.
    Use the ``task``, ``ticket`` and ``standalone`` constructors.
    """
    kind: SourceKind
    id: Optional[int] = None
    name: str = ""

    ICONS = {
        SourceKind.TASK: "\U0001F527",
        SourceKind.TICKET: "\U0001F3AB",
        SourceKind.STANDALONE: "⏱",
    }

    @classmethod
    def task(cls, task_id: int, name: str) -> 'TimerSource':
        return cls(SourceKind.TASK, task_id, name)

    @classmethod
    def ticket(cls, ticket_id: int, name: str) -> 'TimerSource':
        return cls(SourceKind.TICKET, ticket_id, name)

    @classmethod
    def standalone(cls) -> 'TimerSource':
        return cls(SourceKind.STANDALONE)

    @property
    def icon(self) -> str:
        return self.ICONS[self.kind]

    @property
    def is_linked(self) -> bool:
        return self.kind is not SourceKind.STANDALONE

    def dedup_key(self, record_id: int) -> str:
        """Key used to collapse several timesheets of the same origin"""
        if self.kind is SourceKind.TASK:
            return f"task-{self.id}"
        if self.kind is SourceKind.TICKET:
            return f"ticket-{self.id}"
        return f"ts-{record_id}"


@dataclass(frozen=True)
class TimerRecord:
    """A day's timesheet entry mirrored from the remote, possibly running.

    ``id`` is the remote id, or a negative placeholder for a running timer
    the remote has not yet materialised as a timesheet.
    ``unit_amount`` is the accumulated duration in hours and ``timer_start``
    an aware UTC datetime when the timer runs.
    """
    id: int
    account_id: str
    name: str = ""
    project_name: Optional[str] = None
    source: TimerSource = field(default_factory=TimerSource.standalone)
    unit_amount: float = 0.0
    timer_start: Optional[datetime] = None
    date: str = ""

    @property
    def state(self) -> TimerState:
        return TimerState.RUNNING if self.timer_start is not None else TimerState.STOPPED

    @property
    def is_running(self) -> bool:
        return self.timer_start is not None

    @property
    def is_placeholder(self) -> bool:
        return self.id < 0

    @property
    def composite_id(self) -> str:
        """Identifier used by the local control API: ``accountId:recordId``"""
        return f"{self.account_id}:{self.id}"

    @property
    def label(self) -> str:
        """Linked task or ticket name, else the description"""
        if self.source.is_linked:
            return self.source.name
        return self.name or "Timesheet"

    @property
    def display_label(self) -> str:
        return f"{self.source.icon} {self.label}"

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        """Accumulated duration plus live running time"""
        base = self.unit_amount * 3600
        if self.timer_start is None:
            return base
        now = now or datetime.now(timezone.utc)
        return base + max(0.0, (now - self.timer_start).total_seconds())

    def elapsed_formatted(self, now: Optional[datetime] = None) -> str:
        return format_elapsed(self.elapsed_seconds(now))

    def with_running(self, running: bool, now: Optional[datetime] = None) -> 'TimerRecord':
        """Copy of this record marked running (started now) or stopped"""
        if running:
            return replace(self, timer_start=self.timer_start or now or datetime.now(timezone.utc))
        return replace(self, timer_start=None)

    def to_api_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Serialise for GET /api/timers"""
        elapsed = self.elapsed_seconds(now)
        return {
            'id': self.composite_id,
            'name': self.name,
            'displayLabel': self.display_label,
            'projectName': self.project_name or "",
            'accountId': self.account_id,
            'state': self.state.value,
            'elapsed': format_elapsed(elapsed),
            'elapsedSeconds': int(elapsed),
        }


@dataclass
class Capabilities:
    """Optional server-side surfaces detected on an instance"""
    has_ticket_field: bool = False
    # Odoo 18 and earlier keep running timers in timer.timer; the timesheet
    # only exists once the timer is stopped.
    has_timer_model: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SearchKind(Enum):
    """Kinds of search hits"""
    TASK = "task"
    TICKET = "ticket"
    RECENT_TIMESHEET = "recentTimesheet"


@dataclass(frozen=True)
class SearchResult:
    """A search hit. Not cached.

    For recent timesheets ``timesheet_id`` is the record a start would resume.
    """
    id: Optional[int]
    name: str
    kind: SearchKind
    project_name: Optional[str] = None
    timesheet_id: Optional[int] = None
    # For recent timesheets, what `id` refers to
    source_kind: Optional[SourceKind] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'kind': self.kind.value,
            'projectName': self.project_name,
            'timesheetId': self.timesheet_id,
            'sourceKind': self.source_kind.value if self.source_kind else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SearchResult':
        """Create from a control API request body"""
        raw_id = data.get('id')
        timesheet_id = data.get('timesheetId')
        source_kind = data.get('sourceKind')
        return cls(
            id=int(raw_id) if raw_id is not None else None,
            name=str(data.get('name') or ""),
            kind=SearchKind(data['kind']),
            project_name=data.get('projectName') or None,
            timesheet_id=int(timesheet_id) if timesheet_id is not None else None,
            source_kind=SourceKind(source_kind) if source_kind else None,
        )


# Configuration models
@dataclass
class AccountConfig:
    """One configured remote account. The API key lives in the credential store."""
    id: str
    label: str
    url: str
    database: str = ""
    username: str = ""
    dialect: Dialect = Dialect.AUTO

    def __post_init__(self) -> None:
        """Validate configuration after initialization"""
        if not self.id or not str(self.id).strip():
            raise ValueError("Account id is required")
        if ":" in self.id:
            raise ValueError(f"Account id '{self.id}' must not contain ':'")
        if not self.url or not self.url.strip():
            raise ValueError(f"Account '{self.id}' has no url")
        if not isinstance(self.dialect, Dialect):
            self.dialect = Dialect.from_value(self.dialect)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'label': self.label,
            'url': self.url,
            'database': self.database,
            'username': self.username,
            'dialect': self.dialect.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AccountConfig':
        """Create from an accounts.json entry"""
        return cls(
            id=str(data.get('id', '')).strip(),
            label=data.get('label') or data.get('id', ''),
            url=data.get('url', ''),
            database=data.get('database', ''),
            username=data.get('username', ''),
            dialect=Dialect.from_value(data.get('dialect') or data.get('apiVersion')),
        )


@dataclass
class AppConfig:
    """Root configuration with validation"""
    accounts: List[AccountConfig] = field(default_factory=list)
    blink_when_idle: bool = False
    poll_interval: int = 5  # seconds
    api_port: int = 19847
    request_timeout: int = 30  # seconds

    def __post_init__(self) -> None:
        if not (1 <= self.poll_interval <= 3600):
            raise ValueError(f"Poll interval must be between 1 and 3600 seconds, got {self.poll_interval}")
        if not (1 <= self.request_timeout <= 120):
            raise ValueError(f"Request timeout must be between 1 and 120 seconds, got {self.request_timeout}")
        if not (1024 <= self.api_port <= 65535):
            raise ValueError(f"API port must be between 1024 and 65535, got {self.api_port}")
        ids = [account.id for account in self.accounts]
        if len(ids) != len(set(ids)):
            raise ValueError("Account ids must be unique")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'accounts': [account.to_dict() for account in self.accounts],
            'blinkWhenIdle': self.blink_when_idle,
            'pollInterval': self.poll_interval,
            'apiPort': self.api_port,
            'requestTimeout': self.request_timeout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AppConfig':
        return cls(
            accounts=[AccountConfig.from_dict(item) for item in data.get('accounts', [])],
            blink_when_idle=bool(data.get('blinkWhenIdle', False)),
            poll_interval=int(data.get('pollInterval', 5)),
            api_port=int(data.get('apiPort', 19847)),
            request_timeout=int(data.get('requestTimeout', 30)),
        )

    def account(self, account_id: str) -> Optional[AccountConfig]:
        for account in self.accounts:
            if account.id == account_id:
                return account
        return None
