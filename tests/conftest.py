"""Shared fixtures: an in-memory remote instance and a transport that talks to it."""

import json
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from shared.exceptions import AuthenticationError, ProtocolError, TransportError
from shared.models import AccountConfig, AppConfig, Dialect
from shared.utils import format_date, format_remote_datetime, local_today
from client.backends import (TASK_MODEL, TICKET_MODEL, TIMER_MODEL, TIMESHEET_MODEL,
                             Json2TimerBackend, LegacyTimerBackend)
from client.capabilities import TICKET_FIELD
from client.connection import Connection
from client.transport import Transport


@pytest.fixture(autouse=True)
def isolated_config_dir(tmp_path, monkeypatch):
    """Keep every test away from the real per-user config directory"""
    config_dir = tmp_path / "config"
    monkeypatch.setenv("TIMEBAR_CONFIG_DIR", str(config_dir))
    return config_dir


def remote_now() -> str:
    return format_remote_datetime(datetime.now(timezone.utc))


class FakeOdoo:
    """In-memory stand-in for one remote instance"""

    def __init__(self, uid=2, has_ticket_field=False, has_timer_model=False):
        self.uid = uid
        self.has_ticket_field = has_ticket_field
        self.has_timer_model = has_timer_model
        self.timesheets = {}
        self.tasks = {}
        self.tickets = {}
        self.timers = []
        self.calls = []
        self.fail_models = set()
        self.fail_methods = set()
        self.method_results = {}
        self.auth_error = False
        self._next_id = 1000

    def next_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_timesheet(self, record_id, name="", task=None, project=None, ticket=None,
                      unit_amount=0.0, timer_start=False, date=None):
        row = {
            'id': record_id,
            'name': name,
            'project_id': list(project) if project else False,
            'task_id': list(task) if task else False,
            'unit_amount': unit_amount,
            'timer_start': timer_start,
            'date': date or format_date(local_today()),
        }
        if self.has_ticket_field:
            row[TICKET_FIELD] = list(ticket) if ticket else False
        self.timesheets[record_id] = row
        return row

    def add_task(self, task_id, name, project=None):
        self.tasks[task_id] = {
            'id': task_id,
            'display_name': name,
            'project_id': list(project) if project else False,
        }

    def running_ids(self):
        return [row['id'] for row in self.timesheets.values() if row['timer_start']]

    def start(self, record_id):
        for row in self.timesheets.values():
            row['timer_start'] = False
        self.timesheets[record_id]['timer_start'] = remote_now()

    def stop(self, record_id):
        self.timesheets[record_id]['timer_start'] = False


def _matches(row, domain):
    for field, op, value in domain:
        if field not in ('date', 'id'):
            continue
        if op == '=' and row.get(field) != value:
            return False
        if op == '>=' and row.get(field) < value:
            return False
        if op == 'in' and row.get(field) not in value:
            return False
    return True


class FakeTransport(Transport):
    """Transport answering from a FakeOdoo"""

    dialect_name = "fake"

    def __init__(self, odoo: FakeOdoo):
        super().__init__("https://fake.example.com/", "fakedb", "user@example.com", "secret")
        self.odoo = odoo

    def _authenticate(self) -> int:
        if self.odoo.auth_error:
            raise AuthenticationError("Authentication failed - check credentials")
        return self.odoo.uid

    def search_read(self, model, domain, fields, limit=None):
        odoo = self.odoo
        odoo.calls.append(('search_read', model, domain, list(fields), limit))
        if model in odoo.fail_models:
            raise ProtocolError(f"{model} unavailable")

        if model == TIMESHEET_MODEL:
            if TICKET_FIELD in fields and not odoo.has_ticket_field:
                raise ProtocolError(f"Invalid field '{TICKET_FIELD}'")
            rows = [dict(row) for row in odoo.timesheets.values() if _matches(row, domain)]
        elif model == TIMER_MODEL:
            if not odoo.has_timer_model:
                raise ProtocolError(f"Object {TIMER_MODEL} doesn't exist")
            rows = [dict(row) for row in odoo.timers]
        elif model == TASK_MODEL:
            rows = [dict(row) for row in odoo.tasks.values() if _matches(row, domain)]
        elif model == TICKET_MODEL:
            rows = [dict(row) for row in odoo.tickets.values() if _matches(row, domain)]
        else:
            rows = []
        return rows[:limit] if limit else rows

    def call_method(self, model, method, ids):
        odoo = self.odoo
        odoo.calls.append(('call_method', model, method, list(ids)))
        if (model, method) in odoo.fail_methods:
            raise TransportError(f"{method} on {model} failed")

        if model == TIMESHEET_MODEL and method == 'action_timer_start':
            odoo.start(ids[0])
        elif model == TIMESHEET_MODEL and method == 'action_timer_stop':
            odoo.stop(ids[0])
        elif model == TIMESHEET_MODEL and method == 'unlink':
            for record_id in ids:
                odoo.timesheets.pop(record_id, None)
        elif model == TASK_MODEL and method == 'action_timer_start':
            task = odoo.tasks[ids[0]]
            record_id = odoo.next_id()
            odoo.add_timesheet(record_id, task=(task['id'], task['display_name']),
                               project=task['project_id'] or None)
            odoo.start(record_id)
        return odoo.method_results.get((model, method))

    def call_method_with_args(self, model, method, args, kwargs=None):
        self.odoo.calls.append(('call_method_with_args', model, method, list(args), kwargs))
        return self.odoo.method_results.get((model, method))

    def name_search(self, model, name, domain=None, limit=7):
        odoo = self.odoo
        odoo.calls.append(('name_search', model, name, domain, limit))
        if model in odoo.fail_models:
            raise ProtocolError(f"{model} unavailable")
        source = odoo.tasks if model == TASK_MODEL else odoo.tickets
        pairs = [(row['id'], row['display_name']) for row in source.values()
                 if name.lower() in row['display_name'].lower()]
        return pairs[:limit]

    def create(self, model, values):
        self.odoo.calls.append(('create', model, values))
        return self.odoo.next_id()


def fake_connection(odoo: FakeOdoo, legacy: bool = False) -> Connection:
    if legacy:
        return Connection(FakeTransport(odoo), LegacyTimerBackend(), Dialect.LEGACY)
    return Connection(FakeTransport(odoo), Json2TimerBackend(), Dialect.JSON2)


class DeferredRunner:
    """Collects background tasks so a test decides when and in which order they run"""

    def __init__(self):
        self.pending = []

    def __call__(self, fn):
        self.pending.append(fn)

    def run_all(self):
        while self.pending:
            self.pending.pop(0)()


def make_response(status_code=200, body=None, text=None):
    """A requests.Response stand-in"""
    response = Mock()
    response.status_code = status_code
    if text is None:
        text = json.dumps(body) if body is not None else ""
    response.text = text

    def decode():
        return json.loads(text)

    response.json = Mock(side_effect=decode)
    return response


@pytest.fixture
def odoo():
    return FakeOdoo()


@pytest.fixture
def app_config():
    return AppConfig(accounts=[
        AccountConfig(id="work", label="Work", url="https://work.example.com", database="work",
                      username="me@work.example.com"),
        AccountConfig(id="side", label="Side", url="https://side.example.com", database="side",
                      username="me@side.example.com"),
    ])


@pytest.fixture
def credentials(isolated_config_dir):
    from shared.config import CredentialStore

    store = CredentialStore(isolated_config_dir)
    store.set_api_key("work", "work-key")
    store.set_api_key("side", "side-key")
    return store


@pytest.fixture
def remotes():
    return {"work": FakeOdoo(uid=2), "side": FakeOdoo(uid=7)}


@pytest.fixture
def connector(remotes):
    def connect(account, api_key, timeout=30):
        return fake_connection(remotes[account.id])
    return connect
