"""
Dialect detection.

The newer JSON-2 dialect is tried first; any failure falls back to legacy
JSON-RPC. The choice is fixed for the lifetime of the account.
"""

from dataclasses import dataclass
from typing import Optional

import requests

from shared.exceptions import TimeBarError
from shared.logging_config import get_sync_logger
from shared.models import AccountConfig, Dialect
from client.backends import Json2TimerBackend, LegacyTimerBackend, TimerBackend
from client.json2_transport import Json2Transport
from client.legacy_transport import LegacyTransport
from client.transport import DEFAULT_TIMEOUT, Transport

logger = get_sync_logger()


@dataclass
class Connection:
    """A transport and the timer backend that matches its server generation"""
    transport: Transport
    backend: TimerBackend
    dialect: Dialect


def _json2(account: AccountConfig, api_key: str, timeout: int,
           session: Optional[requests.Session]) -> Connection:
    transport = Json2Transport(account.url, account.database, account.username, api_key,
                               timeout=timeout, session=session)
    return Connection(transport, Json2TimerBackend(), Dialect.JSON2)


def _legacy(account: AccountConfig, api_key: str, timeout: int,
            session: Optional[requests.Session]) -> Connection:
    transport = LegacyTransport(account.url, account.database, account.username, api_key,
                                timeout=timeout, session=session)
    return Connection(transport, LegacyTimerBackend(), Dialect.LEGACY)


def make_connection(account: AccountConfig, api_key: str, timeout: int = DEFAULT_TIMEOUT,
                    session: Optional[requests.Session] = None) -> Connection:
    """Create the connection for an account, detecting the dialect unless pinned"""
    if account.dialect is Dialect.JSON2:
        return _json2(account, api_key, timeout, session)
    if account.dialect is Dialect.LEGACY:
        return _legacy(account, api_key, timeout, session)

    connection = _json2(account, api_key, timeout, session)
    try:
        connection.transport.authenticate()
        logger.info(f"[{account.id}] {connection.transport.url} -> Odoo 19+ (JSON-2 API)")
        return connection
    except TimeBarError as e:
        logger.info(f"[{account.id}] {connection.transport.url} -> Odoo 14-18 (legacy JSON-RPC): {e}")
        return _legacy(account, api_key, timeout, session)
