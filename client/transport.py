"""
Transport contract for the remote time-tracking service.

Two dialects implement it: ``Json2Transport`` (Odoo 19+) and
``LegacyTransport`` (Odoo 14-18). Callers above this layer never know which
one they hold.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

import shared
from shared.exceptions import TransportError
from shared.logging_config import get_transport_logger
from shared.utils import sanitize_url

logger = get_transport_logger()

DEFAULT_TIMEOUT: int = 30
USER_AGENT = f"TimeBar/{shared.__VERSION__}"

Domain = List[list]


def make_session() -> requests.Session:
    """Create an HTTP session with the standard headers"""
    session = requests.Session()
    session.headers.update({
        'User-Agent': USER_AGENT,
        'Accept': 'application/json',
    })
    return session


def parse_name_search_result(result: Any) -> List[Tuple[int, str]]:
    """Parse a name_search result: ``[[id, "display_name"], ...]``"""
    if not isinstance(result, list):
        return []
    pairs = []
    for pair in result:
        if not isinstance(pair, (list, tuple)) or len(pair) < 2:
            continue
        record_id, name = pair[0], pair[1]
        if isinstance(record_id, bool) or not isinstance(record_id, int) or not isinstance(name, str):
            continue
        pairs.append((record_id, name))
    return pairs


class Transport(ABC):
    """Authenticated remote calls against one account"""

    dialect_name = "unknown"

    def __init__(self, url: str, database: str, username: str, api_key: str,
                 timeout: int = DEFAULT_TIMEOUT, session: Optional[requests.Session] = None):
        self.url = sanitize_url(url)
        self.database = (database or "").strip()
        self.username = (username or "").strip()
        self.api_key = (api_key or "").strip()
        self.timeout = timeout
        self.session = session or make_session()

        # Cached user id after authentication (write-once)
        self._uid: Optional[int] = None
        self._auth_lock = threading.Lock()

    @property
    def uid(self) -> Optional[int]:
        return self._uid

    def authenticate(self) -> int:
        """Authenticate and return the user id, cached after the first success"""
        if self._uid is not None:
            return self._uid
        with self._auth_lock:
            if self._uid is None:
                self._uid = self._authenticate()
                logger.debug(f"{self.url}: authenticated as uid={self._uid} ({self.dialect_name})")
        return self._uid

    @abstractmethod
    def _authenticate(self) -> int:
        """Perform the dialect-specific authentication call"""

    @abstractmethod
    def search_read(self, model: str, domain: Domain, fields: Sequence[str],
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Read records matching a domain"""

    @abstractmethod
    def call_method(self, model: str, method: str, ids: Sequence[int]) -> Any:
        """Call a method on specific record ids and return the raw result"""

    @abstractmethod
    def call_method_with_args(self, model: str, method: str, args: Sequence[Any],
                              kwargs: Optional[Dict[str, Any]] = None) -> Any:
        """Call a method with positional and keyword arguments"""

    @abstractmethod
    def name_search(self, model: str, name: str, domain: Optional[Domain] = None,
                    limit: int = 7) -> List[Tuple[int, str]]:
        """Autocomplete search returning (id, display_name) pairs"""

    @abstractmethod
    def create(self, model: str, values: Dict[str, Any]) -> int:
        """Create a record and return its id"""

    def _post(self, endpoint: str, payload: Dict[str, Any],
              headers: Optional[Dict[str, str]] = None) -> requests.Response:
        """POST JSON with the fixed timeout, converting network failures"""
        try:
            return self.session.post(endpoint, json=payload, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise TransportError(f"{self.url}: request timed out after {self.timeout}s")
        except requests.exceptions.ConnectionError:
            raise TransportError(f"Cannot connect to {self.url}. Check your network!")
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{self.url}: request failed: {e}")

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.url} db={self.database!r} user={self.username!r}>"
