"""
JSON-2 transport (Odoo 19+).
Uses POST /json/2/<model>/<method> with bearer token auth.
"""

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from shared.exceptions import (AuthenticationError, ProtocolError, TransportError,
                               UnexpectedResultError)
from client.transport import Domain, Transport, parse_name_search_result


def decode_body(response: requests.Response) -> Any:
    """Decode a JSON-2 body, which may be a bare scalar.

    Empty, ``null`` and ``false`` decode to None, ``true`` to True and bare
    numbers (``action_timer_stop`` returns elapsed hours) to float.
    """
    raw = (response.text or "").strip()
    if raw in ("", "null", "false"):
        return None
    if raw == "true":
        return True
    try:
        value = json.loads(raw)
    except ValueError:
        try:
            return float(raw)
        except ValueError:
            return raw
    if isinstance(value, int):
        return float(value)
    return value


class Json2Transport(Transport):
    """Transport for the per-model-endpoint dialect"""

    dialect_name = "json2"

    def _headers(self) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json; charset=utf-8',
            'Authorization': f'bearer {self.api_key}',
        }
        if self.database:
            headers['X-Odoo-Database'] = self.database
        return headers

    def request(self, model: str, method: str, body: Dict[str, Any]) -> Any:
        """POST one call and return the decoded result"""
        endpoint = f"{self.url}/json/2/{model}/{method}"
        response = self._post(endpoint, body, headers=self._headers())

        if response.status_code != 200:
            message = None
            try:
                error = response.json()
                if isinstance(error, dict):
                    message = error.get('message')
            except ValueError:
                pass
            if response.status_code in (401, 403):
                raise AuthenticationError(f"HTTP {response.status_code}: {message or 'access denied'}",
                                          response.status_code)
            if message:
                raise ProtocolError(f"HTTP {response.status_code}: {message}", response.status_code)
            raise TransportError(f"{self.url}: HTTP {response.status_code}", response.status_code)

        return decode_body(response)

    def _authenticate(self) -> int:
        records = self.search_read('res.users', [['login', '=', self.username]], ['id'], limit=1)
        if not records or not isinstance(records[0], dict) or not isinstance(records[0].get('id'), int):
            raise AuthenticationError("Authentication failed - check credentials")
        return records[0]['id']

    def search_read(self, model: str, domain: Domain, fields: Sequence[str],
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        body: Dict[str, Any] = {'domain': domain, 'fields': list(fields)}
        if limit is not None:
            body['limit'] = limit
        result = self.request(model, 'search_read', body)
        if not isinstance(result, list):
            raise UnexpectedResultError(f"search_read on {model} returned {type(result).__name__}")
        return result

    def call_method(self, model: str, method: str, ids: Sequence[int]) -> Any:
        return self.request(model, method, {'ids': list(ids)})

    def call_method_with_args(self, model: str, method: str, args: Sequence[Any],
                              kwargs: Optional[Dict[str, Any]] = None) -> Any:
        body: Dict[str, Any] = {}
        if args and isinstance(args[0], (list, tuple)):
            body['ids'] = list(args[0])
        body.update(kwargs or {})
        return self.request(model, method, body)

    def name_search(self, model: str, name: str, domain: Optional[Domain] = None,
                    limit: int = 7) -> List[Tuple[int, str]]:
        result = self.request(model, 'name_search', {
            'name': name,
            'domain': domain or [],
            'limit': limit,
        })
        return parse_name_search_result(result)

    def create(self, model: str, values: Dict[str, Any]) -> int:
        result = self.request(model, 'create', {'vals_list': [values]})
        if isinstance(result, list) and result and isinstance(result[0], int):
            return result[0]
        # A bare id arrives as a number
        if isinstance(result, float) and result.is_integer():
            return int(result)
        raise UnexpectedResultError(f"create on {model} returned {result!r}")
