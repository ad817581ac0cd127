"""
Legacy JSON-RPC transport (Odoo 14-18).
Uses POST /jsonrpc with a service/method/args envelope and a session uid.
"""

import random
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shared.exceptions import (AuthenticationError, ProtocolError, TransportError,
                               UnexpectedResultError)
from client.transport import Domain, Transport, parse_name_search_result


def _error_message(error: Any) -> str:
    """Extract the message of a JSON-RPC error member"""
    if isinstance(error, dict):
        data = error.get('data')
        if isinstance(data, dict) and data.get('message'):
            return str(data['message'])
        if error.get('message'):
            return str(error['message'])
    return "Unknown server error"


class LegacyTransport(Transport):
    """Transport for the single-endpoint JSON-RPC dialect"""

    dialect_name = "legacy"

    @property
    def endpoint(self) -> str:
        return f"{self.url}/jsonrpc"

    def _jsonrpc(self, service: str, method: str, args: List[Any]) -> Dict[str, Any]:
        """Send one JSON-RPC call and return the parsed response envelope"""
        body = {
            'jsonrpc': '2.0',
            'id': random.randint(1, 999_999),
            'method': 'call',
            'params': {
                'service': service,
                'method': method,
                'args': args,
            },
        }
        response = self._post(self.endpoint, body)
        if response.status_code != 200:
            raise TransportError(f"{self.url}: HTTP {response.status_code}", response.status_code)

        try:
            payload = response.json()
        except ValueError:
            raise UnexpectedResultError(f"{self.url}: response is not JSON")
        if not isinstance(payload, dict):
            raise UnexpectedResultError(f"{self.url}: unexpected JSON-RPC envelope")

        if payload.get('error'):
            raise ProtocolError(_error_message(payload['error']))
        return payload

    def _authenticate(self) -> int:
        payload = self._jsonrpc('common', 'authenticate', [self.database, self.username, self.api_key, {}])
        uid = payload.get('result')
        if isinstance(uid, bool) or not isinstance(uid, int) or uid <= 0:
            raise AuthenticationError("Authentication failed - check credentials")
        return uid

    def execute_kw(self, model: str, method: str, args: Sequence[Any],
                   kwargs: Optional[Dict[str, Any]] = None) -> Any:
        """Call object.execute_kw and return the raw result"""
        uid = self.authenticate()
        payload = self._jsonrpc('object', 'execute_kw', [
            self.database, uid, self.api_key, model, method, list(args), kwargs or {},
        ])
        # Methods returning None (e.g. action_timer_start) come back without a result
        return payload.get('result')

    def search_read(self, model: str, domain: Domain, fields: Sequence[str],
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {'fields': list(fields)}
        if limit is not None:
            kwargs['limit'] = limit
        result = self.execute_kw(model, 'search_read', [domain], kwargs)
        if not isinstance(result, list):
            raise UnexpectedResultError(f"search_read on {model} returned {type(result).__name__}")
        return result

    def call_method(self, model: str, method: str, ids: Sequence[int]) -> Any:
        return self.execute_kw(model, method, [list(ids)])

    def call_method_with_args(self, model: str, method: str, args: Sequence[Any],
                              kwargs: Optional[Dict[str, Any]] = None) -> Any:
        return self.execute_kw(model, method, args, kwargs)

    def name_search(self, model: str, name: str, domain: Optional[Domain] = None,
                    limit: int = 7) -> List[Tuple[int, str]]:
        result = self.execute_kw(model, 'name_search', [], {
            'name': name,
            'args': domain or [],
            'limit': limit,
        })
        return parse_name_search_result(result)

    def create(self, model: str, values: Dict[str, Any]) -> int:
        result = self.execute_kw(model, 'create', [values])
        if isinstance(result, list) and result and isinstance(result[0], int):
            return result[0]
        if isinstance(result, int) and not isinstance(result, bool):
            return result
        raise UnexpectedResultError(f"create on {model} returned {result!r}")
