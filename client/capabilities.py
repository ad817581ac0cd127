"""
Capability detection.

Optional fields and models are found by asking for them: a minimal read that
succeeds means the surface exists, any failure means it does not. Servers
report unknown fields and models through generic errors, so the error content
is never inspected.
"""

import threading
from typing import Optional, Sequence

from shared.exceptions import TimeBarError
from shared.logging_config import get_sync_logger
from shared.models import Capabilities
from client.backends import TIMER_MODEL, TIMESHEET_MODEL
from client.transport import Transport

logger = get_sync_logger()

TICKET_FIELD = "helpdesk_ticket_id"


def probe_read(transport: Transport, model: str, fields: Sequence[str] = ('id',)) -> bool:
    """Whether a one-record read of ``fields`` on ``model`` succeeds"""
    try:
        transport.search_read(model, [], list(fields), limit=1)
        return True
    except TimeBarError as e:
        logger.debug(f"Probe {model}{list(fields)} failed: {e}")
        return False


class CapabilityDetector:
    """Probes one account's instance once and memoizes the result"""

    def __init__(self, account_id: str):
        self.account_id = account_id
        self._capabilities: Optional[Capabilities] = None
        self._lock = threading.Lock()

    @property
    def cached(self) -> Optional[Capabilities]:
        return self._capabilities

    def detect(self, transport: Transport) -> Capabilities:
        """Return the capabilities, probing on first use"""
        if self._capabilities is not None:
            return self._capabilities
        with self._lock:
            if self._capabilities is None:
                capabilities = Capabilities(
                    has_ticket_field=probe_read(transport, TIMESHEET_MODEL, ['id', TICKET_FIELD]),
                    has_timer_model=probe_read(transport, TIMER_MODEL, ['id']),
                )
                logger.info(f"[{self.account_id}] helpdesk={capabilities.has_ticket_field} "
                            f"timer.timer={capabilities.has_timer_model}")
                self._capabilities = capabilities
        return self._capabilities
