"""
Liveness Network Module - ledger clients and HTTP API.

Provides:
1. LedgerReader / LedgerWriter capabilities for the monitor and agent
2. In-process and HTTP ledger clients
3. REST API for the ledger and the monitor status query
"""

from .client import (
    LedgerAuthError,
    LedgerReadError,
    LedgerReader,
    LedgerWriter,
    LocalLedgerClient,
    HttpLedgerClient,
)
from .api import (
    ApiResponse,
    ApiServer,
    LedgerApiHandlers,
    create_ledger_app,
    create_ledger_server,
    create_monitor_app,
    create_monitor_server,
)

__all__ = [
    "LedgerAuthError",
    "LedgerReadError",
    "LedgerReader",
    "LedgerWriter",
    "LocalLedgerClient",
    "HttpLedgerClient",
    "ApiResponse",
    "ApiServer",
    "LedgerApiHandlers",
    "create_ledger_app",
    "create_ledger_server",
    "create_monitor_app",
    "create_monitor_server",
]
