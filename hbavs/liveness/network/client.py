"""
Ledger clients - the monitor's read and write capabilities.

LedgerReader: interval, grace, chain time and the per-operator fields.
LedgerWriter: register, submit_proof and the guarded apply_penalty.

Implementations:
- LocalLedgerClient: wraps an in-process LivenessLedger
- HttpLedgerClient: talks to the ledger API over aiohttp

Transport problems surface as LedgerReadError. Ledger precondition failures
keep their type (NotEligible, PenaltyNotDue, ...) across the wire.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Type

import aiohttp

from ..ledger import (
    LedgerError,
    LivenessLedger,
    NotEligible,
    PenaltyAlreadyApplied,
    PenaltyAuthorityError,
    PenaltyNotDue,
)
from ..models import PenaltyOutcome, normalize_operator

logger = logging.getLogger(__name__)


class LedgerReadError(Exception):
    """A ledger call could not be completed (transport, timeout, bad payload)."""


class LedgerAuthError(LedgerReadError):
    """The ledger rejected the request's credentials (HTTP 401)."""


class LedgerReader(Protocol):
    async def interval(self) -> int: ...

    async def grace(self) -> int: ...

    async def chain_time(self) -> int: ...

    async def last_proof_time(self, operator: str) -> int: ...

    async def penalty_count(self, operator: str) -> int: ...

    async def is_registered(self, operator: str) -> bool: ...


class LedgerWriter(Protocol):
    async def register(self, operator: str) -> None: ...

    async def submit_proof(self, operator: str, note: str) -> int: ...

    async def apply_penalty(self, operator: str) -> PenaltyOutcome: ...


# =============================================================================
# In-process
# =============================================================================

class LocalLedgerClient:
    """Async facade over a LivenessLedger living in the same process."""

    def __init__(self, ledger: LivenessLedger):
        self._ledger = ledger

    async def interval(self) -> int:
        return self._ledger.interval

    async def grace(self) -> int:
        return self._ledger.grace

    async def chain_time(self) -> int:
        return self._ledger.chain_time()

    async def last_proof_time(self, operator: str) -> int:
        return self._ledger.last_proof_time(operator)

    async def penalty_count(self, operator: str) -> int:
        return self._ledger.penalty_count(operator)

    async def is_registered(self, operator: str) -> bool:
        return self._ledger.is_registered(operator)

    async def register(self, operator: str) -> None:
        self._ledger.register(operator)

    async def submit_proof(self, operator: str, note: str) -> int:
        return self._ledger.submit_proof(operator, note)

    async def apply_penalty(self, operator: str) -> PenaltyOutcome:
        return self._ledger.apply_penalty(operator)


# =============================================================================
# HTTP
# =============================================================================

def _ledger_error_from_payload(operator: str, payload: Dict[str, Any]) -> Optional[LedgerError]:
    code = payload.get("code")
    error_types: Dict[str, Type[LedgerError]] = {
        NotEligible.code: NotEligible,
        PenaltyNotDue.code: PenaltyNotDue,
        PenaltyAlreadyApplied.code: PenaltyAlreadyApplied,
        PenaltyAuthorityError.code: PenaltyAuthorityError,
    }
    if code not in error_types:
        return None
    if code == PenaltyNotDue.code:
        return PenaltyNotDue(operator, int(payload["expected"]))
    if code == PenaltyAlreadyApplied.code:
        return PenaltyAlreadyApplied(operator, int(payload["missed_proof_time"]))
    if code == PenaltyAuthorityError.code:
        return PenaltyAuthorityError(operator, str(payload.get("error") or "unknown"))
    return NotEligible(operator)


class HttpLedgerClient:
    """
    Ledger client over the HTTP API.

    Every request carries ``timeout`` seconds; expiry raises LedgerReadError.
    ``api_key`` authorizes register and apply_penalty; ``operator_key`` is the
    operator's own key, sent with its proofs.

    Example:
        async with HttpLedgerClient("http://127.0.0.1:8545") as client:
            now = await client.chain_time()
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        operator_key: Optional[str] = None,
        timeout: float = 5.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._operator_key = operator_key
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "HttpLedgerClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operator: Optional[str] = None,
        body: Optional[Dict[str, Any]] = None,
        authorized: bool = False,
        as_operator: bool = False,
    ) -> Dict[str, Any]:
        await self.connect()
        assert self._session is not None
        headers = {}
        if authorized and self._api_key:
            headers["X-API-Key"] = self._api_key
        if as_operator and self._operator_key:
            headers["X-Operator-Key"] = self._operator_key
        url = f"{self._base_url}{path}"
        try:
            async with self._session.request(method, url, json=body, headers=headers) as resp:
                status = resp.status
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise LedgerReadError(f"{method} {path} timed out") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise LedgerReadError(f"{method} {path} failed: {exc}") from exc

        if not isinstance(payload, dict):
            raise LedgerReadError(f"{method} {path} returned a non-object payload")
        if status == 401:
            raise LedgerAuthError(f"{method} {path} unauthorized: {payload.get('error')}")
        if payload.get("success"):
            data = payload.get("data")
            if not isinstance(data, dict):
                raise LedgerReadError(f"{method} {path} returned no data")
            return data

        if operator is not None:
            ledger_error = _ledger_error_from_payload(operator, payload)
            if ledger_error is not None:
                raise ledger_error
        raise LedgerReadError(f"{method} {path} rejected: {payload.get('error')}")

    async def _params(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/v1/params")

    async def _operator(self, operator: str) -> Dict[str, Any]:
        op = normalize_operator(operator)
        return await self._request("GET", f"/api/v1/operators/{op}", operator=op)

    async def interval(self) -> int:
        return int((await self._params())["interval"])

    async def grace(self) -> int:
        return int((await self._params())["grace"])

    async def chain_time(self) -> int:
        return int((await self._params())["chain_time"])

    async def last_proof_time(self, operator: str) -> int:
        return int((await self._operator(operator))["last_proof_time"])

    async def penalty_count(self, operator: str) -> int:
        return int((await self._operator(operator))["penalty_count"])

    async def is_registered(self, operator: str) -> bool:
        return bool((await self._operator(operator))["registered"])

    async def register(self, operator: str) -> None:
        op = normalize_operator(operator)
        await self._request("POST", f"/api/v1/operators/{op}/register", operator=op, authorized=True)

    async def submit_proof(self, operator: str, note: str) -> int:
        op = normalize_operator(operator)
        data = await self._request(
            "POST",
            f"/api/v1/operators/{op}/proofs",
            operator=op,
            body={"note": note},
            as_operator=True,
        )
        return int(data["timestamp"])

    async def apply_penalty(self, operator: str) -> PenaltyOutcome:
        op = normalize_operator(operator)
        data = await self._request(
            "POST", f"/api/v1/operators/{op}/penalties", operator=op, authorized=True,
        )
        return PenaltyOutcome.from_dict(data)
