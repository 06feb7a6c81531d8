"""
Proof agent - submits an operator's proof of life on a fixed cadence.

The agent runs next to the operator's service. A failed submission is
logged and retried on the next tick; it never stops the loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .ledger import LedgerError, NotEligible
from .models import normalize_operator
from .network.client import LedgerAuthError, LedgerReadError, LedgerWriter

logger = logging.getLogger(__name__)


class ProofAgent:
    """
    Periodic proof submitter for one operator.

    Example:
        agent = ProofAgent(client, "0xabc", interval_seconds=30)
        await agent.run_forever(stop_event)
    """

    def __init__(
        self,
        writer: LedgerWriter,
        operator: str,
        *,
        interval_seconds: float = 30.0,
        note: str = "All systems operational.",
        register_first: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._writer = writer
        self._operator = normalize_operator(operator)
        self._interval = interval_seconds
        self._note = note
        self._register_first = register_first

        self.proofs_submitted = 0
        self.proofs_failed = 0
        self.last_proof_time: Optional[int] = None

    @property
    def operator(self) -> str:
        return self._operator

    async def submit_once(self) -> Optional[int]:
        """Submit one proof. Returns the recorded timestamp or None on failure."""
        try:
            timestamp = await self._writer.submit_proof(self._operator, self._note)
        except NotEligible:
            self.proofs_failed += 1
            logger.error(f"Operator {self._operator} is not registered; proof rejected")
            return None
        except LedgerError as exc:
            self.proofs_failed += 1
            logger.error(f"Proof rejected by ledger: {exc}")
            return None
        except LedgerAuthError as exc:
            self.proofs_failed += 1
            logger.error(f"Ledger rejected the proof key for {self._operator}: {exc}")
            return None
        except LedgerReadError as exc:
            self.proofs_failed += 1
            logger.warning(f"Proof submission failed: {exc}")
            return None

        self.proofs_submitted += 1
        self.last_proof_time = timestamp
        logger.info(f"Proof submitted for {self._operator} at {timestamp}")
        return timestamp

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Submit immediately, then every ``interval_seconds`` until ``stop``."""
        if self._register_first:
            try:
                await self._writer.register(self._operator)
                logger.info(f"Registered operator {self._operator}")
            except (LedgerError, LedgerReadError) as exc:
                logger.error(f"Registration of {self._operator} failed: {exc}")

        logger.info(f"Proof agent started for {self._operator} (every {self._interval}s)")
        while not stop.is_set():
            await self.submit_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Proof agent for {self._operator} stopped")
