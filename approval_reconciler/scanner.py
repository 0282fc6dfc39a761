"""
scanner.py
==========

Streams every Approval/Transfer log touching the target address on a single
chain, decodes each batch and folds it into a :class:`ReconciliationState`.

A scanner moves through ``PENDING -> CONNECTING -> STREAMING`` and ends in
``COMPLETE`` or ``FAILED``. Failures never escape :meth:`ChainScanner.run`:
a chain that cannot be scanned returns an empty result and the reason is
kept in its stats.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

from approval_reconciler.backend import EventBatch, build_query
from approval_reconciler.events import (
    ApprovalEvent,
    DecodedEvent,
    decode_log,
    normalize_address,
)
from approval_reconciler.reconcile import (
    ApprovalMap,
    ReconciliationState,
    UsageMap,
)

logger = logging.getLogger("approval_reconciler.scanner")


class ScanState(str, enum.Enum):
    PENDING = "pending"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class ChainScanStats:
    chain_id: int
    state: ScanState = ScanState.PENDING
    height: int = 0
    last_block_seen: int = 0
    total_events: int = 0
    total_approvals: int = 0
    start_time: float = 0.0
    end_time: float = 0.0
    is_scanning: bool = False
    is_complete: bool = False
    error: Optional[str] = None

    @property
    def elapsed(self) -> float:
        if not self.start_time:
            return 0.0
        end = self.end_time or time.time()
        return max(0.0, end - self.start_time)

    @property
    def events_per_second(self) -> float:
        elapsed = self.elapsed
        return self.total_events / elapsed if elapsed > 0 else 0.0

    @property
    def progress(self) -> float:
        if self.state == ScanState.COMPLETE:
            return 1.0
        if self.height <= 0:
            return 0.0
        return min(1.0, self.last_block_seen / self.height)

    @property
    def failed(self) -> bool:
        return self.state == ScanState.FAILED


@dataclass
class ChainResult:
    chain_id: int
    approvals: ApprovalMap = field(default_factory=dict)
    usage: UsageMap = field(default_factory=dict)

    @property
    def approval_count(self) -> int:
        return sum(len(spenders) for spenders in self.approvals.values())


class ChainScanner:
    """Scan one chain for one target address.

    The scanner exclusively owns its stats and reconciliation state; other
    threads only ever see copies through :meth:`snapshot`.
    """

    def __init__(
        self,
        chain_id: int,
        backend,
        target: str,
        max_receive_failures: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self.chain_id = chain_id
        self.backend = backend
        self.target = normalize_address(target)
        self.max_receive_failures = max_receive_failures
        self.retry_delay = retry_delay
        self.stats = ChainScanStats(chain_id=chain_id)
        self.state = ReconciliationState(target=self.target)

    def snapshot(self) -> ChainScanStats:
        return dataclasses.replace(self.stats)

    def run(self, cancel_event: Optional[threading.Event] = None) -> ChainResult:
        """Scan the chain to its current tip and return the folded maps."""
        cancel_event = cancel_event or threading.Event()
        stats = self.stats
        stats.start_time = time.time()
        stats.state = ScanState.CONNECTING
        try:
            stats.height = self.backend.get_height()
        except Exception as e:
            logger.error(f"Chain {self.chain_id}: height lookup failed: {e}")
            return self._fail(str(e))
        logger.info(f"Chain {self.chain_id}: connected, height {stats.height}")

        try:
            stream = self.backend.open_stream(
                build_query(self.target, 0), to_block=stats.height + 1
            )
        except Exception as e:
            logger.error(f"Chain {self.chain_id}: could not open stream: {e}")
            return self._fail(str(e))

        stats.state = ScanState.STREAMING
        stats.is_scanning = True
        failures = 0
        while True:
            if cancel_event.is_set():
                logger.info(f"Chain {self.chain_id}: scan cancelled")
                return self._fail("cancelled")
            try:
                batch = stream.receive_batch()
            except Exception as e:
                failures += 1
                if failures >= self.max_receive_failures:
                    logger.error(
                        f"Chain {self.chain_id}: giving up after {failures} "
                        f"failed receives at block {stats.last_block_seen}: {e}"
                    )
                    return self._fail(str(e))
                delay = self.retry_delay * 2 ** (failures - 1)
                logger.warning(
                    f"Chain {self.chain_id}: receive failed ({e}); "
                    f"retrying from block {stats.last_block_seen} in {delay:.1f}s"
                )
                cancel_event.wait(delay)
                continue
            failures = 0
            if batch is None:
                break
            self.process_batch(batch)

        stats.end_time = time.time()
        stats.is_scanning = False
        stats.is_complete = True
        stats.state = ScanState.COMPLETE
        logger.info(
            f"Chain {self.chain_id}: scan complete, {stats.total_events} events "
            f"in {stats.elapsed:.1f}s"
        )
        return ChainResult(
            chain_id=self.chain_id,
            approvals=self.state.approvals,
            usage=self.state.usage,
        )

    def process_batch(self, batch: EventBatch) -> None:
        """Decode and fold one batch, then advance the cursor.

        Logs that fail to decode are skipped. An error while folding stops
        this batch but keeps whatever was already folded.
        """
        stats = self.stats
        stats.total_events += len(batch.logs) + getattr(batch, "skipped_logs", 0)
        try:
            transactions = {tx.hash: tx for tx in batch.transactions if tx.hash}
            events: List[DecodedEvent] = []
            for raw in batch.logs:
                try:
                    event = decode_log(raw)
                except Exception as e:
                    logger.debug(
                        f"Chain {self.chain_id}: skipping undecodable log in "
                        f"{raw.transaction_hash}: {e}"
                    )
                    continue
                if event is not None:
                    events.append(event)
            stats.total_approvals += sum(
                1
                for event in events
                if isinstance(event, ApprovalEvent) and event.owner == self.target
            )
            self.state.apply_batch(events, transactions)
        except Exception as e:
            logger.warning(
                f"Chain {self.chain_id}: error processing batch ending at "
                f"block {batch.next_block}: {e}"
            )
        stats.last_block_seen = max(stats.last_block_seen, batch.next_block)

    def _fail(self, reason: str) -> ChainResult:
        stats = self.stats
        stats.error = reason
        stats.state = ScanState.FAILED
        stats.is_scanning = False
        stats.is_complete = True
        stats.end_time = time.time()
        self.state = ReconciliationState(target=self.target)
        return ChainResult(chain_id=self.chain_id)

