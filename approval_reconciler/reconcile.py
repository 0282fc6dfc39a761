"""
reconcile.py
============

Per‑chain state that folds decoded Approval and Transfer events into the
latest approval for every (token, spender) pair and the amount transferred
out of the target wallet that can be attributed to each spender.

Attribution is a heuristic. A Transfer from the target is charged to:

1. the transaction sender, when someone other than the target sent the
   transaction (the usual ``transferFrom`` pattern), or
2. the transaction's destination, when the target sent the transaction
   itself to a contract that already holds an approval for the token.

Everything else is dropped. A transaction that moves tokens to several
approved spenders at once can be misattributed; that is a known limitation
of working from logs alone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional

from approval_reconciler.events import (
    MAX_UINT256,
    ApprovalEvent,
    DecodedEvent,
    TransactionInfo,
    TransferEvent,
)

# Values above this are within 0.1% of MAX_UINT256 and count as unlimited.
NEAR_UNLIMITED_THRESHOLD = MAX_UINT256 - MAX_UINT256 // 1000

logger = logging.getLogger("approval_reconciler.reconcile")

ApprovalMap = Dict[str, Dict[str, "ApprovalRecord"]]
UsageMap = Dict[str, Dict[str, int]]


def is_unlimited(amount: int) -> bool:
    """True for the max uint256 sentinel and values practically equal to it."""
    return amount == MAX_UINT256 or amount > NEAR_UNLIMITED_THRESHOLD


@dataclass(frozen=True)
class ApprovalRecord:
    approved_amount: int
    block_number: int
    tx_hash: Optional[str]


@dataclass
class ReconciliationState:
    """Approval and usage maps for one target address on one chain."""

    target: str
    approvals: ApprovalMap = field(default_factory=dict)
    usage: UsageMap = field(default_factory=dict)

    def apply(
        self, event: DecodedEvent, transaction: Optional[TransactionInfo] = None
    ) -> bool:
        """Fold one event. Returns True if the state changed."""
        if isinstance(event, ApprovalEvent):
            return self._apply_approval(event)
        if isinstance(event, TransferEvent):
            return self._apply_transfer(event, transaction)
        raise TypeError(f"Unsupported event type: {type(event).__name__}")

    def apply_batch(
        self,
        events: Iterable[DecodedEvent],
        transactions: Mapping[str, TransactionInfo],
    ) -> int:
        """Fold events in order, resolving transactions by hash."""
        changed = 0
        for event in events:
            tx = transactions.get(event.tx_hash) if event.tx_hash else None
            if self.apply(event, tx):
                changed += 1
        return changed

    def _apply_approval(self, event: ApprovalEvent) -> bool:
        if event.owner != self.target:
            return False
        spenders = self.approvals.setdefault(event.token_address, {})
        current = spenders.get(event.spender)
        # Ties keep the later arrival.
        if current is not None and event.block_number < current.block_number:
            logger.debug(
                f"Ignoring stale approval {event.token_address}/{event.spender} "
                f"at block {event.block_number} (have {current.block_number})"
            )
            return False
        spenders[event.spender] = ApprovalRecord(
            approved_amount=event.amount,
            block_number=event.block_number,
            tx_hash=event.tx_hash,
        )
        return True

    def _apply_transfer(
        self, event: TransferEvent, transaction: Optional[TransactionInfo]
    ) -> bool:
        if event.sender != self.target:
            return False
        spender = self.attribute(event, transaction)
        if spender is None:
            return False
        used = self.usage.setdefault(event.token_address, {})
        used[spender] = used.get(spender, 0) + event.amount
        return True

    def attribute(
        self, event: TransferEvent, transaction: Optional[TransactionInfo]
    ) -> Optional[str]:
        """Return the spender a Transfer is charged to, or None."""
        tx_sender = transaction.sender if transaction else None
        if tx_sender and tx_sender != event.sender:
            return tx_sender
        if tx_sender == event.sender and transaction.to:
            if transaction.to in self.approvals.get(event.token_address, {}):
                return transaction.to
        return None
