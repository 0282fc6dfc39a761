"""
events.py
=========

Decoding of raw ERC‑20 logs into typed events.

The indexing backend hands us logs as loosely typed JSON objects. This module
turns them into :class:`RawLog` records and then into one of the two event
types the reconciler cares about, :class:`ApprovalEvent` or
:class:`TransferEvent`. Anything else is skipped by returning ``None``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Union


# ----------------------------------------------------------------------------
# Constants
# ----------------------------------------------------------------------------

# Precomputed Keccak‑256 hashes of the canonical ERC‑20 event signatures.
TRANSFER_TOPIC = (
    "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
)  # keccak("Transfer(address,address,uint256)")
APPROVAL_TOPIC = (
    "0x8c5be1e5ebec7d5bd14f714f22dc3bd3f1fc0cf11088a7c6c1559617d7e604bb"
)  # keccak("Approval(address,address,uint256)")

MAX_UINT256 = 2 ** 256 - 1

_ADDRESS_RE = re.compile(r"^(0x)?[0-9a-fA-F]{40}$")


# ----------------------------------------------------------------------------
# Address and word helpers
# ----------------------------------------------------------------------------

def normalize_address(addr: str) -> str:
    """Return ``addr`` as lower‑case hex with a 0x prefix.

    Raises ValueError if the value is not a 20 byte hex string.
    """
    if not isinstance(addr, str) or not _ADDRESS_RE.match(addr.strip()):
        raise ValueError(f"Invalid address: {addr!r}")
    addr = addr.strip().lower()
    if not addr.startswith("0x"):
        addr = "0x" + addr
    return addr


def address_to_topic(addr: str) -> str:
    """Left pad an address to a 32‑byte topic word."""
    return "0x" + normalize_address(addr)[2:].rjust(64, "0")


def topic_to_address(topic: str) -> str:
    """Recover an address from an indexed topic (last 20 bytes)."""
    clean = topic.lower()
    if clean.startswith("0x"):
        clean = clean[2:]
    if len(clean) < 40:
        raise ValueError(f"Topic too short for an address: {topic!r}")
    int(clean, 16)
    return "0x" + clean[-40:]


def parse_uint256(data: Optional[str]) -> int:
    """Decode the first 32‑byte word of an ABI encoded body.

    Missing or empty data decodes to zero.
    """
    if not data:
        return 0
    if data.startswith("0x"):
        data = data[2:]
    if not data:
        return 0
    return int(data[:64], 16)


def _lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if value else None


# ----------------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class RawLog:
    address: str
    topics: List[str]
    data: str
    block_number: int
    transaction_hash: Optional[str]

    @classmethod
    def from_json(cls, obj: Dict) -> "RawLog":
        """Build a RawLog from a backend log object.

        HyperSync returns ``topic0``..``topic3`` as separate fields while
        JSON‑RPC style payloads carry a ``topics`` list; both are accepted.
        """
        if "topics" in obj and obj["topics"] is not None:
            topics = list(obj["topics"])
        else:
            topics = [obj.get(f"topic{i}") for i in range(4)]
        # Trailing empty topics are dropped, inner gaps stay as None.
        while topics and not topics[-1]:
            topics.pop()
        block = obj.get("block_number", obj.get("blockNumber", 0))
        if isinstance(block, str):
            block = int(block, 16) if block.startswith("0x") else int(block)
        return cls(
            address=(obj.get("address") or "").lower(),
            topics=[t.lower() if t else t for t in topics],
            data=obj.get("data") or "0x",
            block_number=int(block or 0),
            transaction_hash=_lower(
                obj.get("transaction_hash", obj.get("transactionHash"))
            ),
        )


@dataclass(frozen=True)
class TransactionInfo:
    hash: str
    sender: Optional[str]
    to: Optional[str]

    @classmethod
    def from_json(cls, obj: Dict) -> "TransactionInfo":
        return cls(
            hash=(obj.get("hash") or "").lower(),
            sender=_lower(obj.get("from")),
            to=_lower(obj.get("to")),
        )


@dataclass(frozen=True)
class ApprovalEvent:
    token_address: str
    owner: str
    spender: str
    amount: int
    block_number: int
    tx_hash: Optional[str]


@dataclass(frozen=True)
class TransferEvent:
    token_address: str
    sender: str
    recipient: str
    amount: int
    block_number: int
    tx_hash: Optional[str]


DecodedEvent = Union[ApprovalEvent, TransferEvent]


# ----------------------------------------------------------------------------
# Decoder
# ----------------------------------------------------------------------------

def decode_log(log: RawLog) -> Optional[DecodedEvent]:
    """Decode an ERC‑20 Approval or Transfer log.

    Returns None for logs with an unknown selector or without the indexed
    topics both events carry. Malformed hex raises ValueError; callers are
    expected to isolate that per log.
    """
    topics = log.topics
    if len(topics) < 3 or not topics[0] or not topics[1] or not topics[2]:
        return None
    selector = topics[0]
    if selector not in (APPROVAL_TOPIC, TRANSFER_TOPIC):
        return None

    first = topic_to_address(topics[1])
    second = topic_to_address(topics[2])
    amount = parse_uint256(log.data)

    if selector == APPROVAL_TOPIC:
        return ApprovalEvent(
            token_address=log.address,
            owner=first,
            spender=second,
            amount=amount,
            block_number=log.block_number,
            tx_hash=log.transaction_hash,
        )
    return TransferEvent(
        token_address=log.address,
        sender=first,
        recipient=second,
        amount=amount,
        block_number=log.block_number,
        tx_hash=log.transaction_hash,
    )
