"""
backend.py
==========

Client for the HyperSync indexing backend.

The scanner only relies on the shape exposed here: ``get_height()``,
``open_stream(query)`` and ``stream.receive_batch()`` which yields an
:class:`EventBatch` per call and ``None`` once the chain tip known at the
time the stream was opened has been reached. Any other backend with the same
shape can be plugged into the scanner.

See https://docs.envio.dev/docs/HyperSync/hypersync-query for the query
format.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests

from approval_reconciler.events import (
    APPROVAL_TOPIC,
    TRANSFER_TOPIC,
    RawLog,
    TransactionInfo,
    address_to_topic,
    normalize_address,
)

DEFAULT_TIMEOUT = 30

LOG_FIELDS = [
    "block_number",
    "log_index",
    "transaction_index",
    "transaction_hash",
    "data",
    "address",
    "topic0",
    "topic1",
    "topic2",
    "topic3",
]
TRANSACTION_FIELDS = ["from", "to", "hash"]

logger = logging.getLogger("approval_reconciler.backend")


class BackendError(RuntimeError):
    """Raised when the indexing backend cannot serve a request."""


# ----------------------------------------------------------------------------
# Query and batch types
# ----------------------------------------------------------------------------

@dataclass
class ScanQuery:
    from_block: int
    log_filters: List[Dict] = field(default_factory=list)
    transaction_filters: List[Dict] = field(default_factory=list)
    field_selection: Dict[str, List[str]] = field(default_factory=dict)
    to_block: Optional[int] = None

    def to_json(self) -> Dict:
        body = {
            "from_block": self.from_block,
            "logs": self.log_filters,
            "transactions": self.transaction_filters,
            "field_selection": self.field_selection,
        }
        if self.to_block is not None:
            body["to_block"] = self.to_block
        return body


@dataclass
class EventBatch:
    logs: List[RawLog]
    transactions: List[TransactionInfo]
    next_block: int
    # Logs dropped because they could not be parsed.
    skipped_logs: int = 0


def build_query(target: str, from_block: int = 0) -> ScanQuery:
    """Build the query for every event touching ``target``.

    The backend ORs the filters: Approvals owned by the target, Transfers
    from or to the target, and transactions sent by or to the target.
    """
    target = normalize_address(target)
    target_topic = address_to_topic(target)
    return ScanQuery(
        from_block=from_block,
        log_filters=[
            {"topics": [[APPROVAL_TOPIC], [target_topic], []]},
            {"topics": [[TRANSFER_TOPIC], [target_topic], []]},
            {"topics": [[TRANSFER_TOPIC], [], [target_topic]]},
        ],
        transaction_filters=[
            {"from": [target]},
            {"to": [target]},
        ],
        field_selection={
            "log": list(LOG_FIELDS),
            "transaction": list(TRANSACTION_FIELDS),
        },
    )


# ----------------------------------------------------------------------------
# HTTP client
# ----------------------------------------------------------------------------

class HypersyncClient:
    """A minimal HyperSync JSON API client.

    One client is used per chain and is not shared between threads.
    """

    def __init__(
        self,
        url: str,
        api_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        if api_token:
            self.session.headers["Authorization"] = f"Bearer {api_token}"

    def _request(self, method: str, path: str, body: Optional[Dict] = None) -> Dict:
        try:
            response = self.session.request(
                method, self.url + path, json=body, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise BackendError(f"HyperSync connection error: {e}") from e
        if response.status_code != 200:
            raise BackendError(
                f"HyperSync HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise BackendError(f"HyperSync returned invalid JSON: {e}") from e
        if isinstance(data, dict) and data.get("error"):
            raise BackendError(f"HyperSync error: {data['error']}")
        return data

    def get_height(self) -> int:
        """Return the latest block the backend has indexed."""
        data = self._request("GET", "/height")
        try:
            return int(data["height"])
        except (KeyError, TypeError, ValueError) as e:
            raise BackendError(f"Unexpected height response: {data!r}") from e

    def query(self, query: ScanQuery) -> Dict:
        return self._request("POST", "/query", query.to_json())

    def close(self) -> None:
        """Drop pooled connections; an in-flight request may still run to
        its timeout."""
        self.session.close()

    def open_stream(
        self, query: ScanQuery, to_block: Optional[int] = None
    ) -> "HypersyncStream":
        """Open a cursor paginated stream starting at ``query.from_block``.

        ``to_block`` is exclusive. When omitted the stream stops at the
        archive height reported by the first response.
        """
        return HypersyncStream(self, query, to_block)


class HypersyncStream:
    def __init__(
        self, client: HypersyncClient, query: ScanQuery, to_block: Optional[int]
    ) -> None:
        self.client = client
        self.query = query
        self.cursor = query.from_block
        self.stop_block = to_block
        self._done = False

    def receive_batch(self) -> Optional[EventBatch]:
        """Fetch the next page, or None once the stop block is reached.

        The cursor only moves after a successful response, so a failed call
        can simply be retried.
        """
        if self._done or (
            self.stop_block is not None and self.cursor >= self.stop_block
        ):
            self._done = True
            return None

        page = ScanQuery(
            from_block=self.cursor,
            log_filters=self.query.log_filters,
            transaction_filters=self.query.transaction_filters,
            field_selection=self.query.field_selection,
            to_block=self.stop_block,
        )
        response = self.client.query(page)

        logs: List[RawLog] = []
        transactions: List[TransactionInfo] = []
        skipped = 0
        chunks = response.get("data") or []
        if isinstance(chunks, dict):
            chunks = [chunks]
        for chunk in chunks:
            for obj in chunk.get("logs") or []:
                try:
                    logs.append(RawLog.from_json(obj))
                except Exception as e:
                    skipped += 1
                    logger.debug(f"{self.client.url}: skipping malformed log: {e}")
            for obj in chunk.get("transactions") or []:
                try:
                    transactions.append(TransactionInfo.from_json(obj))
                except Exception as e:
                    logger.debug(
                        f"{self.client.url}: skipping malformed transaction: {e}"
                    )

        if self.stop_block is None and response.get("archive_height") is not None:
            self.stop_block = int(response["archive_height"]) + 1

        next_block = int(response.get("next_block", self.cursor))
        if next_block <= self.cursor:
            # A page that does not advance ends the stream; its logs are
            # handed out once so they are never folded twice.
            self._done = True
            if not logs and not skipped:
                return None
            logger.warning(
                f"{self.client.url}: next block {next_block} did not advance "
                f"past {self.cursor}; ending stream"
            )
            return EventBatch(
                logs=logs,
                transactions=transactions,
                next_block=self.cursor,
                skipped_logs=skipped,
            )
        self.cursor = next_block
        logger.debug(
            f"{self.client.url}: {len(logs)} logs, next block {self.cursor}"
        )
        return EventBatch(
            logs=logs,
            transactions=transactions,
            next_block=self.cursor,
            skipped_logs=skipped,
        )
