"""
orchestrator.py
===============

Runs one :class:`ChainScanner` per chain in a thread pool and collects their
results into a single :class:`ScanResult`. Progress is exposed as copies of
each scanner's stats so a UI can poll without touching scanner state.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from approval_reconciler.events import normalize_address
from approval_reconciler.scanner import (
    ChainResult,
    ChainScanner,
    ChainScanStats,
    ScanState,
)

logger = logging.getLogger("approval_reconciler.orchestrator")

ProgressCallback = Callable[[Dict[int, ChainScanStats]], None]


@dataclass
class ScanResult:
    target: str
    chains: Dict[int, ChainResult] = field(default_factory=dict)
    stats: Dict[int, ChainScanStats] = field(default_factory=dict)

    @property
    def failed_chains(self) -> List[int]:
        return sorted(cid for cid, s in self.stats.items() if s.failed)


@dataclass
class ScanProgress:
    chains: int
    complete: int
    failed: int
    total_events: int
    progress: float


def aggregate(snapshot: Dict[int, ChainScanStats]) -> ScanProgress:
    """Summarise per‑chain stats into a single progress line."""
    chains = len(snapshot)
    return ScanProgress(
        chains=chains,
        complete=sum(1 for s in snapshot.values() if s.is_complete),
        failed=sum(1 for s in snapshot.values() if s.failed),
        total_events=sum(s.total_events for s in snapshot.values()),
        progress=(
            sum(s.progress if not s.failed else 1.0 for s in snapshot.values())
            / chains
            if chains
            else 1.0
        ),
    )


class ScanOrchestrator:
    """Scan several chains concurrently for one target address.

    ``backend_factory`` is called once per chain id and must return an object
    with ``get_height()`` and ``open_stream(query, to_block=...)``.
    """

    def __init__(
        self,
        target: str,
        chain_ids: Iterable[int],
        backend_factory: Callable[[int], object],
        max_workers: Optional[int] = None,
        max_receive_failures: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self.target = normalize_address(target)
        self.chain_ids = list(dict.fromkeys(chain_ids))
        if not self.chain_ids:
            raise ValueError("No chains to scan")
        self.backend_factory = backend_factory
        self.max_workers = max_workers or len(self.chain_ids)
        self.max_receive_failures = max_receive_failures
        self.retry_delay = retry_delay
        self.cancel_event = threading.Event()
        self.scanners: Dict[int, ChainScanner] = {}
        self._failed: Dict[int, ChainScanStats] = {}

    def snapshot(self) -> Dict[int, ChainScanStats]:
        snap = {cid: ChainScanStats(chain_id=cid) for cid in self.chain_ids}
        for cid, scanner in list(self.scanners.items()):
            snap[cid] = scanner.snapshot()
        snap.update(self._failed)
        return snap

    def cancel(self) -> None:
        """Ask every scanner to stop and drop backend connections.

        Scanners stop at their next receive. A request already on the wire
        can still hold its worker thread until the backend timeout expires.
        """
        self.cancel_event.set()
        for chain_id, scanner in list(self.scanners.items()):
            close = getattr(scanner.backend, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception as e:
                logger.debug(f"Chain {chain_id}: error closing backend: {e}")

    def _scan_chain(self, chain_id: int) -> ChainResult:
        scanner = self.scanners[chain_id]
        return scanner.run(self.cancel_event)

    def _admit(self, chain_id: int) -> None:
        try:
            backend = self.backend_factory(chain_id)
            self.scanners[chain_id] = ChainScanner(
                chain_id,
                backend,
                self.target,
                max_receive_failures=self.max_receive_failures,
                retry_delay=self.retry_delay,
            )
        except Exception as e:
            logger.error(f"Chain {chain_id}: could not create backend: {e}")
            self._failed[chain_id] = ChainScanStats(
                chain_id=chain_id,
                state=ScanState.FAILED,
                is_complete=True,
                error=str(e),
            )

    def run(
        self,
        on_progress: Optional[ProgressCallback] = None,
        poll_interval: float = 0.3,
    ) -> ScanResult:
        """Scan every chain and return once all of them have finished.

        A chain that fails for any reason contributes an empty result.
        """
        for chain_id in self.chain_ids:
            self._admit(chain_id)

        result = ScanResult(target=self.target)
        executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="chain-scan"
        )
        futures: Dict[Future, int] = {
            executor.submit(self._scan_chain, cid): cid for cid in self.scanners
        }
        pending = set(futures)
        try:
            while pending:
                done, pending = wait(
                    pending, timeout=poll_interval, return_when=FIRST_COMPLETED
                )
                for future in done:
                    chain_id = futures[future]
                    try:
                        result.chains[chain_id] = future.result()
                    except Exception as e:
                        logger.error(f"Chain {chain_id}: scan crashed: {e}")
                        result.chains[chain_id] = ChainResult(chain_id=chain_id)
                if on_progress is not None:
                    on_progress(self.snapshot())
        except BaseException:
            # Interrupted: stop scanners at their next receive. Interpreter
            # exit still joins the workers, bounded by the backend timeout.
            self.cancel()
            executor.shutdown(wait=False, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

        for chain_id in self.chain_ids:
            result.chains.setdefault(chain_id, ChainResult(chain_id=chain_id))
        result.stats = self.snapshot()
        if result.failed_chains:
            logger.warning(
                f"Scan finished with failed chains: "
                f"{', '.join(str(c) for c in result.failed_chains)}"
            )
        return result
