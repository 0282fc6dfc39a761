"""Supported chains, named presets and chain selection parsing."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger("approval_reconciler.chains")

HYPERSYNC_URL_TEMPLATE = os.getenv(
    "HYPERSYNC_URL_TEMPLATE", "https://{chain_id}.hypersync.xyz"
)


@dataclass(frozen=True)
class Chain:
    chain_id: int
    name: str
    rpc_url: Optional[str] = None

    @property
    def hypersync_url(self) -> str:
        return HYPERSYNC_URL_TEMPLATE.format(chain_id=self.chain_id)


CHAINS: Dict[int, Chain] = {
    c.chain_id: c
    for c in [
        Chain(1, "ethereum", "https://eth.llamarpc.com"),
        Chain(10, "optimism", "https://mainnet.optimism.io"),
        Chain(56, "bsc", "https://bsc-dataseed.binance.org"),
        Chain(100, "gnosis", "https://rpc.gnosischain.com"),
        Chain(137, "polygon", "https://polygon-rpc.com"),
        Chain(324, "zksync", "https://mainnet.era.zksync.io"),
        Chain(8453, "base", "https://mainnet.base.org"),
        Chain(42161, "arbitrum", "https://arb1.arbitrum.io/rpc"),
        Chain(43114, "avalanche", "https://api.avax.network/ext/bc/C/rpc"),
        Chain(59144, "linea", "https://rpc.linea.build"),
        Chain(81457, "blast", "https://rpc.blast.io"),
        Chain(534352, "scroll", "https://rpc.scroll.io"),
    ]
}

PRESETS: Dict[str, List[int]] = {
    "popular": [1, 10, 137, 8453, 42161],
    "l2": [10, 324, 8453, 42161, 59144, 81457, 534352],
    "all": sorted(CHAINS),
}

_BY_NAME = {c.name: c.chain_id for c in CHAINS.values()}


def resolve_chains(selection: str) -> List[int]:
    """Parse a chain selection into a list of chain ids.

    Accepts a single id or name, a comma separated list of ids and names,
    or a preset name. Unknown entries are skipped with a warning. Raises
    ValueError when nothing resolves.
    """
    resolved: List[int] = []
    for part in (selection or "").split(","):
        item = part.strip().lower()
        if not item:
            continue
        if item in PRESETS:
            resolved.extend(PRESETS[item])
        elif item in _BY_NAME:
            resolved.append(_BY_NAME[item])
        elif item.isdigit() and int(item) in CHAINS:
            resolved.append(int(item))
        else:
            logger.warning(f"Ignoring unknown chain {part.strip()!r}")
    resolved = list(dict.fromkeys(resolved))
    if not resolved:
        raise ValueError(f"No supported chain in selection {selection!r}")
    return resolved


def chain_name(chain_id: int) -> str:
    chain = CHAINS.get(chain_id)
    return chain.name if chain else str(chain_id)
