#!/usr/bin/env python3
"""
cli.py
======

Command line entry point. Scans the selected chains for approvals granted by
an address, reconciles them with the transfers that consumed them and prints
the outstanding exposure, riskiest first.

    approval-reconciler --address 0x... --chains popular --export out.json
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Dict, List, Optional

from approval_reconciler.backend import DEFAULT_TIMEOUT, HypersyncClient
from approval_reconciler.chains import CHAINS, PRESETS, chain_name, resolve_chains
from approval_reconciler.events import normalize_address
from approval_reconciler.metadata import TokenMetadataResolver
from approval_reconciler.orchestrator import ScanOrchestrator, aggregate
from approval_reconciler.report import build_report, export_report, print_table
from approval_reconciler.scanner import ChainScanStats

DEFAULT_CHAINS = "1"

logger = logging.getLogger("approval_reconciler")


def list_chains() -> None:
    for chain in CHAINS.values():
        print(f"{chain.chain_id:>8}  {chain.name}")
    print()
    for name, ids in PRESETS.items():
        print(f"{name}: {', '.join(chain_name(c) for c in ids)}")


def render_progress(snapshot: Dict[int, ChainScanStats]) -> None:
    progress = aggregate(snapshot)
    line = (
        f"\rScanning {progress.chains} chain(s): {progress.progress * 100:6.2f}% | "
        f"done {progress.complete}/{progress.chains} | failed {progress.failed} | "
        f"events {progress.total_events:,}"
    )
    sys.stderr.write(line)
    sys.stderr.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="approval-reconciler",
        description="Find outstanding ERC‑20 approvals granted by a wallet across chains.",
    )
    parser.add_argument(
        "--address",
        help="Wallet address to audit (0x...).",
    )
    parser.add_argument(
        "--chains",
        default=DEFAULT_CHAINS,
        help="Chain id, comma separated ids/names, or a preset "
        f"({', '.join(PRESETS)}). Default: {DEFAULT_CHAINS}.",
    )
    parser.add_argument(
        "--api-token",
        default=os.getenv("ENVIO_API_TOKEN"),
        help="HyperSync API token (default: $ENVIO_API_TOKEN).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        help=f"Per request timeout in seconds; also bounds how long Ctrl-C "
        f"waits for in-flight requests (default: {DEFAULT_TIMEOUT}).",
    )
    parser.add_argument(
        "--export",
        type=str,
        default=None,
        help="Export results to a file (.json or .csv).",
    )
    parser.add_argument(
        "--no-metadata",
        action="store_true",
        help="Skip token symbol/decimals lookups.",
    )
    parser.add_argument(
        "--list-chains",
        action="store_true",
        help="List supported chains and presets, then exit.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s:%(name)s:%(message)s",
    )

    if args.list_chains:
        list_chains()
        return 0
    if not args.address:
        logger.error("No address supplied; use --address 0x...")
        return 1
    try:
        target = normalize_address(args.address)
        chain_ids = resolve_chains(args.chains)
    except ValueError as e:
        logger.error(str(e))
        return 1

    def backend_factory(chain_id: int) -> HypersyncClient:
        return HypersyncClient(
            CHAINS[chain_id].hypersync_url,
            api_token=args.api_token,
            timeout=args.timeout,
        )

    orchestrator = ScanOrchestrator(target, chain_ids, backend_factory)
    logger.info(
        f"Scanning {', '.join(chain_name(c) for c in chain_ids)} for {target}"
    )
    try:
        result = orchestrator.run(on_progress=render_progress)
    except KeyboardInterrupt:
        sys.stderr.write("\n")
        logger.warning("Scan interrupted")
        return 130
    sys.stderr.write("\n")

    approvals = build_report(result.chains.values())
    metadata = None
    if not args.no_metadata and approvals:
        resolver = TokenMetadataResolver(
            {c: CHAINS[c].rpc_url for c in chain_ids if CHAINS[c].rpc_url},
            timeout=args.timeout,
        )
        metadata = resolver.symbol_and_decimals
    print_table(
        approvals,
        metadata=metadata,
        chain_names={c: chain_name(c) for c in chain_ids},
    )
    if args.export:
        try:
            export_report(approvals, args.export, metadata=metadata)
        except (OSError, ValueError) as e:
            logger.error(f"Export failed: {e}")
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
