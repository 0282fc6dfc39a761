"""
report.py
=========

Turns the per‑chain approval and usage maps into the final list of
outstanding approvals, sorted so the riskiest exposure comes first on each
chain. Results can be printed as a table or exported to JSON or CSV.
"""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from approval_reconciler.reconcile import ApprovalMap, UsageMap, is_unlimited
from approval_reconciler.scanner import ChainResult

logger = logging.getLogger("approval_reconciler.report")

EXPORT_FIELDS = [
    "chain_id",
    "token",
    "token_symbol",
    "spender",
    "approved_amount",
    "transferred_amount",
    "remaining_approval",
    "remaining_readable",
    "is_unlimited",
    "block_number",
    "tx_hash",
]


@dataclass(frozen=True)
class ReconciledApproval:
    chain_id: int
    token_address: str
    spender: str
    approved_amount: int
    transferred_amount: int
    remaining_approval: int
    is_unlimited: bool
    block_number: int
    tx_hash: Optional[str]

    def readable_remaining(self, decimals: int = 18) -> str:
        """Return the remaining allowance scaled by token decimals."""
        if self.is_unlimited:
            return "unlimited"
        whole, frac = divmod(self.remaining_approval, 10 ** decimals)
        if decimals <= 0:
            return str(whole)
        frac_str = str(frac).rjust(decimals, "0")[:4]
        return f"{whole}.{frac_str}"

    def as_dict(self, symbol: Optional[str] = None, decimals: int = 18) -> Dict:
        """Return a dict for export/serialization."""
        return {
            "chain_id": self.chain_id,
            "token": self.token_address,
            "token_symbol": symbol or self.token_address,
            "spender": self.spender,
            "approved_amount": str(self.approved_amount),
            "transferred_amount": str(self.transferred_amount),
            "remaining_approval": str(self.remaining_approval),
            "remaining_readable": self.readable_remaining(decimals),
            "is_unlimited": self.is_unlimited,
            "block_number": self.block_number,
            "tx_hash": self.tx_hash,
        }


# ----------------------------------------------------------------------------
# Building
# ----------------------------------------------------------------------------

def reconcile_chain(
    chain_id: int, approvals: ApprovalMap, usage: UsageMap
) -> List[ReconciledApproval]:
    """Compute remaining exposure for every approval on one chain."""
    records: List[ReconciledApproval] = []
    for token, spenders in approvals.items():
        for spender, record in spenders.items():
            approved = record.approved_amount
            transferred = usage.get(token, {}).get(spender, 0)
            unlimited = is_unlimited(approved)
            if unlimited:
                remaining = approved
            else:
                remaining = max(approved - transferred, 0)
            if remaining <= 0:
                continue
            records.append(
                ReconciledApproval(
                    chain_id=chain_id,
                    token_address=token,
                    spender=spender,
                    approved_amount=approved,
                    transferred_amount=transferred,
                    remaining_approval=remaining,
                    is_unlimited=unlimited,
                    block_number=record.block_number,
                    tx_hash=record.tx_hash,
                )
            )
    return records


def unlimited_tokens(records: Iterable[ReconciledApproval]) -> Set[Tuple[int, str]]:
    """(chain, token) pairs carrying at least one unlimited exposure."""
    return {
        (r.chain_id, r.token_address)
        for r in records
        if r.is_unlimited or is_unlimited(r.remaining_approval)
    }


def report_sort_key(record: ReconciledApproval, unlimited: Set[Tuple[int, str]]):
    return (
        record.chain_id,
        0 if (record.chain_id, record.token_address) in unlimited else 1,
        record.token_address,
        0 if record.is_unlimited else 1,
        -record.remaining_approval,
        record.spender,
    )


def sort_report(records: Iterable[ReconciledApproval]) -> List[ReconciledApproval]:
    records = list(records)
    unlimited = unlimited_tokens(records)
    return sorted(records, key=lambda r: report_sort_key(r, unlimited))


def build_report(results: Iterable[ChainResult]) -> List[ReconciledApproval]:
    """Merge per‑chain results into one deterministically ordered list."""
    records: List[ReconciledApproval] = []
    for result in results:
        records.extend(reconcile_chain(result.chain_id, result.approvals, result.usage))
    report = sort_report(records)
    logger.info(f"Found {len(report)} outstanding approvals")
    return report


# ----------------------------------------------------------------------------
# Output
# ----------------------------------------------------------------------------

MetadataLookup = Callable[[int, str], Tuple[str, int]]


def _plain_metadata(chain_id: int, token: str) -> Tuple[str, int]:
    return (token, 18)


def print_table(
    approvals: List[ReconciledApproval],
    metadata: Optional[MetadataLookup] = None,
    chain_names: Optional[Dict[int, str]] = None,
) -> None:
    """Print a simple table of outstanding approvals to stdout."""
    if not approvals:
        print("No outstanding approvals found.")
        return
    metadata = metadata or _plain_metadata
    chain_names = chain_names or {}
    headers = ["Chain", "Token", "Spender", "Approved", "Used", "Remaining"]
    rows: List[List[str]] = []
    for a in approvals:
        symbol, decimals = metadata(a.chain_id, a.token_address)
        rows.append([
            chain_names.get(a.chain_id, str(a.chain_id)),
            f"{symbol}\n{a.token_address}" if symbol != a.token_address else a.token_address,
            a.spender,
            "unlimited" if a.is_unlimited else str(a.approved_amount),
            str(a.transferred_amount),
            a.readable_remaining(decimals),
        ])
    col_widths = [len(h) for h in headers]
    for row in rows:
        for idx, cell in enumerate(row):
            for line in cell.split("\n"):
                col_widths[idx] = max(col_widths[idx], len(line))
    sep_line = "+" + "+".join("-" * (w + 2) for w in col_widths) + "+"
    print(sep_line)
    print(
        "|"
        + "|".join(f" {headers[i].ljust(col_widths[i])} " for i in range(len(headers)))
        + "|"
    )
    print(sep_line)
    for row in rows:
        # Cells may span several lines
        max_lines = max(cell.count("\n") + 1 for cell in row)
        lines_split = [
            cell.split("\n") + [""] * (max_lines - (cell.count("\n") + 1))
            for cell in row
        ]
        for i in range(max_lines):
            print(
                "|"
                + "|".join(
                    f" {lines_split[col][i].ljust(col_widths[col])} "
                    for col in range(len(headers))
                )
                + "|"
            )
        print(sep_line)
    unlimited = sum(1 for a in approvals if a.is_unlimited)
    print(
        f"Summary: {len(approvals)} outstanding approvals, {unlimited} unlimited."
    )
    if unlimited:
        print(
            "\nRecommended: Consider revoking unlimited approvals using https://revoke.cash or a similar allowance manager."
        )


def export_report(
    approvals: List[ReconciledApproval],
    outfile: str,
    metadata: Optional[MetadataLookup] = None,
) -> None:
    """Export approvals to JSON or CSV based on file extension."""
    lower = outfile.lower()
    if lower.endswith(".json"):
        fmt = "json"
    elif lower.endswith(".csv"):
        fmt = "csv"
    else:
        raise ValueError("Unknown export format; use .json or .csv extension.")
    metadata = metadata or _plain_metadata
    records = []
    for a in approvals:
        symbol, decimals = metadata(a.chain_id, a.token_address)
        records.append(a.as_dict(symbol, decimals))
    if fmt == "json":
        with open(outfile, "w", encoding="utf-8") as f:
            json.dump(records, f, indent=2)
    else:
        with open(outfile, "w", newline="", encoding="utf-8") as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=EXPORT_FIELDS)
            writer.writeheader()
            writer.writerows(records)
    logger.info(f"Exported {len(records)} records to {outfile}")
