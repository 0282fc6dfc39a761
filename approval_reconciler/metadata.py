"""
metadata.py
===========

Best effort token metadata (name, symbol, decimals) fetched with ``eth_call``
against public JSON‑RPC endpoints. Every failure falls back to the raw token
address and 18 decimals, so the report never depends on these lookups.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import requests

NAME_SELECTOR = "0x06fdde03"      # keccak("name()")[:4]
SYMBOL_SELECTOR = "0x95d89b41"    # keccak("symbol()")[:4]
DECIMALS_SELECTOR = "0x313ce567"  # keccak("decimals()")[:4]

DEFAULT_DECIMALS = 18

logger = logging.getLogger("approval_reconciler.metadata")


class EthereumRPC:
    """A minimal JSON‑RPC client for EVM nodes.

    Retries HTTP 429 and connection errors with exponential backoff.
    """

    def __init__(self, url: str, timeout: float = 10, retries: int = 3) -> None:
        self.url = url
        self.timeout = timeout
        self.retries = retries
        self.session = requests.Session()
        self._id_counter = 0

    def _rpc(self, method: str, params: list):
        self._id_counter += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._id_counter,
            "method": method,
            "params": params,
        }
        backoff = 0.5
        for attempt in range(self.retries):
            try:
                response = self.session.post(self.url, json=payload, timeout=self.timeout)
            except requests.RequestException as e:
                if attempt + 1 >= self.retries:
                    raise RuntimeError(f"RPC connection error: {e}") from e
                time.sleep(backoff)
                backoff = min(backoff * 2, 8.0)
                continue
            if response.status_code == 429 and attempt + 1 < self.retries:
                time.sleep(backoff)
                backoff = min(backoff * 2, 8.0)
                continue
            if response.status_code != 200:
                raise RuntimeError(
                    f"RPC HTTP {response.status_code}: {response.text[:200]}"
                )
            data = response.json()
            if not isinstance(data, dict):
                raise RuntimeError(f"RPC returned unexpected body: {str(data)[:200]}")
            if "error" in data and data["error"]:
                raise RuntimeError(
                    f"RPC error {data['error'].get('code')}: {data['error'].get('message')}"
                )
            if "result" not in data:
                raise RuntimeError(f"RPC response without result for {method}")
            return data["result"]
        raise RuntimeError(f"RPC request failed after retries: {method}")

    def eth_call(self, to: str, data: str) -> str:
        """Perform a call without creating a transaction and return raw hex data."""
        return self._rpc("eth_call", [{"to": to, "data": data}, "latest"])


def decode_string(data: str) -> Optional[str]:
    """Decode an ABI encoded string, or a bytes32 right padded string."""
    if not data or data == "0x":
        return None
    raw = data[2:] if data.startswith("0x") else data
    if len(raw) >= 128:
        length = int(raw[64:128], 16)
        value = bytes.fromhex(raw[128:128 + length * 2])
    else:
        value = bytes.fromhex(raw[:64]).rstrip(b"\x00")
    text = value.decode("utf-8", errors="ignore").strip("\x00").strip()
    return text or None


@dataclass(frozen=True)
class TokenMetadata:
    name: Optional[str]
    symbol: Optional[str]
    decimals: int = DEFAULT_DECIMALS


def get_token_metadata(rpc: EthereumRPC, token: str) -> TokenMetadata:
    """Retrieve name, symbol and decimals for a token via eth_call.

    Each field falls back independently if its call fails.
    """
    name = symbol = None
    decimals = DEFAULT_DECIMALS
    try:
        name = decode_string(rpc.eth_call(token, NAME_SELECTOR))
    except Exception as e:
        logger.debug(f"name() failed for {token}: {e}")
    try:
        symbol = decode_string(rpc.eth_call(token, SYMBOL_SELECTOR))
    except Exception as e:
        logger.debug(f"symbol() failed for {token}: {e}")
    try:
        data = rpc.eth_call(token, DECIMALS_SELECTOR)
        if data and len(data) >= 66:
            decimals = int(data[2:66], 16)
    except Exception as e:
        logger.debug(f"decimals() failed for {token}: {e}")
    if decimals > 77:
        decimals = DEFAULT_DECIMALS
    return TokenMetadata(name=name, symbol=symbol, decimals=decimals)


class TokenMetadataResolver:
    """Caches metadata per (chain, token); chains without an RPC URL get
    the fallback values."""

    def __init__(self, rpc_urls: Dict[int, str], timeout: float = 10) -> None:
        self._clients = {cid: EthereumRPC(url, timeout=timeout) for cid, url in rpc_urls.items()}
        self._cache: Dict[Tuple[int, str], TokenMetadata] = {}
        self._lock = threading.Lock()

    def resolve(self, chain_id: int, token: str) -> TokenMetadata:
        key = (chain_id, token.lower())
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached
        rpc = self._clients.get(chain_id)
        if rpc is None:
            meta = TokenMetadata(name=None, symbol=None)
        else:
            meta = get_token_metadata(rpc, token)
        with self._lock:
            self._cache[key] = meta
        return meta

    def symbol_and_decimals(self, chain_id: int, token: str) -> Tuple[str, int]:
        meta = self.resolve(chain_id, token)
        return (meta.symbol or token, meta.decimals)
