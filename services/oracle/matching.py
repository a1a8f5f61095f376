# oracle/matching.py
# Fuzzy matching of payment intents against observed transactions.
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import base58

from services.crypto_core.range_proof import AMOUNT_DEC as SOL_DEC
from services.crypto_core.range_proof import DEFAULT_TOLERANCE, within_band

LAMPORTS_PER_SOL = Decimal(1_000_000_000)
EARLY_SLACK_MS = 5 * 60 * 1000
MAX_TIME_DIFF_MS = 24 * 60 * 60 * 1000

# mainnet mints for the SPL tokens payment requests may name
TOKEN_MINTS: Dict[str, str] = {
    "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "USDT": "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
}


def _q(x: Any) -> Decimal:
    return Decimal(str(x)).quantize(SOL_DEC)


def is_valid_pubkey(address: str) -> bool:
    try:
        return len(base58.b58decode(address)) == 32
    except ValueError:
        return False


def is_valid_signature(signature: str) -> bool:
    try:
        return len(base58.b58decode(signature)) == 64
    except ValueError:
        return False


def intent_amount(intent: Mapping[str, Any]) -> Decimal:
    raw = intent.get("solAmount")
    if raw is None:
        raw = intent.get("tokenAmount")
    try:
        return _q(raw)
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0")


def _token_units(entry: Mapping[str, Any]) -> Decimal:
    ui = entry.get("uiTokenAmount") or {}
    try:
        return Decimal(str(ui.get("amount", "0"))) / (Decimal(10) ** int(ui.get("decimals", 0)))
    except (InvalidOperation, TypeError, ValueError):
        return Decimal("0")


def extract_transfer_amount(tx: Mapping[str, Any], address: str, token: str = "SOL") -> Decimal:
    """Positive balance change of `address` in `tx`, in whole tokens; 0 if none."""
    if not tx:
        return Decimal("0")

    if (token or "SOL").upper() == "SOL":
        keys = tx.get("accountKeys") or []
        pre, post = tx.get("preBalances") or [], tx.get("postBalances") or []
        try:
            idx = keys.index(address)
        except ValueError:
            return Decimal("0")
        if idx >= len(pre) or idx >= len(post):
            return Decimal("0")
        change = (Decimal(post[idx]) - Decimal(pre[idx])) / LAMPORTS_PER_SOL
        return _q(change) if change > 0 else Decimal("0")

    mint = TOKEN_MINTS.get(token.upper(), token)
    before: Dict[int, Decimal] = {}
    for e in tx.get("preTokenBalances") or []:
        if e.get("owner") == address and e.get("mint") == mint:
            before[int(e.get("accountIndex", -1))] = _token_units(e)
    change = Decimal("0")
    for e in tx.get("postTokenBalances") or []:
        if e.get("owner") == address and e.get("mint") == mint:
            i = int(e.get("accountIndex", -1))
            change += _token_units(e) - before.get(i, Decimal("0"))
    return change if change > 0 else Decimal("0")


def amount_within_tolerance(amount: Decimal, expected: Decimal, tolerance: Decimal = DEFAULT_TOLERANCE) -> bool:
    # same band the range proof is built from
    if amount <= 0 or expected <= 0:
        return False
    return within_band(amount, expected, tolerance)


def within_time_window(block_time_s: Optional[int], created_at_ms: int) -> bool:
    if block_time_s is None:
        return False
    block_ms = int(block_time_s) * 1000
    if block_ms < created_at_ms - EARLY_SLACK_MS:
        return False
    return abs(block_ms - created_at_ms) < MAX_TIME_DIFF_MS


def match_amount(
    tx: Mapping[str, Any],
    intent: Mapping[str, Any],
    merchant_address: str,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> Optional[Decimal]:
    """Observed amount if `tx` satisfies `intent`, else None."""
    if not tx or not tx.get("confirmed"):
        return None
    amount = extract_transfer_amount(tx, merchant_address, intent.get("token") or "SOL")
    if not amount_within_tolerance(amount, intent_amount(intent), tolerance):
        return None
    if not within_time_window(tx.get("blockTime"), int(intent.get("createdAt") or 0)):
        return None
    return amount


def find_match(
    intent: Mapping[str, Any],
    transactions: Iterable[Mapping[str, Any]],
    merchant_address: str,
    claimed: Optional[Iterable[str]] = None,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> Optional[Tuple[Mapping[str, Any], Decimal]]:
    # first acceptable transaction in iteration order wins
    taken = set(claimed or ())
    for tx in transactions:
        if tx.get("signature") in taken:
            continue
        amount = match_amount(tx, intent, merchant_address, tolerance)
        if amount is not None:
            return tx, amount
    return None
