#!/usr/bin/env python3
# clients/cli/oracle_cli.py
# Merchant console for the ZK payment oracle HTTP API.

from __future__ import annotations
import argparse, json, os, sys
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests


# ======== Color accents (no deps) ========
class C:
    OK   = "\033[92m"
    WARN = "\033[93m"
    ERR  = "\033[91m"
    DIM  = "\033[2m"
    BOLD = "\033[1m"
    RST  = "\033[0m"

def _short(s: Optional[str]) -> str:
    return f"{s[:4]}…{s[-5:]}" if s and len(s) > 10 else (s or "-")

STATUS_COLOR = {"pending": C.WARN, "verified": C.OK, "refunded": C.DIM, "failed": C.ERR}

API_URL: str = os.getenv("ORACLE_API_URL", "http://127.0.0.1:8000")
TIMEOUT_SEC: float = 15.0


class ApiError(RuntimeError):
    pass


# ======== HTTP helpers ========
def api(method: str, path: str, **kw) -> Any:
    url = f"{API_URL.rstrip('/')}{path}"
    try:
        r = requests.request(method, url, timeout=TIMEOUT_SEC, **kw)
    except requests.RequestException as e:
        raise ApiError(f"{method} {url} failed: {e}") from e
    if r.status_code >= 400:
        try:
            detail = r.json().get("detail", r.text)
        except ValueError:
            detail = r.text
        raise ApiError(f"HTTP {r.status_code}: {detail}")
    return r.json()

def _ask(prompt: str, default: Optional[str] = None) -> str:
    suffix = f" [{default}]" if default is not None else ""
    val = input(f"{prompt}{suffix}: ").strip()
    return val or (default or "")

def _ask_amount(prompt: str, default: Optional[str] = None) -> Optional[Decimal]:
    raw = _ask(prompt, default)
    if not raw:
        return None
    try:
        d = Decimal(raw)
    except InvalidOperation:
        print(f"{C.ERR}Invalid amount: {raw}{C.RST}")
        return None
    if d <= 0:
        print(f"{C.ERR}Amount must be > 0.{C.RST}")
        return None
    return d


# ======== Printers ========
def print_payment(p: Dict[str, Any]) -> None:
    color = STATUS_COLOR.get(p.get("status"), "")
    print(f"{C.BOLD}{p['id']}{C.RST}  {color}{p.get('status')}{C.RST}")
    print(f"  Amount        : {p.get('amount')} {p.get('currency')} = {p.get('solAmount')} {p.get('token')}")
    print(f"  Order         : {p.get('orderId') or '-'}")
    print(f"  Transaction   : {_short(p.get('transactionSignature'))}")
    proof = p.get("proof") or {}
    if proof:
        print(f"  Proof         : {proof.get('id')} verified={proof.get('verified')}")
        print(f"  Merkle root   : {_short(proof.get('merkleRoot'))}")
    if p.get("refundAmount") is not None:
        print(f"  Refunded      : {p['refundAmount']} {p.get('token')}")

def print_payments(rows) -> None:
    if not rows:
        print(f"{C.DIM}(no payments){C.RST}")
        return
    for p in rows:
        color = STATUS_COLOR.get(p.get("status"), "")
        print(f"  {p['id']:<32} {color}{p.get('status'):<9}{C.RST} "
              f"{p.get('solAmount'):>14} {p.get('token'):<5} order={p.get('orderId') or '-'}")


# ======== Flows ========
def flow_create_payment() -> Dict[str, Any]:
    amount = _ask_amount("Price (fiat)")
    if amount is None:
        return {}
    body: Dict[str, Any] = {
        "amount": str(amount),
        "currency": _ask("Currency", "USD"),
        "token": _ask("Token", "SOL").upper(),
    }
    order_id = _ask("Order id (optional)")
    if order_id:
        body["order_id"] = order_id
    token_amount = _ask_amount("Token amount (blank = use price feed)", "")
    if token_amount is not None:
        body["token_amount"] = str(token_amount)
    p = api("POST", "/payments", json=body)
    print(f"{C.OK}Payment request created.{C.RST}")
    print_payment(p)
    return p

def flow_list_payments(status: Optional[str] = None) -> None:
    res = api("GET", "/payments", params={"status": status} if status else None)
    print(f"\n--- Payments ({res['total']}) ---")
    print_payments(res["payments"])

def flow_verify_payment(payment_id: Optional[str] = None, signature: Optional[str] = None) -> Dict[str, Any]:
    payment_id = payment_id or _ask("Payment id")
    signature = signature or _ask("Transaction signature")
    res = api("POST", f"/payments/{payment_id}/verify", json={"signature": signature})
    if res["verified"]:
        print(f"{C.OK}Payment verified.{C.RST}")
    else:
        print(f"{C.WARN}Not verified yet; the transaction stays bound for the next pass.{C.RST}")
    print_payment(res["payment"])
    return res

def flow_refund(payment_id: Optional[str] = None) -> Dict[str, Any]:
    payment_id = payment_id or _ask("Payment id")
    amount = _ask_amount("Refund amount (blank = full)", "")
    body: Dict[str, Any] = {"reason": _ask("Reason (optional)") or None}
    if amount is not None:
        body["amount"] = str(amount)
    res = api("POST", f"/payments/{payment_id}/refund", json=body)
    print(f"{C.OK}Refund {res['refund']['id']} recorded: {res['refund']['amount']}{C.RST}")
    return res

def flow_reconcile() -> None:
    res = api("POST", "/reconcile")
    print(f"Pending: {res['pending']}  verified now: {C.OK}{res['verified']}{C.RST}  errors: {res['errors']}")

def flow_cleanup() -> None:
    res = api("POST", "/payments/cleanup")
    print(f"Expired removed   : {len(res['expired'])}")
    print(f"Duplicates removed: {len(res['duplicates'])}")

def flow_disclose(proof_id: Optional[str] = None) -> None:
    proof_id = proof_id or _ask("Proof id")
    reveal = _ask("Reveal amount? (y/N)", "n").lower().startswith("y")
    res = api("GET", f"/zk/proofs/{proof_id}/disclose", params={"reveal_amount": str(reveal).lower()})
    print(json.dumps(res, indent=2))

def print_merkle_status() -> None:
    st = api("GET", "/merkle/status")
    zk = api("GET", "/zk/stats")
    print("\n--- Merkle Status ---")
    print(f"  Leaves             : {st['leaves']}")
    print(f"  Merkle root (hex)  : {st['root_hex']}")
    print(f"  Used nullifiers    : {st['nullifiers']}")
    print(f"  Claimed signatures : {st['claimed_signatures']}")
    print(f"  Proofs (verified)  : {zk['total']} ({zk['verified']})")
    print("---------------------\n")

def print_health() -> None:
    h = api("GET", "/health")
    color = C.OK if h["status"] == "healthy" else C.ERR
    print(f"Overall: {color}{h['status']}{C.RST}")
    for name, check in h["checks"].items():
        if "status" in check:
            print(f"  {name:<8}: {check['status']}")
    print(f"  uptime  : {h['checks']['uptime']['uptime_formatted']}")


# ======== CLI main ========
def menu() -> None:
    print(f"{C.DIM}Using API: {API_URL}{C.RST}")
    while True:
        print("\n=== ZK PAYMENT ORACLE ===")
        print("1. Create payment request")
        print("2. List payments")
        print("3. Verify payment with a transaction signature")
        print("4. Refund a verified payment")
        print("5. Run reconciliation now")
        print("6. Clean up expired & duplicate payments")
        print("7. Selective disclosure of a proof")
        print("8. Show Merkle status")
        print("9. Health")
        print("q. Quit")
        choice = input("> ").strip().lower()

        actions = {
            "1": flow_create_payment,
            "2": flow_list_payments,
            "3": flow_verify_payment,
            "4": flow_refund,
            "5": flow_reconcile,
            "6": flow_cleanup,
            "7": flow_disclose,
            "8": print_merkle_status,
            "9": print_health,
        }
        if choice == "q":
            print("Bye.")
            break
        action = actions.get(choice)
        if action is None:
            print("Invalid choice.")
            continue
        try:
            action()
        except ApiError as e:
            print(f"{C.ERR}{e}{C.RST}")

def main(argv=None) -> int:
    global API_URL
    ap = argparse.ArgumentParser(description="ZK payment oracle console")
    ap.add_argument("--api", default=API_URL, help="Oracle API base URL")
    sub = ap.add_subparsers(dest="cmd")
    sub.add_parser("list").add_argument("--status", default=None)
    v = sub.add_parser("verify")
    v.add_argument("payment_id")
    v.add_argument("signature")
    sub.add_parser("reconcile")
    sub.add_parser("cleanup")
    sub.add_parser("merkle")
    sub.add_parser("health")
    args = ap.parse_args(argv)
    API_URL = args.api

    try:
        if args.cmd is None:
            menu()
        elif args.cmd == "list":
            flow_list_payments(args.status)
        elif args.cmd == "verify":
            flow_verify_payment(args.payment_id, args.signature)
        elif args.cmd == "reconcile":
            flow_reconcile()
        elif args.cmd == "cleanup":
            flow_cleanup()
        elif args.cmd == "merkle":
            print_merkle_status()
        elif args.cmd == "health":
            print_health()
    except ApiError as e:
        print(f"{C.ERR}{e}{C.RST}")
        return 1
    return 0

if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user."); sys.exit(130)
