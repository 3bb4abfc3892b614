#!/usr/bin/env python3
"""Operator CLI for the gasless relayer"""

import argparse
import asyncio
import json
from decimal import Decimal
from typing import Optional

import httpx

from relayer.config import ETHER, settings
from relayer.core.execution.context import build_ledger_client
from relayer.core.execution.errors import RelayError


DEFAULT_URL = f"http://{settings.host}:{settings.port}"


def format_native(wei: int) -> str:
    return f"{Decimal(wei) / Decimal(ETHER):.6f}"


async def cli_status():
    """Check the relay account directly against the configured ledger"""
    try:
        ledger = build_ledger_client(settings)
    except ValueError as e:
        print(f"❌ Configuration error: {e}")
        return 1

    try:
        address = ledger.relayer_address
        print(f"🔍 Checking relayer {address} on {settings.network} (chain {settings.chain_id})...")
        authorized = await ledger.check_authorization(address)
        balance = await ledger.spendable_balance(address)
    except RelayError as e:
        print(f"❌ Error: {e}")
        return 1
    finally:
        await ledger.close()

    reserve = settings.min_operating_reserve_wei
    print(f"Authorized: {'✅ yes' if authorized else '❌ no'}")
    print(f"Balance:    {format_native(balance)} ({balance} wei)")
    print(f"Reserve:    {format_native(reserve)} ({reserve} wei)")
    if balance < reserve:
        print("⚠️  Balance is below the operating reserve; submissions will be refused")
    return 0 if authorized and balance >= reserve else 1


async def cli_transaction(tx_id: str, base_url: str):
    """Fetch a submission record from a running relay"""
    async with httpx.AsyncClient() as client:
        response = await client.get(f"{base_url}/transaction/{tx_id}", timeout=30)

    if response.status_code == 404:
        print(f"❌ Transaction {tx_id} not found")
        return 1
    response.raise_for_status()
    data = response.json()

    print(f"\nTransaction {data['txId']}")
    print("=" * 50)
    print(f"Status:   {data['status']} ({data['phase']})")
    print(f"User:     {data['userAddress']}")
    if data.get("ledgerHandle"):
        print(f"Handle:   {data['ledgerHandle']}")
    if data.get("blockHeight") is not None:
        print(f"Block:    {data['blockHeight']}")
    if data.get("failureReason"):
        print(f"Reason:   {data['failureReason']}: {data.get('lastError')}")
    for attempt in data.get("attempts", []):
        outcome = attempt.get("error") or attempt.get("ledgerHandle") or "in progress"
        print(f" - attempt {attempt['attempt']}: gas {attempt['gasLimit']}, {outcome}")
    return 0


async def cli_health(base_url: str):
    """Ping a running relay"""
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{base_url}/health", timeout=10)
            response.raise_for_status()
    except httpx.HTTPError as e:
        print(f"❌ Relay unreachable: {e}")
        return 1
    print(json.dumps(response.json(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Gasless relayer CLI")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", help="Check relayer authorization and balance on the ledger")

    tx_parser = subparsers.add_parser("tx", help="Show a submission record")
    tx_parser.add_argument("tx_id", help="Relay transaction id (tx_...)")
    tx_parser.add_argument("--url", default=DEFAULT_URL, help=f"Relay base URL (default: {DEFAULT_URL})")

    health_parser = subparsers.add_parser("health", help="Ping a running relay")
    health_parser.add_argument("--url", default=DEFAULT_URL, help=f"Relay base URL (default: {DEFAULT_URL})")

    return parser


async def main(argv: Optional[list] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "status":
        return await cli_status()
    if args.command == "tx":
        return await cli_transaction(args.tx_id, args.url.rstrip("/"))
    if args.command == "health":
        return await cli_health(args.url.rstrip("/"))

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
