"""
BTC → Starknet Bridge Engine — Entry point.
Wires the order store, the Atomiq gateway client and the order service, runs
startup recovery, then keeps reconciling active orders in the background.

Usage:
    python3 main.py              # Full engine (startup recovery + recovery poller)
    python3 main.py --smoke      # Smoke test only (connect + exit)
    python3 main.py --once       # One reconciliation pass, then exit
"""

import argparse
import asyncio
import sys

from bridge.config import (
    SUPABASE_URL,
    SUPABASE_KEY,
    GATEWAY_URLS,
    ATOMIQ_GATEWAY_API_KEY,
    ATOMIQ_HTTP_TIMEOUT,
    BRIDGE_POLL_INTERVAL,
    BRIDGE_ACTIVE_BATCH_LIMIT,
    LOG_LEVEL,
    print_config_summary,
)
from bridge.atomiq.client import AtomiqClient
from bridge.db.client import init_supabase, health_check, Database
from bridge.orders.service import BridgeOrderService


async def smoke_test():
    """Smoke test: connect to Supabase, verify tables, print gateway config, exit."""
    print("=" * 50)
    print("  Bridge Engine — Smoke Test")
    print("=" * 50)
    print()
    print_config_summary()
    print()

    print("[DB] Connecting to Supabase...")
    sb = init_supabase(SUPABASE_URL, SUPABASE_KEY)
    ok = await health_check(sb)
    if not ok:
        print("[DB] ❌ Supabase unreachable or bridge_orders missing", file=sys.stderr)
        sys.exit(1)
    print("[DB] ✅ supabase ok")

    try:
        await Database(sb).init()
    except Exception as e:
        print(f"[DB] ❌ {e}", file=sys.stderr)
        sys.exit(1)

    print()
    for network, url in GATEWAY_URLS.items():
        print(f"[ATOMIQ] {network}: {url}")

    print()
    print("=" * 50)
    print("  ✅ SMOKE TEST PASSED")
    print("=" * 50)


async def _build_service():
    print("[INIT] Connecting to Supabase...")
    db = Database(init_supabase(SUPABASE_URL, SUPABASE_KEY))
    swap_client = AtomiqClient(GATEWAY_URLS, api_key=ATOMIQ_GATEWAY_API_KEY, timeout=ATOMIQ_HTTP_TIMEOUT)
    service = BridgeOrderService(
        db, swap_client,
        active_batch_limit=BRIDGE_ACTIVE_BATCH_LIMIT,
        verbose=LOG_LEVEL == "DEBUG",
    )
    await service.init()
    print("[INIT] ✅ DB connected")
    return service, swap_client


async def run_once():
    """Single reconciliation pass over active orders."""
    print_config_summary()
    print()
    service, swap_client = await _build_service()
    try:
        summary = await service.reconcile_active_orders()
        print(f"[INIT] Pass done: {summary}")
    finally:
        await swap_client.close()


async def run_engine():
    """Full engine: startup recovery + periodic recovery poller."""
    print("=" * 50)
    print("  Bridge Engine — Starting")
    print("=" * 50)
    print()
    print_config_summary()
    print()

    service, swap_client = await _build_service()

    # Startup recovery: catch up on everything that moved while we were down
    print()
    print("[INIT] Running startup recovery...")
    summary = await service.reconcile_active_orders()
    print(f"[INIT] ✅ Startup recovery: {summary['reconciled']}/{summary['checked']} reconciled, "
          f"{summary['failed']} failed")

    print()
    print("=" * 50)
    print("  Bridge Engine — Running")
    print("=" * 50)
    print("  Ctrl+C to stop")
    print()

    poller = service.start_recovery_poller(interval=BRIDGE_POLL_INTERVAL)
    try:
        await poller.start()
    except asyncio.CancelledError:
        pass
    finally:
        print("\n[ENGINE] Shutting down...")
        await service.stop_recovery_poller()
        await swap_client.close()
        print(f"[ENGINE] Metrics: service={service.metrics()} poller={poller.metrics()} "
              f"db={service.store.metrics()} gateway={swap_client.metrics()}")
        print("[ENGINE] Stopped.")


def main():
    parser = argparse.ArgumentParser(description="BTC → Starknet Bridge Engine")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--smoke", action="store_true", help="Smoke test only (connect + exit)")
    group.add_argument("--once", action="store_true", help="One reconciliation pass, then exit")
    args = parser.parse_args()

    try:
        if args.smoke:
            asyncio.run(smoke_test())
        elif args.once:
            asyncio.run(run_once())
        else:
            asyncio.run(run_engine())
    except KeyboardInterrupt:
        print("\nStopped.")


if __name__ == "__main__":
    main()
