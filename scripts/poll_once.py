#!/usr/bin/env python3
"""
Run a single poll cycle for every configured source.

Useful for checking a sources file against a live API before starting the
long-running poller. Offsets are committed to the configured store, so
point OFFSET_STORE_MODE at ``memory`` for a dry run.
"""

import asyncio
import os
import sys

# Add the src directory to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from http_poller.config import get_settings
from http_poller.exceptions import PollerError
from http_poller.standalone import StandaloneApp


async def poll_source(worker) -> bool:
    """Poll one source once and print what came back."""
    scheduler = worker.scheduler
    strategy = scheduler.config.pagination_strategy.value
    print(f"\n📡 {scheduler.source_key} ({strategy})")

    try:
        records = await scheduler.cycle()
    except PollerError as e:
        print(f"   ❌ {e.code}: {e}")
        return False

    print(f"   ✓ Records: {len(records)}")
    print(f"   ✓ Outcome: {scheduler.last_outcome.value}")
    if records:
        print(f"   ✓ Next offset: {records[-1].offset}")
    print(f"   ✓ Next poll in: {scheduler.next_delay():.1f}s")
    return True


async def main():
    """Main function."""
    print("🚀 Polling every configured source once")
    print("=" * 50)

    app = StandaloneApp(get_settings())
    await app.initialize()

    passed = 0
    workers = list(app.polling_orchestrator.workers.values())
    try:
        for worker in workers:
            if await poll_source(worker):
                passed += 1
    finally:
        for fetcher in app.fetchers:
            await fetcher.close()

    print("\n" + "=" * 50)
    print(f"📈 Results: {passed}/{len(workers)} sources polled")
    return 0 if passed == len(workers) else 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
