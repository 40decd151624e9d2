#!/usr/bin/env python3
"""
Run the MySideline carnival ingest.

Usage:
    python scripts/run_ingest.py                       # fetch MYSIDELINE_FEED_URL
    python scripts/run_ingest.py --file events.json    # import a saved feed
    python scripts/run_ingest.py --only-if-due         # skip if synced recently
    python scripts/run_ingest.py --history             # show recent sync runs
    python scripts/run_ingest.py --worker              # keep running on the ingest interval
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add the project root to the path so we can import carnival_hub modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from carnival_hub.config import load_settings
from carnival_hub.container import build_hub
from carnival_hub.logging_config import configure_logging
from carnival_hub.services.ingest_service import StaticEventProvider, normalise_feed_item


def load_events_file(path: str) -> list:
    with open(path, encoding="utf-8") as handle:
        payload = json.load(handle)
    items = payload.get("events", []) if isinstance(payload, dict) else payload
    return [normalise_feed_item(item) for item in items]


async def show_history(limit: int = 10) -> int:
    hub = await build_hub()
    try:
        logs = await hub.ingest.recent_logs(limit=limit)
        if not logs:
            print("No sync runs recorded")
            return 0
        for log in logs:
            marker = "✓" if log.status == "completed" else "❌"
            print(
                f"{marker} #{log.id} {log.started_at:%Y-%m-%d %H:%M} {log.status} ({log.trigger_source}): "
                f"{log.events_processed} processed, {log.carnivals_created} created, "
                f"{log.carnivals_updated} updated, {log.events_skipped} skipped"
            )
            if log.error_message:
                print(f"   {log.error_message}")
        return 0
    finally:
        await hub.close()


async def run_worker(poll_interval_seconds: float) -> int:
    hub = await build_hub()
    scheduler = hub.ingest_scheduler(poll_interval_seconds)
    if scheduler is None:
        print("❌ MYSIDELINE_FEED_URL is not set")
        await hub.close()
        return 1
    scheduler.start()
    print(f"✓ Ingest worker running, polling every {poll_interval_seconds:.0f}s (Ctrl+C to stop)")
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await hub.close()
    return 0


async def run_ingest(file_path: str = None, only_if_due: bool = False, force: bool = False) -> int:
    settings = load_settings()
    if force:
        settings = settings.model_copy(update={"mysideline_sync_enabled": True})
    hub = await build_hub(settings)
    try:
        if file_path:
            provider = StaticEventProvider(load_events_file(file_path))
        else:
            provider = hub.feed_provider()
            if provider is None:
                print("❌ MYSIDELINE_FEED_URL is not set and no --file given")
                return 1

        if only_if_due and not await hub.ingest.should_run_sync(provider.name):
            print("✓ Last sync is recent, nothing to do")
            return 0

        result = await hub.ingest.sync(provider, trigger_source="manual")
        if result.skipped_run:
            print("⚠️  Sync skipped (disabled or already running). Use --force to override.")
            return 0

        print(f"✓ Processed {result.events_processed} event(s)")
        print(f"   Created:   {result.carnivals_created}")
        print(f"   Updated:   {result.carnivals_updated}")
        print(f"   Unchanged: {result.events_unchanged}")
        print(f"   Skipped:   {result.events_skipped}")
        for error in result.errors:
            print(f"   ❌ {error}")
        return 0
    finally:
        await hub.close()


async def main():
    parser = argparse.ArgumentParser(description="Import carnivals from the MySideline feed")
    parser.add_argument("--file", type=str, help="JSON file with feed events", default=None)
    parser.add_argument("--only-if-due", action="store_true",
                        help="Only sync when the last completed sync is older than INGEST_INTERVAL_HOURS")
    parser.add_argument("--force", action="store_true",
                        help="Run even when MYSIDELINE_SYNC_ENABLED is false")
    parser.add_argument("--history", action="store_true", help="Show recent sync runs and exit")
    parser.add_argument("--worker", action="store_true", help="Run the background ingest worker")
    parser.add_argument("--poll-seconds", type=float, default=3600, help="Worker poll interval")
    parser.add_argument("--log-level", type=str, default=None, help="Log level (default: LOG_LEVEL)")

    args = parser.parse_args()
    configure_logging(args.log_level)

    if args.history:
        return await show_history()
    if args.worker:
        return await run_worker(args.poll_seconds)

    return await run_ingest(file_path=args.file, only_if_due=args.only_if_due, force=args.force)


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
