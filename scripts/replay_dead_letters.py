#!/usr/bin/env python3
"""
Dead-Letter Replay — re-append dead-lettered events to the durable log.

Each replay is a new event (metadata.replayed_from points at the original);
the dead letter itself is left untouched.

Usage:
    # List what is in the dead-letter table:
    python scripts/replay_dead_letters.py --list

    # Replay specific dead letters:
    python scripts/replay_dead_letters.py <dead_letter_id> [<dead_letter_id> ...]

    # Replay every dead letter of one event type:
    python scripts/replay_dead_letters.py --event-type opportunity.completed
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def run_replay(ids: list[str], event_type: str = None, list_only: bool = False,
                     limit: int = 100) -> int:
    from config.settings import load_settings
    settings = load_settings()

    if settings.database.store_backend != "sql":
        print("Dead letters only persist with store_backend: sql")
        return 1

    from database.session import close_db
    from database.store_factory import create_store
    from job_queue.event_dispatcher import EventDispatcher
    from job_queue.registry import HandlerRegistry

    store = create_store({"store_backend": "sql", "url": settings.database.url})
    dispatcher = EventDispatcher(store, HandlerRegistry("replay"),
                                 worker_id=f"{settings.worker_id}-replay")
    try:
        dead_letters = await store.list_dead_letters(limit=limit)
        if list_only:
            for dl in dead_letters:
                print(f"{dl.id}  {dl.event_type:<32} retries={dl.retry_count}  {dl.error_message[:80]}")
            print(f"{len(dead_letters)} dead letter(s)")
            return 0

        targets = list(ids)
        if event_type:
            targets += [dl.id for dl in dead_letters if dl.event_type == event_type]
        if not targets:
            print("Nothing to replay.")
            return 0

        failures = 0
        for dead_letter_id in targets:
            try:
                replay = await dispatcher.replay_dead_letter(dead_letter_id)
                print(f"Replayed {dead_letter_id} as event {replay.id}")
            except LookupError as e:
                failures += 1
                print(f"Skipped {dead_letter_id}: {e}")
        return 1 if failures else 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Replay dead-lettered events")
    parser.add_argument("ids", nargs="*", help="Dead letter ids to replay")
    parser.add_argument("--event-type", default=None, help="Replay all dead letters of this type")
    parser.add_argument("--list", action="store_true", help="List dead letters and exit")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    sys.exit(asyncio.run(run_replay(args.ids, args.event_type, args.list, args.limit)))


if __name__ == "__main__":
    main()
