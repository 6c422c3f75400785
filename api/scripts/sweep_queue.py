import argparse
import logging
import sys
import time
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from buddymatch.main import configure_logging, init_db
from buddymatch.services.durable_queue import DurableMatchQueue
from buddymatch.services.session_store import SqlSessionStore

logger = logging.getLogger("buddymatch.sweep")


def run_pass(queue: DurableMatchQueue, store: SqlSessionStore, evict_timeouts: bool) -> dict[str, int]:
    outcomes = queue.process_queue()
    activated = 0
    for outcome in outcomes:
        if outcome.matched and store.activate_match(outcome, outcome.matched_at):
            activated += 1

    evicted = queue.evict_timed_out() if evict_timeouts else []

    return {
        "evaluated": len(outcomes),
        "matched": sum(1 for o in outcomes if o.matched),
        "activated": activated,
        "evicted": len(evicted),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Resolve the durable match queue in batch passes")
    parser.add_argument("--interval", type=float, default=0.0, help="seconds between passes; 0 runs once")
    parser.add_argument("--evict-timeouts", action="store_true")
    parser.add_argument("--init-db", action="store_true")
    args = parser.parse_args()

    configure_logging()
    if args.init_db:
        init_db()

    queue = DurableMatchQueue()
    store = SqlSessionStore()
    while True:
        summary = run_pass(queue, store, evict_timeouts=args.evict_timeouts)
        logger.info("[sweep] %s", summary)
        if args.interval <= 0:
            break
        time.sleep(args.interval)

    print("Sweep completed")
    for k, v in summary.items():
        print(f"- {k}: {v}")


if __name__ == "__main__":
    main()
