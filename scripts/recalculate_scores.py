from __future__ import annotations

import argparse
import asyncio
import json
import sys

from scorewatch.core.errors import BatchAbortedError
from scorewatch.core.logging import configure_logging
from scorewatch.persistence.db import SessionLocal
from scorewatch.services.recalculation import RecalculationOrchestrator
from scorewatch.services.score_source import HttpScoreSource


async def _run(concurrency: int | None, score_source_url: str | None) -> int:
    orchestrator = RecalculationOrchestrator(
        session_factory=SessionLocal,
        score_source=HttpScoreSource(url=score_source_url),
        max_concurrency=concurrency,
    )
    try:
        summary = await orchestrator.run()
    except BatchAbortedError as exc:
        print(json.dumps({"success": False, "error": str(exc)}))
        return 1
    print(json.dumps(summary.to_payload(), indent=2))
    return 0


def main() -> None:
    # Run one recalculation pass outside the scheduler, e.g. after a backfill.
    parser = argparse.ArgumentParser(description="Recalculate scores for all active tenants")
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--score-source-url", default=None)
    args = parser.parse_args()
    configure_logging()
    sys.exit(asyncio.run(_run(args.concurrency, args.score_source_url)))


if __name__ == "__main__":
    main()
