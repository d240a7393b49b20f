#!/usr/bin/env python3
"""
News Digest

Queues three tasks against a real API and runs them through taskgate:
a routine headline fetch that runs straight away, a digest that waits
for a human to approve it, and a task for a handler nobody registered,
which burns through its retries and is escalated for review.

APIs used:
- Spaceflight News API: https://api.spaceflightnewsapi.net/v4/docs/

Demonstrates:
- Approval gating (the digest only runs after approve())
- Bounded retries and escalation to a review task
- The per-cycle rate limit
- Deliverable URLs recorded on completed tasks
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path

import httpx

import taskgate
from taskgate import Failure, Success

# Configuration
OUTPUT_DIR = Path("output")
DB_PATH = "news_digest.db"
ARTICLE_COUNT = 5

OUTPUT_DIR.mkdir(exist_ok=True)


def main():
    logging.basicConfig(level=logging.INFO, format="  %(name)s: %(message)s")

    settings = taskgate.Settings(db_path=DB_PATH, rate_limit="10/min", max_attempts=2)
    scheduler = taskgate.Scheduler(settings=settings)

    # --- Handler: fetch headlines ---
    @scheduler.handler("fetch-headlines")
    async def fetch_headlines(task):
        """Fetch the latest articles and save them as JSON."""
        async with httpx.AsyncClient() as client:
            try:
                resp = await client.get(
                    "https://api.spaceflightnewsapi.net/v4/articles/",
                    params={"limit": task.metadata.get("limit", ARTICLE_COUNT), "ordering": "-published_at"},
                    timeout=15,
                )
                resp.raise_for_status()
            except httpx.HTTPError as e:
                return Failure(f"news API unavailable: {e}")

        articles = resp.json().get("results", [])
        path = OUTPUT_DIR / "articles.json"
        path.write_text(json.dumps(articles, indent=2))
        print(f"  ✓ Got {len(articles)} articles", flush=True)
        return Success(deliverable_url=path.resolve().as_uri())

    # --- Handler: write digest ---
    @scheduler.handler("write-digest")
    def write_digest(task):
        """Turn the saved articles into a markdown digest."""
        source = OUTPUT_DIR / "articles.json"
        if not source.exists():
            return Failure("no articles fetched yet")

        articles = json.loads(source.read_text())
        md = [f"# {task.title}", "", f"*Generated {datetime.now():%Y-%m-%d %H:%M}*", ""]
        for article in articles:
            md.append(f"- [{article['title']}]({article['url']}) ({article.get('news_site', 'Unknown')})")

        path = OUTPUT_DIR / "digest.md"
        path.write_text("\n".join(md) + "\n")
        print(f"  ✓ Wrote digest with {len(articles)} entries", flush=True)
        return Success(deliverable_url=path.resolve().as_uri())

    async def run():
        async with scheduler:
            fetch = await scheduler.submit("Fetch headlines", "fetch-headlines", priority="high")
            digest = await scheduler.submit(
                "Space news digest", "write-digest", requires_approval=True
            )
            orphan = await scheduler.submit("Translate digest", "translate")

            print("\nCycle 1: digest is waiting for approval", flush=True)
            print_result(await scheduler.poll_and_execute())

            await scheduler.approve(digest.id, "editor@example.com")
            print("\nCycle 2: digest approved", flush=True)
            print_result(await scheduler.poll_and_execute())

            print("\nFinal state:", flush=True)
            for task_id in (fetch.id, digest.id, orphan.id):
                task = await scheduler.get(task_id)
                print(f"  {task.title:<20} {task.status.value:<10} {task.deliverable_url or task.execution_error or ''}")

            for task in await scheduler.list(handler=settings.escalation_handler):
                print(f"  {task.title:<20} waiting for {task.assigned_handler}")

    asyncio.run(run())


def print_result(result):
    if result.rate_limited:
        print("  Rate limited; try again later", flush=True)
        return
    print(
        f"  executed={result.executed} failed={result.failed} skipped={result.skipped} "
        f"({result.remaining} cycles left this window)",
        flush=True,
    )


if __name__ == "__main__":
    main()
