import argparse
import asyncio
import logging
import signal
import sys
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

from changecrawler.application.crawler_service import CrawlerService
from changecrawler.application.retry import BackoffPolicy
from changecrawler.application.scheduler import CrawlScheduler
from changecrawler.domain.exceptions import CrawlerException
from changecrawler.domain.models import EntityKey
from changecrawler.infrastructure.checkpoint_store import PostgresCheckpointStore
from changecrawler.infrastructure.config import Config, Settings, load_config
from changecrawler.infrastructure.database import PostgresDocumentStore
from changecrawler.infrastructure.ident_resolver import IdentResolver
from changecrawler.infrastructure.providers.base import ProviderClient
from changecrawler.infrastructure.providers.registry import build_client
from changecrawler.infrastructure.rate_limiter import RateLimiterRegistry

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="changecrawler", description="Crawl code review and issue providers.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Poll and crawl entities until interrupted")
    subparsers.add_parser("crawl-once", help="Crawl every due entity once and exit")
    subparsers.add_parser("status", help="Print the crawl state of every entity")

    reset = subparsers.add_parser("reset", help="Clear an errored entity so it is crawled on the next poll")
    reset.add_argument("workspace")
    reset.add_argument("crawler")
    reset.add_argument("kind", choices=["change", "issue"])
    reset.add_argument("name")
    return parser


def build_scheduler(settings: Settings, config: Config) -> CrawlScheduler:
    clients: Dict[Tuple[str, str], ProviderClient] = {}
    resolvers: Dict[str, IdentResolver] = {}
    for workspace in config.workspaces:
        resolvers[workspace.name] = IdentResolver.for_workspace(workspace)
        for crawler in workspace.crawlers:
            clients[(workspace.name, crawler.name)] = build_client(crawler, timeout=settings.fetch_timeout)

    document_store = PostgresDocumentStore(
        db_url=settings.database_url,
        batch_size=settings.batch_size,
        write_timeout=settings.write_timeout,
    )
    checkpoint_store = PostgresCheckpointStore(engine=document_store.engine, write_timeout=settings.write_timeout)

    crawler_service = CrawlerService(
        clients=clients,
        resolvers=resolvers,
        document_store=document_store,
        checkpoint_store=checkpoint_store,
        rate_limiters=RateLimiterRegistry(
            max_in_flight=settings.max_in_flight_per_host,
            min_interval=settings.min_request_interval,
            lease_timeout=settings.lease_timeout,
        ),
        policy=BackoffPolicy(
            max_attempts=settings.max_attempts,
            base=settings.backoff_base,
            max_delay=settings.max_backoff,
        ),
        overlap=timedelta(seconds=settings.overlap_seconds),
    )
    return CrawlScheduler(
        entities=config.entities(),
        crawler_service=crawler_service,
        checkpoint_store=checkpoint_store,
        concurrency=settings.concurrency,
        poll_interval=settings.poll_interval,
        max_consecutive_failures=settings.max_consecutive_failures,
    )


def print_status(rows: List) -> None:
    if not rows:
        print("No crawl state recorded yet.")
        return
    print(f"{'ENTITY':<60} {'STATUS':<8} {'LAST COMMIT':<26} {'AGE':>5} {'FAILS':>5}  ERROR")
    for key, state in rows:
        print(
            f"{str(key):<60} {state.status.value:<8} {state.last_commit_at.isoformat():<26} "
            f"{state.last_commit_age_days:>4}d {state.consecutive_failures:>5}  {state.error_message or ''}"
        )


async def run_forever(scheduler: CrawlScheduler) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers are unavailable on some platforms; Ctrl-C still interrupts.
            pass
    await scheduler.run(stop_event)


async def main(argv: Optional[List[str]] = None) -> int:
    # Load environment variables from .env file
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env()
    except CrawlerException as e:
        configure_logging("INFO")
        logger.error(str(e))
        return 1
    configure_logging(settings.log_level)

    try:
        config = load_config(settings.config_path)
        scheduler = build_scheduler(settings, config)
        await scheduler.checkpoint_store.create_schema()

        if args.command == "run":
            await run_forever(scheduler)
        elif args.command == "crawl-once":
            results = await scheduler.run_once()
            logger.info(f"Crawled {len(results)} entities.")
        elif args.command == "status":
            print_status(await scheduler.status())
        elif args.command == "reset":
            # Unknown workspace or crawler names raise ConfigError
            config.workspace(args.workspace).crawler(args.crawler)
            if not await scheduler.reset(EntityKey(args.workspace, args.crawler, args.kind, args.name)):
                return 1
    except CrawlerException as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.exception(f"An unexpected error occurred: {e}")
        return 1
    return 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
