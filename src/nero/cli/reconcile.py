"""Operator commands for generation tasks and star balances.

Usage:
    python -m nero.cli reconcile <task_id>
    python -m nero.cli sweep
    python -m nero.cli credit <user_id> <amount>

Examples:
    # Re-poll the provider for one task (e.g. after a storage failure)
    python -m nero.cli reconcile 7f3c2a1e9b

    # Run one sweeper pass over stale tasks
    python -m nero.cli sweep

    # Top up a user's balance (manual payment, goodwill refund)
    python -m nero.cli credit 5b0e8f0e-2d7e-4a43-9a57-2f1c6f3c1d11 100

    # Verbose logging
    python -m nero.cli -v sweep
"""

import asyncio
import sys
from argparse import ArgumentParser, ArgumentTypeError, Namespace
from uuid import UUID

import httpx
import structlog

from nero.core import timezone  # noqa: F401
from nero.core.config import Settings, configure_logging
from nero.core.database import setup_db_session
from nero.services.exceptions import ServiceError
from nero.services.generation.service import GenerationService, create_generation_service
from nero.uow import create_uow_factory
from nero.workers.sweeper import process_batch

logger = structlog.get_logger()


def positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise ArgumentTypeError(f"must be a positive integer: {value}")
    return number


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Nero generation task maintenance")
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    reconcile = subparsers.add_parser(
        "reconcile", help="Poll the provider once and reconcile a task"
    )
    reconcile.add_argument("task_id", help="Provider task ID")

    subparsers.add_parser("sweep", help="Run one pass of the stale task sweeper")

    credit = subparsers.add_parser("credit", help="Add stars to a user's balance")
    credit.add_argument("user_id", type=UUID, help="User ID")
    credit.add_argument("amount", type=positive_int, help="Stars to add")

    return parser.parse_args(argv)


async def reconcile_task(service: GenerationService, task_id: str) -> int:
    task = await service.poll(task_id)

    print(f"Task {task.task_id}: {task.status.value}")
    if task.result_references:
        for reference in task.result_references:
            print(f"  result: {reference}")
    if task.error_detail:
        print(f"  error: {task.error_detail}")

    # Non-terminal after a poll is not an error; the provider may still be running
    return 0


async def sweep(service: GenerationService, settings: Settings) -> int:
    picked_up = await process_batch(service, settings)
    print(f"Swept {picked_up} stale task(s)")
    return 0


async def credit_user(service: GenerationService, user_id: UUID, amount: int) -> int:
    async with await service.uow_factory() as uow:
        await service.ledger.credit(uow, user_id, amount)
        balance = await uow.users.get_stars(user_id)

    print(f"User {user_id}: +{amount} stars, balance {balance}")
    return 0


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 130 (interrupted)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", command=args.command)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    async with httpx.AsyncClient() as http_client:
        service = create_generation_service(settings, uow_factory, http_client)

        try:
            if args.command == "reconcile":
                return await reconcile_task(service, args.task_id)
            if args.command == "credit":
                return await credit_user(service, args.user_id, args.amount)
            return await sweep(service, settings)

        except ServiceError as e:
            logger.error("cli.service_error", error=str(e), error_type=type(e).__name__)
            print(f"\nError: {e}", file=sys.stderr)
            return 1

        except KeyboardInterrupt:
            logger.info("cli.interrupted")
            print("\nInterrupted by user", file=sys.stderr)
            return 130

        except Exception as e:
            logger.error(
                "cli.unexpected_error",
                error=str(e),
                error_type=type(e).__name__,
            )
            print(f"\nUnexpected error: {e}", file=sys.stderr)
            return 1


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
