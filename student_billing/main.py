"""
Student Billing - Command Line Entry Point

Usage:
    student-billing resume
        Confirm a checkout started before a payment provider redirect.
    student-billing quote --student 12 --package 4
        Show the proration quote for switching plans.
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from student_billing.config.settings import get_settings
from student_billing.infrastructure.exceptions import StudentBillingError
from student_billing.services.scheduler import AsyncioScheduler
from student_billing.services.session import BillingSession


logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


async def resume_checkout() -> int:
    """Run the confirmation schedule for the persisted pending checkout."""
    scheduler = AsyncioScheduler()
    async with BillingSession(scheduler=scheduler) as session:
        pending = session.pending_store.load()
        if not session.resume_pending_checkout():
            print("No pending checkout")
            return 0

        try:
            await session.load_packages(pending.student_id)
        except StudentBillingError as e:
            logger.warning(f"Package catalog unavailable: {e.message}")

        await scheduler.wait_idle()

        print(f"Checkout {pending.tx_ref}: {session.reconciler.phase.value}")
        current = session.state.current(session.clock())
        if current is not None:
            print(f"Subscription {current.id}: package {current.package_id}, {current.status.value}")
        return 0


async def quote_change(student_id: int, package_id: int) -> int:
    """Print the proration quote for moving a student to another package."""
    async with BillingSession() as session:
        session.select_student(student_id)
        try:
            await session.load_packages(student_id)
            await session.reconciler.refresh(student_id)
            quote = session.actions.preview_change(package_id)
        except StudentBillingError as e:
            print(f"Error: {e.user_message}", file=sys.stderr)
            return 1

        proration = quote.proration
        print(f"{quote.kind.value.title()}: {quote.current_package.name} -> {quote.new_package.name}")
        print(f"  Days used:       {proration.days_used} of {proration.total_days}")
        print(f"  Days remaining:  {proration.days_remaining}")
        print(f"  Daily rate:      {proration.current_daily_rate}")
        print(f"  Credit:          {proration.credit_amount} {quote.new_package.currency}")
        print(f"  Net amount:      {proration.net_amount} {quote.new_package.currency}")
        print(f"  Effective:       {quote.effective_at.isoformat()}")
        print(f"  New period:      {quote.new_start_date.date()} to {quote.new_end_date.date()}")
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="student-billing")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("resume", help="Confirm a pending checkout")

    quote = subparsers.add_parser("quote", help="Quote a plan change")
    quote.add_argument("--student", type=int, required=True)
    quote.add_argument("--package", type=int, required=True)

    return parser


def run(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(get_settings().log_level)

    if args.command == "resume":
        return asyncio.run(resume_checkout())
    return asyncio.run(quote_change(args.student, args.package))


if __name__ == "__main__":
    sys.exit(run())
