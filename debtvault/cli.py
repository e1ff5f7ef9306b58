"""Command-line interface for the DebtVault read-model."""
from __future__ import annotations

import argparse
import asyncio
import sys

from .config import load_config
from .logging_setup import configure_logging
from .models import ViewKind
from .services import Monitor

# Subcommand -> views it renders
_VIEW_COMMANDS: dict[str, tuple[ViewKind, ...]] = {
    "loans": (ViewKind.LOANS,),
    "credit-lines": (ViewKind.CREDIT_LINES,),
    "relationships": (ViewKind.RELATIONSHIPS,),
    "portfolio": (ViewKind.PORTFOLIO,),
    "balances": (ViewKind.TOKEN_BALANCE, ViewKind.POOL_POSITION),
}


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="debtvault",
        description="DebtVault position reconciliation and portfolio analytics",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    helps = {
        "loans": "Loans lent or borrowed by the account",
        "credit-lines": "Credit lines with derived utilisation",
        "relationships": "Counterparty trust and payment history",
        "portfolio": "Portfolio totals, APY and risk",
        "balances": "Wallet token balances and pool deposits",
    }
    for name, text in helps.items():
        view_parser = sub.add_parser(name, help=text)
        view_parser.add_argument(
            "account",
            nargs="?",
            default=None,
            help="Address or configured label (default: first configured account)",
        )

    sub.add_parser("verify-tokens", help="Compare configured token decimals with chain")

    watch_parser = sub.add_parser("watch", help="Continuous refresh loop")
    watch_parser.add_argument(
        "interval",
        nargs="?",
        type=int,
        default=None,
        help="Refresh interval in seconds (default: cache staleness)",
    )
    watch_parser.add_argument("--account", default=None, help="Address or label")

    return parser


async def _run(args: argparse.Namespace) -> None:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    monitor = Monitor(config)

    try:
        if args.command in _VIEW_COMMANDS:
            print(await monitor.show(_VIEW_COMMANDS[args.command], args.account))
        elif args.command == "verify-tokens":
            print(await monitor.verify_tokens())
        elif args.command == "watch":
            await monitor.run_continuous(args.interval, args.account)
        else:
            build_parser().print_help()
            sys.exit(1)
    finally:
        await monitor.close()


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    asyncio.run(_run(args))
