#!/usr/bin/env python3
"""
Trench Trader
Main Entry Point

Usage:
    python -m trench_trader.main                    # Run every enabled paper account
    python -m trench_trader.main --account alice    # Run one account
    python -m trench_trader.main --live             # Allow live accounts to trade on-chain
    python -m trench_trader.main --config path.yaml # Use custom config file
    python -m trench_trader.main --status           # Show stored account status and exit
    python -m trench_trader.main --seal-key         # Seal a bot wallet key for the config
"""

import asyncio
import argparse
import getpass
import sys

from trench_trader.core.bot_service import build_service, run_bot_service
from trench_trader.core.errors import TradingError
from trench_trader.core.key_vault import KeyVault
from trench_trader.utils.config_loader import get_config
from trench_trader.utils.logger import setup_logging, get_logger


def parse_args():
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Trench Trader - autonomous memecoin trading bots",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m trench_trader.main                    Run enabled paper accounts
  python -m trench_trader.main --account alice    Run a single account
  python -m trench_trader.main --live             Enable on-chain execution
  python -m trench_trader.main --config my.yaml   Use custom configuration
  python -m trench_trader.main --status           Show account status
  python -m trench_trader.main --test             Run one entry and exit tick
        """
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration YAML file"
    )

    parser.add_argument(
        "--account",
        action="append",
        default=None,
        help="Account id to run (repeatable, default: all enabled accounts)"
    )

    parser.add_argument(
        "--live",
        action="store_true",
        help="Allow accounts in live mode to sign and send real swaps."
    )

    parser.add_argument(
        "--status",
        action="store_true",
        help="Show stored account status and exit"
    )

    parser.add_argument(
        "--test",
        action="store_true",
        help="Run a single entry and exit tick per account and exit"
    )

    parser.add_argument(
        "--seal-key",
        action="store_true",
        help="Seal a bot wallet private key with the vault secret and print it"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config, else INFO)"
    )

    return parser.parse_args()


async def show_status(config_path: str = None, account_ids=None):
    """Show persisted account state and exit"""
    config = get_config(config_path)
    service = build_service(config)
    await service.seed_accounts(config.accounts)

    ids = account_ids or await service.store.list_accounts()

    print("\n" + "=" * 60)
    print("TRENCH TRADER STATUS")
    print("=" * 60)

    for account_id in ids:
        account = await service.store.load_account(account_id)
        if account is None:
            print(f"\n{account_id}: unknown account")
            continue

        settings = account.settings
        stats = account.stats
        print(f"\n--- {account_id} ({account.mode.value}, {settings.strategy}) ---")
        print(f"Balance: ${account.balance:.2f}")
        print(f"Total P&L: ${stats.total_pnl:.2f} ({stats.wins}W / {stats.losses}L, streak {stats.streak:+d})")
        print(f"Best / Worst: ${stats.best_trade:.2f} / ${stats.worst_trade:.2f}")
        print(f"Today: ${account.risk.realized_pnl_today:.2f}, losing streak {account.risk.consecutive_losses}")
        if account.risk.paused_reason:
            print(f"Paused: {account.risk.paused_reason}")

        positions = await service.store.open_positions(account_id)
        if positions:
            for pos in positions:
                print(f"  OPEN {pos.symbol}: ${pos.cost_basis:.2f} @ ${pos.entry_price:.8f} (peak ${pos.peak_price:.8f})")
        else:
            print("  No open positions")

        for pos in await service.store.closed_positions(account_id, limit=5):
            print(f"  CLOSED {pos.symbol} [{pos.exit_reason}] ${pos.pnl or 0:.2f} ({pos.pnl_pct or 0:.1f}%)")

    print("\n" + "=" * 60)

    await service.close()


async def run_test(config_path: str = None, account_ids=None):
    """Run one entry tick and one exit tick per paper account"""
    print("\n" + "=" * 60)
    print("RUNNING SINGLE ITERATION TEST")
    print("=" * 60)

    config = get_config(config_path)
    service = build_service(config)
    await service.seed_accounts(config.accounts)

    ids = account_ids or [a.account_id for a in config.accounts if a.enabled and a.mode == "paper"]
    for account_id in ids:
        print(f"\n--- {account_id} ---")
        try:
            await service.start(account_id)
        except TradingError as e:
            print(f"Cannot start: {e}")
            continue

        session = service.session(account_id)
        # start() already fired the first entry tick
        await session.scheduler.wait_idle()
        result = await service.exit_tick(account_id)
        print(f"Exit tick: {result}")

        status = service.status(account_id)
        for entry in status["log"]:
            print(f"  {entry['time']}  {entry['msg']}")
        print(f"Balance: ${status['balance']:.2f}")

        await service.stop(account_id)

    print("\n" + "=" * 60)
    print("TEST COMPLETE")
    print("=" * 60)

    await service.close()


def seal_key(config_path: str = None):
    """Prompt for a private key and print the sealed blob"""
    config = get_config(config_path)
    vault = KeyVault(config.vault_secret)
    secret = getpass.getpass("Bot wallet private key (base58): ").strip()
    if not secret:
        print("Aborted.")
        return
    print(vault.seal(secret))


def main():
    """Main entry point"""
    args = parse_args()

    # Setup logging
    setup_logging(level=args.log_level or "INFO")
    logger = get_logger(__name__)

    if args.live and not (args.status or args.seal_key):
        # Safety confirmation for live mode
        print("\n" + "!" * 60)
        print("WARNING: LIVE TRADING MODE")
        print("Live accounts will sign and send REAL swaps!")
        print("!" * 60)

        confirm = input("\nType 'CONFIRM' to proceed: ")
        if confirm != "CONFIRM":
            print("Aborted.")
            sys.exit(0)

    try:
        if args.seal_key:
            seal_key(args.config)
        elif args.status:
            asyncio.run(show_status(args.config, args.account))
        elif args.test:
            asyncio.run(run_test(args.config, args.account))
        else:
            print("\n" + "=" * 60)
            print(f"STARTING TRENCH BOTS ({'LIVE ENABLED' if args.live else 'PAPER'})")
            print("=" * 60)
            print("\nPress Ctrl+C to stop\n")

            asyncio.run(run_bot_service(
                config_path=args.config,
                account_ids=args.account,
                live=args.live,
                log_level=args.log_level
            ))

    except KeyboardInterrupt:
        print("\nShutdown requested...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
