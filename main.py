"""workshop-sync - Keep a local mods folder in sync with a manifest of workshop ids."""

import argparse
import sys
from pathlib import Path

from config import FAILURE_POLICIES, SYNC_MODES, Config
from errors import SyncError
from logging_setup import format_bytes, get_logger, setup_logging, write_progress
from reconciler import Reconciler


def workshop_id(value: str) -> int:
    try:
        mod_id = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a workshop id: {value!r}")
    if mod_id <= 0:
        raise argparse.ArgumentTypeError(f"workshop ids are positive: {value!r}")
    return mod_id


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Download workshop mods listed in a manifest into the local mods folder",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: workshop-sync.toml)",
    )
    parser.add_argument(
        "-m", "--manifest",
        type=str,
        default=None,
        help="Override manifest path from config",
    )
    parser.add_argument(
        "-d", "--mods-dir",
        type=str,
        default=None,
        help="Override mods directory from config",
    )
    parser.add_argument(
        "-j", "--concurrency",
        type=int,
        default=None,
        help="Number of mods to download in parallel",
    )
    parser.add_argument(
        "--policy",
        choices=FAILURE_POLICIES,
        default=None,
        help="Abort on the first failed mod, or skip it and report at the end",
    )
    parser.add_argument(
        "--mode",
        choices=SYNC_MODES,
        default=None,
        help="Wipe the mods directory every run, or only replace what changed",
    )
    parser.add_argument(
        "--seed",
        type=workshop_id,
        nargs="+",
        default=None,
        metavar="ID",
        help="Workshop ids for the initial manifest when none exists yet",
    )

    verbosity_group = parser.add_mutually_exclusive_group()
    verbosity_group.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output (DEBUG level)",
    )
    verbosity_group.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Quiet mode (only warnings and errors)",
    )

    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Write logs to file (always DEBUG level)",
    )

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    verbosity = 1 if args.verbose else (-1 if args.quiet else 0)
    setup_logging(verbosity=verbosity, log_file=args.log_file)
    logger = get_logger()

    logger.debug("Loading configuration...")
    try:
        config = Config.load(
            config_path=args.config,
            manifest_override=args.manifest,
            mods_dir_override=args.mods_dir,
            concurrency_override=args.concurrency,
            policy_override=args.policy,
            mode_override=args.mode,
        )
    except SyncError as e:
        logger.error("Configuration error: %s", e)
        return 1

    logger.info("Manifest: %s", config.manifest_path)
    logger.info("Mods directory: %s", config.mods_dir)
    logger.debug("Catalog URL: %s", config.catalog_url)
    logger.debug(
        "Concurrency: %d, policy: %s, mode: %s",
        config.concurrent_downloads,
        config.failure_policy,
        config.sync_mode,
    )

    def on_download_progress(received: int, expected: int) -> None:
        if not expected:
            write_progress(f"Downloading: {format_bytes(received)}")
            return
        percent = min(received / expected, 1.0)
        bar_width = 40
        filled = int(bar_width * percent)
        bar = "█" * filled + "░" * (bar_width - filled)
        write_progress(
            f"Downloading: [{bar}] {format_bytes(received)}/{format_bytes(expected)}"
        )

    def on_download_complete() -> None:
        print()  # Newline after progress bar

    # Quiet runs keep stdout for warnings and errors only
    reconciler = Reconciler(
        config,
        seed=args.seed,
        on_download_progress=None if args.quiet else on_download_progress,
        on_download_complete=None if args.quiet else on_download_complete,
    )
    try:
        result = reconciler.run()
    except SyncError as e:
        logger.error("Sync failed: %s", e)
        logger.error("The manifest was not updated.")
        return 1
    except OSError as e:
        logger.error("Filesystem error: %s", e)
        return 1

    logger.info("")
    logger.info("=" * 50)
    logger.info("Sync Summary")
    logger.info("=" * 50)
    logger.info("Mods in manifest: %d", result.total_entries)
    logger.info("Installed: %d", len(result.materialized))
    if result.kept:
        logger.info("Already up to date: %d", len(result.kept))
    logger.info("Disabled: %d", len(result.skipped))

    if not result.ok:
        logger.warning("Failed: %d", len(result.failed))
        for mod_id, reason in result.failed.items():
            logger.warning("  %d: %s", mod_id, reason)
        logger.warning("Sync completed with errors.")
        return 1

    logger.info("All mods synced successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
