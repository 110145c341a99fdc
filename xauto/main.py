"""Main Entry Point for the X bookmark sync engine.

Usage:
    python -m xauto.main --sync                 # Incremental sync (respects the interval)
    python -m xauto.main --sync --force         # Sync now regardless of the interval
    python -m xauto.main --digest daily         # Generate today's digest
    python -m xauto.main --digest weekly        # Generate this week's digest
    python -m xauto.main --resummarize --limit 50 --overwrite
    python -m xauto.main --jobs 20              # Show the 20 most recent job runs
    python -m xauto.main --authorize            # Connect the X account (OAuth 2.0 PKCE)
    python -m xauto.main --set-interval 12      # Sync every 12 hours
    python -m xauto.main --add-provider deepseek.json  # Store a model provider
    python -m xauto.main --providers            # List providers (keys masked)
    python -m xauto.main --set-prompts prompts.json    # Override system prompts
    python -m xauto.main --vocab "idempotent" --context "retries must be idempotent"
    python -m xauto.main --daemon               # Poll and sync when due
    python -m xauto.main --verbose              # Enable debug logging
"""

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

from xauto.app import App, build_app
from xauto.core.clock import parse_iso
from xauto.core.config import get_config
from xauto.core.exceptions import (
    ConfigurationError,
    ServiceUnavailable,
    Unauthorized,
    ValidationError,
    XAutoError,
)
from xauto.core.logger import get_logger, setup_logging
from xauto.pipeline.resummarize import ResummarizeFilter

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_VALIDATION = 2
EXIT_UNAUTHORIZED = 3
EXIT_UNAVAILABLE = 4

DEFAULT_JOBS_LIMIT = 30

REQUIRED_PROVIDER_FIELDS = ("provider", "base_url", "api_key", "mini_model", "digest_model")
PROVIDER_FIELDS = frozenset(REQUIRED_PROVIDER_FIELDS + ("enabled", "priority", "monthly_budget"))
PROMPT_FIELDS = {"mini_summary_system": "mini", "digest_system": "digest"}

# Shutdown event for graceful termination
_shutdown_event: asyncio.Event | None = None


def print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def run_daemon(app: App, poll_interval: int) -> None:
    """Poll until SIGINT/SIGTERM, syncing whenever the interval policy allows.

    Args:
        app: Wired application.
        poll_interval: Seconds between interval checks.
    """
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()

    def signal_handler(sig: int) -> None:
        logger.info("Received signal %s, initiating graceful shutdown...", sig)
        if _shutdown_event:
            _shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: signal_handler(s))

    logger.info("Starting daemon mode (poll interval: %ds)", poll_interval)

    current_task: asyncio.Task | None = None

    try:
        while not _shutdown_event.is_set():
            current_task = asyncio.create_task(app.ledger.run_incremental_sync())
            try:
                outcome = await current_task
                current_task = None
                if outcome.status != "SKIPPED":
                    logger.info(
                        "Sync cycle complete: inserted %s",
                        outcome.result.get("total_inserted", 0),
                    )
            except XAutoError as e:
                # Recorded in the job ledger; try again next cycle
                current_task = None
                logger.error("Sync cycle failed: %s: %s", type(e).__name__, e)
            except asyncio.CancelledError:
                logger.info("Sync cycle cancelled")
                break
            except Exception as e:
                current_task = None
                logger.exception("Unexpected error in sync cycle: %s", e)

            try:
                await asyncio.wait_for(_shutdown_event.wait(), timeout=poll_interval)
                break
            except asyncio.TimeoutError:
                pass

    finally:
        if current_task and not current_task.done():
            logger.info("Waiting for in-progress sync to complete...")
            try:
                await asyncio.wait_for(current_task, timeout=30)
                logger.info("In-progress sync completed")
            except asyncio.TimeoutError:
                logger.warning("In-progress sync timed out, cancelling...")
                current_task.cancel()
                try:
                    await current_task
                except asyncio.CancelledError:
                    pass

        logger.info("Daemon shutdown complete")


def parse_redirect_url(pasted: str) -> tuple[str, str]:
    """Extract (code, state) from the redirect URL pasted by the user.

    Raises:
        ValidationError: The URL carries an error or lacks code/state.
    """
    query = parse_qs(urlparse(pasted.strip()).query)
    if "error" in query:
        description = query.get("error_description", query["error"])[0]
        raise ValidationError(f"Authorization denied: {description}")
    code = query.get("code", [""])[0]
    state = query.get("state", [""])[0]
    if not code or not state:
        raise ValidationError("Redirect URL is missing code or state")
    return code, state


async def run_authorize(app: App) -> int:
    """Run the OAuth 2.0 PKCE flow by pasting the redirect URL back.

    One-time operation. The stored refresh token rotates on every refresh.
    """
    url, _ = await app.auth.start_authorization()

    print("\n=== X API Authorization ===\n")
    print("Open this URL in your browser:\n")
    print(f"  {url}\n")
    print("After approving, copy the URL from your address bar and paste it here:\n")

    loop = asyncio.get_running_loop()
    pasted = await loop.run_in_executor(None, sys.stdin.readline)
    code, state = parse_redirect_url(pasted)

    bundle = await app.auth.handle_callback(code, state, app.x_client)
    print("\nAuthorization successful!")
    print(f"Connected user id: {bundle.user_id}")
    print(f"Scopes: {bundle.scope}")
    return EXIT_OK


def load_json_object(source: str) -> dict[str, Any]:
    """Read a JSON object from a file path, or from stdin when source is "-".

    Raises:
        ValidationError: Unreadable file, invalid JSON or not an object.
    """
    try:
        text = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"Cannot read {source}: {e}") from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"{source} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"{source} must contain a JSON object")
    return data


def _check_fields(data: dict[str, Any], allowed: Iterable[str]) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(unknown)}")


async def run_add_provider(app: App, source: str) -> dict[str, Any]:
    """Store a provider from a JSON file shaped like the provider config.

    The api_key is encrypted before it is written; the returned view masks it.
    """
    data = load_json_object(source)
    _check_fields(data, PROVIDER_FIELDS)
    missing = [f for f in REQUIRED_PROVIDER_FIELDS if f not in data]
    if missing:
        raise ValidationError(f"Missing fields: {', '.join(missing)}")
    for field in REQUIRED_PROVIDER_FIELDS:
        if not isinstance(data[field], str):
            raise ValidationError(f"{field} must be a string")
    if not isinstance(data.get("enabled", True), bool):
        raise ValidationError("enabled must be true or false")
    budget = data.get("monthly_budget", 100.0)
    if isinstance(budget, bool) or not isinstance(budget, (int, float)):
        raise ValidationError("monthly_budget must be a number")
    data["monthly_budget"] = float(budget)
    return await app.providers.upsert_provider(**data)


async def run_set_prompts(app: App, source: str) -> dict[str, Any]:
    data = load_json_object(source)
    _check_fields(data, PROMPT_FIELDS)
    overrides = {}
    for field, arg in PROMPT_FIELDS.items():
        value = data.get(field)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{field} must be a string")
        overrides[arg] = value
    snapshot = await app.prompts.update_prompts(**overrides)
    return {
        "mini_summary_system": snapshot.mini_summary_system,
        "digest_system": snapshot.digest_system,
    }


def build_resummarize_filter(parsed_args: argparse.Namespace) -> ResummarizeFilter:
    synced_since = None
    if parsed_args.since:
        synced_since = parse_iso(parsed_args.since)
        if synced_since is None:
            raise ValidationError(f"Invalid --since timestamp: {parsed_args.since!r}")
    return ResummarizeFilter(
        tweet_ids=parsed_args.ids,
        synced_since=synced_since,
        limit=parsed_args.limit,
        overwrite=parsed_args.overwrite,
    )


async def dispatch(app: App, parsed_args: argparse.Namespace) -> int:
    """Run the single action selected on the command line."""
    if parsed_args.authorize:
        return await run_authorize(app)

    if parsed_args.set_interval is not None:
        settings = await app.settings.update_settings(parsed_args.set_interval)
        print_json(
            {
                "sync_interval_hours": settings.sync_interval_hours,
                "updated_at": settings.updated_at,
            }
        )
        return EXIT_OK

    if parsed_args.sync:
        outcome = await app.ledger.run_incremental_sync(force=parsed_args.force)
        print_json(outcome.to_dict())
        return EXIT_OK

    if parsed_args.digest == "daily":
        print_json((await app.ledger.generate_daily_digest()).to_dict())
        return EXIT_OK
    if parsed_args.digest == "weekly":
        print_json((await app.ledger.generate_weekly_digest()).to_dict())
        return EXIT_OK

    if parsed_args.resummarize:
        outcome = await app.ledger.rerun_summaries(build_resummarize_filter(parsed_args))
        print_json(outcome.to_dict())
        return EXIT_OK

    if parsed_args.add_provider:
        print_json(await run_add_provider(app, parsed_args.add_provider))
        return EXIT_OK

    if parsed_args.providers:
        print_json(await app.providers.list_public_configs())
        return EXIT_OK

    if parsed_args.set_prompts:
        print_json(await run_set_prompts(app, parsed_args.set_prompts))
        return EXIT_OK

    if parsed_args.vocab is not None:
        card = await app.ai.lookup_vocabulary_card(
            parsed_args.vocab,
            parsed_args.context,
            parsed_args.source_lang,
            parsed_args.target_lang,
            refresh=parsed_args.refresh,
        )
        print_json(card.model_dump(mode="json"))
        return EXIT_OK

    if parsed_args.jobs is not None:
        runs = await app.ledger.list_job_runs(parsed_args.jobs)
        print_json([run.model_dump(mode="json") for run in runs])
        return EXIT_OK

    await run_daemon(app, app.config.poll_interval)
    return EXIT_OK


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="xauto",
        description="Incrementally sync X bookmarks and summarize them with AI.",
        epilog="With no action flag, runs as a daemon (same as --daemon).",
    )

    actions = parser.add_mutually_exclusive_group()
    actions.add_argument(
        "--sync",
        action="store_true",
        help="Run an incremental bookmark sync",
    )
    actions.add_argument(
        "--digest",
        choices=["daily", "weekly"],
        default=None,
        help="Generate the daily or weekly digest",
    )
    actions.add_argument(
        "--resummarize",
        action="store_true",
        help="Re-run summaries over stored bookmarks",
    )
    actions.add_argument(
        "--jobs",
        type=int,
        nargs="?",
        const=DEFAULT_JOBS_LIMIT,
        default=None,
        metavar="N",
        help=f"List recent job runs (default: {DEFAULT_JOBS_LIMIT})",
    )
    actions.add_argument(
        "--authorize",
        action="store_true",
        help="Connect the X account via OAuth 2.0 PKCE (one-time setup)",
    )
    actions.add_argument(
        "--set-interval",
        type=int,
        default=None,
        metavar="HOURS",
        help="Set the scheduled sync interval in hours (1-168)",
    )
    actions.add_argument(
        "--add-provider",
        default=None,
        metavar="JSON_FILE",
        help="Store or update a model provider from a JSON file ('-' for stdin)",
    )
    actions.add_argument(
        "--providers",
        action="store_true",
        help="List configured model providers (API keys masked)",
    )
    actions.add_argument(
        "--set-prompts",
        default=None,
        metavar="JSON_FILE",
        help="Override system prompts (mini_summary_system, digest_system)",
    )
    actions.add_argument(
        "--vocab",
        default=None,
        metavar="TERM",
        help="Explain a term as a vocabulary card",
    )
    actions.add_argument(
        "--daemon",
        action="store_true",
        help="Poll and sync whenever the interval has elapsed",
    )

    parser.add_argument(
        "--force",
        action="store_true",
        help="Ignore the sync interval (requires --sync)",
    )
    parser.add_argument(
        "--ids",
        nargs="+",
        default=None,
        metavar="TWEET_ID",
        help="Only resummarize these tweet ids (requires --resummarize)",
    )
    parser.add_argument(
        "--since",
        default=None,
        metavar="ISO",
        help="Only resummarize items synced at or after this time",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=500,
        metavar="N",
        help="Maximum items to resummarize (1-500, default: 500)",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Resummarize items that already have a summary",
    )
    parser.add_argument(
        "--context",
        default=None,
        help="Sentence the term appeared in (requires --vocab)",
    )
    parser.add_argument(
        "--source-lang",
        default=None,
        metavar="LANG",
        help="Language hint for the term: en, zh, mixed or unknown",
    )
    parser.add_argument(
        "--target-lang",
        default=None,
        metavar="LANG",
        help="Language to explain the term in (default: zh-CN)",
    )
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Bypass the vocabulary card cache (requires --vocab)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    return parser


def main(args: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        args: Command line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code: 0 success, 1 configuration or unexpected error,
        2 validation, 3 unauthorized, 4 service unavailable.
    """
    parser = create_argument_parser()
    parsed_args = parser.parse_args(args)

    try:
        config = get_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_ERROR

    log_level = "DEBUG" if parsed_args.verbose else config.log_level
    setup_logging(log_level)

    try:
        app = build_app(config)
        return asyncio.run(dispatch(app, parsed_args))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except ValidationError as e:
        print(f"Invalid request: {e}", file=sys.stderr)
        return EXIT_VALIDATION
    except Unauthorized as e:
        print(f"Unauthorized: {e}", file=sys.stderr)
        return EXIT_UNAUTHORIZED
    except ServiceUnavailable as e:
        print(f"Service unavailable: {e}", file=sys.stderr)
        return EXIT_UNAVAILABLE
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
