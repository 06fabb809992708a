"""CLI entry point for billing-sync."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import tomllib
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

import yaml

from engine.client_factory import build_sync_engine
from engine.errors import SyncEngineError
from engine.pending_store import JsonFileStorage
from engine.sync_engine import SyncEngine
from utils.config_validator import ConfigValidationError, validate_config
from utils.logging_config import LogContext, setup_logging

LOGGER = logging.getLogger("billing_sync.cli")

SUPPORTED_FORMATS = (".json", ".toml", ".yaml", ".yml")
DEFAULT_STATE_FILE = "billing_state.json"


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config", required=True, help="Path to JSON/TOML/YAML config file."
    )
    parser.add_argument(
        "--email",
        help="Account email (defaults to 'email' in the config file).",
    )
    parser.add_argument(
        "--state-path",
        help=f"Optional path to the local pending-edit store (defaults to {DEFAULT_STATE_FILE} next to the config).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="billing-sync CLI")
    parser.add_argument("--version", action="version", version="billing-sync 0.1.0")
    subparsers = parser.add_subparsers(dest="command", required=True)

    dashboard_parser = subparsers.add_parser(
        "dashboard", help="Fetch and print the unified billing dashboard."
    )
    _add_common_arguments(dashboard_parser)
    dashboard_parser.add_argument(
        "--no-cache", action="store_true", help="Bypass the response cache."
    )
    dashboard_parser.set_defaults(handler=run_dashboard)

    add_parser = subparsers.add_parser("add-site", help="Queue a site for purchase.")
    _add_common_arguments(add_parser)
    add_parser.add_argument("--site", required=True, help="Site domain to add.")
    add_parser.add_argument(
        "--billing-period",
        default="monthly",
        choices=("monthly", "yearly"),
        help="Billing period for the new site.",
    )
    add_parser.set_defaults(handler=run_add_site)

    remove_parser = subparsers.add_parser(
        "remove-pending", help="Remove a queued site by its position."
    )
    _add_common_arguments(remove_parser)
    remove_parser.add_argument(
        "--index", type=int, required=True, help="Zero-based position in the pending list."
    )
    remove_parser.set_defaults(handler=run_remove_pending)

    checkout_parser = subparsers.add_parser(
        "checkout", help="Create a checkout session for the pending list."
    )
    _add_common_arguments(checkout_parser)
    checkout_parser.add_argument(
        "--billing-period",
        choices=("monthly", "yearly"),
        help="Override the billing period of the checkout.",
    )
    checkout_parser.set_defaults(handler=run_checkout)

    return_parser = subparsers.add_parser(
        "payment-return", help="Poll until a completed payment shows up."
    )
    _add_common_arguments(return_parser)
    return_parser.add_argument(
        "--url", required=True, help="URL the checkout redirected back to."
    )
    return_parser.set_defaults(handler=run_payment_return)

    activate_parser = subparsers.add_parser(
        "activate-license", help="Assign a license key to a site."
    )
    _add_common_arguments(activate_parser)
    activate_parser.add_argument("--license-key", required=True, help="License key to assign.")
    activate_parser.add_argument("--site", required=True, help="Site domain for the license.")
    activate_parser.set_defaults(handler=run_activate_license)

    deactivate_parser = subparsers.add_parser(
        "deactivate-license", help="Remove a license key from its subscription."
    )
    _add_common_arguments(deactivate_parser)
    deactivate_parser.add_argument(
        "--license-key", required=True, help="License key to remove."
    )
    deactivate_parser.set_defaults(handler=run_deactivate_license)

    quantity_parser = subparsers.add_parser(
        "purchase-quantity", help="Create a checkout session for new license keys."
    )
    _add_common_arguments(quantity_parser)
    quantity_parser.add_argument(
        "--quantity", type=int, required=True, help="Number of license keys to buy."
    )
    quantity_parser.set_defaults(handler=run_purchase_quantity)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if hasattr(args, "handler"):
        return args.handler(args)
    parser.print_help()
    return 1


def run_dashboard(args: argparse.Namespace) -> int:
    async def action(engine: SyncEngine) -> dict[str, Any]:
        view = await engine.refresh(use_cache=not args.no_cache)
        return view.to_payload() if view else {}

    return _run(args, action)


def run_add_site(args: argparse.Namespace) -> int:
    async def action(engine: SyncEngine) -> dict[str, Any]:
        await engine.refresh()
        entry = engine.add_pending_site(args.site, args.billing_period)
        await engine.drain()
        return {
            "added": entry.to_payload(),
            "pending": [item.to_payload() for item in engine.pending_sites()],
        }

    return _run(args, action)


def run_remove_pending(args: argparse.Namespace) -> int:
    async def action(engine: SyncEngine) -> dict[str, Any]:
        await engine.refresh()
        entry = engine.remove_pending_site(args.index)
        await engine.drain()
        return {
            "removed": entry.to_payload(),
            "pending": [item.to_payload() for item in engine.pending_sites()],
        }

    return _run(args, action)


def run_checkout(args: argparse.Namespace) -> int:
    async def action(engine: SyncEngine) -> dict[str, Any]:
        await engine.refresh()
        checkout = await engine.begin_checkout(args.billing_period)
        return {"url": checkout.url, "session_id": checkout.session_id}

    return _run(args, action)


def run_payment_return(args: argparse.Namespace) -> int:
    async def action(engine: SyncEngine) -> dict[str, Any]:
        outcome = await engine.handle_payment_return(args.url)
        if outcome is None:
            raise ValueError(f"URL does not look like a payment return: {args.url}")
        return {
            "converged": outcome.converged,
            "passes_run": outcome.passes_run,
            "failures": outcome.failures,
        }

    return _run(args, action)


def run_activate_license(args: argparse.Namespace) -> int:
    async def action(engine: SyncEngine) -> dict[str, Any]:
        await engine.refresh()
        response = await engine.activate_license(args.license_key, args.site)
        return {"success": response.success, "message": response.message}

    return _run(args, action)


def run_deactivate_license(args: argparse.Namespace) -> int:
    async def action(engine: SyncEngine) -> dict[str, Any]:
        await engine.refresh()
        response = await engine.deactivate_license(args.license_key)
        return {
            "success": response.success,
            "message": response.message,
            "cancel_at_period_end": response.cancel_at_period_end,
        }

    return _run(args, action)


def run_purchase_quantity(args: argparse.Namespace) -> int:
    async def action(engine: SyncEngine) -> dict[str, Any]:
        checkout = await engine.purchase_quantity(args.quantity)
        return {"url": checkout.url, "session_id": checkout.session_id}

    return _run(args, action)


def _run(
    args: argparse.Namespace,
    action: Callable[[SyncEngine], Awaitable[dict[str, Any]]],
) -> int:
    configure_logging(args.log_level)
    try:
        config_path = Path(args.config).expanduser()
        config = load_config(config_path)
        try:
            validate_config(config)
        except ConfigValidationError as exc:
            LOGGER.error("Configuration validation failed: %s", exc)
            return 2
        email = resolve_email(args.email, config)
        state_path = (
            Path(args.state_path).expanduser()
            if args.state_path
            else config_path.parent / DEFAULT_STATE_FILE
        )
        with LogContext(email=email):
            result = asyncio.run(_execute(config, email, state_path, action))
        print(json.dumps(result, indent=2, sort_keys=True))
    except (FileNotFoundError, RuntimeError, ValueError, SyncEngineError) as exc:
        LOGGER.error(str(exc))
        return 2
    except Exception as exc:  # pragma: no cover - safeguard for unexpected issues.
        LOGGER.exception("Unexpected error during %s: %s", args.command, exc)
        return 3
    return 0


async def _execute(
    config: dict[str, Any],
    email: str,
    state_path: Path,
    action: Callable[[SyncEngine], Awaitable[dict[str, Any]]],
) -> dict[str, Any]:
    engine = build_sync_engine(config, email, JsonFileStorage(state_path))
    try:
        return await action(engine)
    finally:
        await engine.aclose()


def configure_logging(level: str) -> None:
    """Configure logging with sanitization and proper formatting."""
    setup_logging(level=level, sanitize=True, structured=False)


def resolve_email(email: str | None, config: dict[str, Any]) -> str:
    candidate = (email or str(config.get("email") or "")).strip().lower()
    if not candidate:
        raise ValueError("Account email is required. Pass --email or set 'email' in the config.")
    if "@" not in candidate:
        raise ValueError(f"Invalid account email: {candidate}")
    return candidate


def load_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}. Ensure the path is correct and readable."
        )
    suffix = config_path.suffix.lower()
    if suffix not in SUPPORTED_FORMATS:
        supported = ", ".join(SUPPORTED_FORMATS)
        raise ValueError(
            f"Unsupported config format '{suffix}'. Supported formats: {supported}."
        )
    text = config_path.read_text(encoding="utf-8")
    try:
        if suffix == ".json":
            data = json.loads(text)
        elif suffix == ".toml":
            data = tomllib.loads(text)
        else:
            data = yaml.safe_load(text)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config file {config_path}: {exc}. Validate the file format."
        ) from exc
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as exc:
        raise ValueError(f"Failed to parse config file {config_path}: {exc}.") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(
            f"Config file {config_path} must contain a JSON/TOML/YAML object mapping."
        )
    return data


if __name__ == "__main__":
    raise SystemExit(main())
