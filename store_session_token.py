#!/usr/bin/env python3
"""Store the billing dashboard session token in the OS keychain."""

from __future__ import annotations

import argparse
import getpass
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent / "src"))

from utils.credentials import (  # noqa: E402
    DEFAULT_SERVICE_NAME,
    DEFAULT_SESSION_TOKEN_ENV,
    store_session_token,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Store the billing dashboard session token in the OS keychain."
    )
    parser.add_argument(
        "--service-name",
        default=DEFAULT_SERVICE_NAME,
        help=f"Keyring service name (default: {DEFAULT_SERVICE_NAME}).",
    )
    parser.add_argument(
        "--session-token",
        help=f"Session token (defaults to ${DEFAULT_SESSION_TOKEN_ENV} or prompt).",
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    token = args.session_token or os.getenv(DEFAULT_SESSION_TOKEN_ENV)

    if not token:
        token = getpass.getpass("Enter sb_session cookie value: ")

    store_session_token(args.service_name, token)
    print(f"Stored session token in keychain for service '{args.service_name}'.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
