"""CLI to inspect or refresh the cached primary-store session."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import httpx

from ..common.errors import HealError
from ..common.observability import configure_logging
from ..common.settings import ProxySettings
from ..proxy.app import build_session_store
from ..proxy.credentials import CredentialCache


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect or refresh the cached upload session")
    sub = parser.add_subparsers(dest="command", required=True)
    show = sub.add_parser("show", help="Print the cached session, secrets masked")
    show.add_argument("--json", action="store_true", help="Output JSON instead of plain text")
    sub.add_parser("refresh", help="Run the authorization handshake and overwrite the cache")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, settings: ProxySettings) -> int:
    store = build_session_store(settings)
    async with httpx.AsyncClient(timeout=settings.upstream_timeout_seconds) as client:
        credentials = CredentialCache(settings, client, store)
        try:
            if args.command == "refresh":
                try:
                    session = await credentials.refresh()
                except HealError as exc:
                    print(f"Refresh failed: {exc}", file=sys.stderr)
                    return 1
                print(f"Session refreshed; upload URL: {session.upload_url}")
                return 0

            session = await credentials.peek()
            if session is None:
                print("No cached session")
                return 1
            details = session.redacted()
            if args.json:
                print(json.dumps(details, indent=2))
            else:
                for key, value in details.items():
                    print(f"{key}: {value}")
            return 0
        finally:
            await store.close()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = ProxySettings()
    configure_logging("backfill.cli", "WARNING")
    return asyncio.run(run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
