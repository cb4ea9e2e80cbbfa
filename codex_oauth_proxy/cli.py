from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any

from codex_oauth_proxy.gateway.server import OAuthProxyServer, ProxyOptions
from codex_oauth_proxy.settings import Settings, get_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codex-oauth-proxy",
        description="Run the Codex OAuth proxy on an ephemeral local port.",
    )
    parser.add_argument(
        "--server-info-file",
        default=None,
        help="Path where {port, pid} is written once the proxy is listening.",
    )
    parser.add_argument("--relay-url", default=None)
    parser.add_argument("--relay-key", default=None)
    parser.add_argument("--log-level", default=None)
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    if args.server_info_file:
        overrides["server_info_file"] = args.server_info_file
    if args.relay_url:
        overrides["token_relay_url"] = args.relay_url
    if args.relay_key:
        overrides["token_relay_key"] = args.relay_key
    if args.log_level:
        overrides["log_level"] = args.log_level
    if not overrides:
        return settings
    return settings.model_copy(update=overrides)


async def _serve(settings: Settings) -> None:
    server = OAuthProxyServer(ProxyOptions.from_settings(settings), settings=settings)
    try:
        await server.start()
        # uvicorn handles SIGINT/SIGTERM and returns from serve().
        await server.wait_closed()
    finally:
        await server.stop()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = apply_overrides(get_settings(), args)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        asyncio.run(_serve(settings))
    except KeyboardInterrupt:
        return 0
    except Exception as exc:
        parser.exit(1, f"error: {exc}\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
