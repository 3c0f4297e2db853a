#!/usr/bin/env python3
"""Run the browser agent against a Chromium started with --remote-debugging-port."""
import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from bridge.agent.config import AgentSettings
from bridge.agent.devtools import DevTools
from bridge.agent.relay_client import RelayClient
from bridge.agent.session_manager import SessionManager
from bridge.agent.state_store import SessionMirror, StateStore
from bridge.core.exceptions import BridgeError
from bridge.core.logging_config import setup_logging

logger = logging.getLogger("bridge.agent")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bridge-agent",
        description="Poll the relay for commands and run them in a browser tab",
    )
    parser.add_argument("--tab", help="DevTools target id of the tab to bind (default: first page tab)")
    parser.add_argument("--list-tabs", action="store_true", help="List page tabs and exit")
    parser.add_argument(
        "--no-start",
        action="store_true",
        help="Only resume stored sessions, do not start a new one",
    )
    parser.add_argument("--relay-url", help="Override the relay mailbox URL")
    parser.add_argument("--devtools-url", help="Override the DevTools endpoint URL")
    return parser


async def list_tabs(devtools: DevTools) -> int:
    for tab in await devtools.list_tabs():
        print(f"{tab.id}\t{tab.title}\t{tab.url}")
    return 0


async def run_agent(args: argparse.Namespace, settings: AgentSettings) -> int:
    devtools = DevTools(settings.devtools_url)
    relay = RelayClient(settings.relay_url, timeout=settings.http_timeout_seconds)
    if args.list_tabs:
        try:
            return await list_tabs(devtools)
        finally:
            await devtools.aclose()
            await relay.aclose()

    manager = SessionManager(
        relay,
        devtools,
        SessionMirror(StateStore.from_url(settings.state_database_url)),
        poll_interval_seconds=settings.poll_interval_seconds,
        keep_alive_interval_seconds=settings.keep_alive_interval_seconds,
    )
    try:
        await manager.restore_on_startup()
        if not args.no_start:
            session_key = await manager.start_session(args.tab)
            print(f"Session key: {session_key}")
            print(f"Instructions: {relay.instructions_url(session_key)}")
        await asyncio.Event().wait()
    finally:
        await manager.shutdown()
        await relay.aclose()
        await devtools.aclose()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    overrides = {}
    if args.relay_url:
        overrides["relay_url"] = args.relay_url
    if args.devtools_url:
        overrides["devtools_url"] = args.devtools_url
    settings = AgentSettings(**overrides)
    setup_logging(log_level=settings.log_level, enable_json=settings.json_logging)

    try:
        return asyncio.run(run_agent(args, settings))
    except KeyboardInterrupt:
        logger.info("Agent interrupted, shutting down")
        return 0
    except BridgeError as e:
        logger.error(e.message)
        return 1


if __name__ == "__main__":
    sys.exit(main())
