"""Command line entry point: offline simulation plus a small relay client."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Iterable, List, TextIO

from .cache_store import DEFAULT_CACHE_PATH, load_snapshot, save_snapshot
from .classifier import CATEGORY_KNOWN, CATEGORY_NEW_REQUESTS, TrustGraph
from .config import DEFAULT_SETTINGS_FILE, EngineConfig, load_config
from .engine import DirectMessageEngine
from .identity import DEFAULT_IDENTITY_PATH, load_or_create_identity
from .models import Conversation
from .relay import InMemoryRelay, TransportFailure
from .ws_relay import WebSocketRelay

logger = logging.getLogger(__name__)


def _load_events(handle: TextIO) -> List[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        events: List[dict] = []
        for line in content.splitlines():
            if line.strip():
                events.append(json.loads(line))
        return events

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _conversation_line(category: str, conversation: Conversation) -> Dict[str, Any]:
    last = conversation.last_message
    protocols = []
    if conversation.has_protocol_a:
        protocols.append("nip04")
    if conversation.has_protocol_b:
        protocols.append("nip17")
    return {
        "t": "conversation",
        "category": category,
        "counterparty": conversation.counterparty_key,
        "messages": len(conversation.messages),
        "unread": conversation.unread_count,
        "last_activity": conversation.last_activity,
        "protocols": protocols,
        "last_text": "" if last is None or last.failed else last.text,
    }


def _emit_conversations(engine: DirectMessageEngine, output: TextIO) -> None:
    for category in (CATEGORY_KNOWN, CATEGORY_NEW_REQUESTS):
        for conversation in engine.get_conversations(category):
            output.write(json.dumps(_conversation_line(category, conversation)) + "\n")


def _emit_stats(engine: DirectMessageEngine, output: TextIO) -> None:
    info = engine.debug_info()
    output.write(json.dumps({"t": "stats", **info}, default=str) + "\n")


def _trust_graph(args: argparse.Namespace) -> TrustGraph:
    return TrustGraph.of(follows=args.follow or (), mutuals=args.mutual or ())


def _config(args: argparse.Namespace) -> EngineConfig:
    return load_config(args.settings)


async def _simulate(events: Iterable[dict], args: argparse.Namespace, output: TextIO) -> int:
    identity = load_or_create_identity(args.identity)
    engine = DirectMessageEngine(
        identity.signer(),
        InMemoryRelay(),
        trust_graph=_trust_graph(args),
        config=_config(args),
    )
    result = await engine.ingest(events)
    for key in args.responded or ():
        engine.mark_as_responded(key)
    _emit_conversations(engine, output)
    if result.malformed:
        output.write(json.dumps({"t": "dropped", "malformed": result.malformed}) + "\n")
    _emit_stats(engine, output)
    return 0


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    events = _load_events(args.file or sys.stdin)
    return asyncio.run(_simulate(events, args, output))


def _run_identity(args: argparse.Namespace, output: TextIO) -> int:
    identity = load_or_create_identity(args.identity)
    output.write(identity.pubkey + "\n")
    return 0


async def _sync(args: argparse.Namespace, output: TextIO) -> int:
    identity = load_or_create_identity(args.identity)
    relay = WebSocketRelay(args.relay)
    engine = DirectMessageEngine(
        identity.signer(), relay, trust_graph=_trust_graph(args), config=_config(args)
    )
    try:
        snapshot = load_snapshot(args.cache)
        if snapshot is not None and snapshot.get("local_key") == identity.pubkey:
            await engine.restore(snapshot)
        await engine.start(discover=False)
        if not args.no_discovery:
            await engine.scanner.start()
        _emit_conversations(engine, output)
        save_snapshot(engine.snapshot(), args.cache)
    finally:
        await engine.close()
        await relay.close()
    return 0


async def _send(args: argparse.Namespace, output: TextIO) -> int:
    identity = load_or_create_identity(args.identity)
    relay = WebSocketRelay(args.relay)
    engine = DirectMessageEngine(identity.signer(), relay, config=_config(args))
    try:
        message = await engine.send_message(args.to, args.text, args.protocol)
    finally:
        await engine.close()
        await relay.close()
    output.write(
        json.dumps(
            {
                "t": "sent",
                "id": message.id,
                "event_id": message.event_id,
                "protocol": message.source_protocol.value,
                "timestamp": message.timestamp,
            }
        )
        + "\n"
    )
    return 0


def _run_async(coro_factory, args: argparse.Namespace, output: TextIO) -> int:
    try:
        return asyncio.run(coro_factory(args, output))
    except TransportFailure as exc:
        sys.stderr.write(f"relay error: {exc}\n")
        return 2


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Direct message engine CLI")
    parser.add_argument("--identity", default=str(DEFAULT_IDENTITY_PATH), help="Path to identity JSON")
    parser.add_argument("--settings", default=str(DEFAULT_SETTINGS_FILE), help="Path to settings JSON")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("identity", help="Print (creating if needed) the local public key")

    simulate_parser = subparsers.add_parser("simulate", help="Ingest relay events offline and print conversations")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON events file; defaults to stdin",
    )
    simulate_parser.add_argument("--follow", action="append", help="Followed public key (repeatable)")
    simulate_parser.add_argument("--mutual", action="append", help="Mutually followed public key (repeatable)")
    simulate_parser.add_argument("--responded", action="append", help="Mark a counterparty as responded to")

    sync_parser = subparsers.add_parser("sync", help="Fetch conversations from a relay")
    sync_parser.add_argument("--relay", required=True, help="Relay websocket URL (required)")
    sync_parser.add_argument("--cache", default=str(DEFAULT_CACHE_PATH), help="Snapshot cache path")
    sync_parser.add_argument("--follow", action="append", help="Followed public key (repeatable)")
    sync_parser.add_argument("--mutual", action="append", help="Mutually followed public key (repeatable)")
    sync_parser.add_argument("--no-discovery", action="store_true", help="Skip the discovery scan")

    send_parser = subparsers.add_parser("send", help="Send a direct message through a relay")
    send_parser.add_argument("--relay", required=True, help="Relay websocket URL (required)")
    send_parser.add_argument("--to", required=True, help="Recipient public key, hex (required)")
    send_parser.add_argument("--protocol", default=None, help="nip04 or nip17 (defaults to settings)")
    send_parser.add_argument("text", help="Message text")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    stream = output or sys.stdout

    try:
        if args.command == "identity":
            return _run_identity(args, stream)
        if args.command == "simulate":
            return _run_simulation(args, stream)
        if args.command == "sync":
            return _run_async(_sync, args, stream)
        return _run_async(_send, args, stream)
    except ValueError as exc:
        # malformed input file or argument
        sys.stderr.write(f"error: {exc}\n")
        return 1


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
