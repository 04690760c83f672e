#!/usr/bin/env python3
"""
circuitchat CLI: talk to the circuit-design assistant from a terminal.

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    conversations   ls, list        List conversations (pinned first)
    ask             new             Start a conversation and stream the answer
    send            reply           Send a message in an existing conversation
    history         show            Print a conversation's messages
    delete          rm              Delete a conversation
    pin             unpin           Toggle a conversation's pin flag (local)
    flash           info, config    Show config and session at a glance

Credentials come from the `session:` section of config.yaml, normally
filled from CIRCUITCHAT_ACCESS_TOKEN / CIRCUITCHAT_USER_EMAIL.
Ctrl-C while an answer is streaming stops it and keeps the partial text.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from circuitchat import __version__

BANNER = r"""
    ┌──────────────────────────────────────────┐
    │   ─┤├─  c i r c u i t c h a t   ─/\/\─   │
    │   analog design assistant  v""" + __version__ + r"""        │
    └──────────────────────────────────────────┘
"""


def _setup_logging(cfg: dict, verbose: bool = False):
    log_cfg = cfg.get("logging", {})
    level_name = "DEBUG" if verbose else log_cfg.get("level", "WARNING")
    level = getattr(logging, str(level_name).upper(), logging.WARNING)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def build_manager(cfg: dict):
    """Wire session, API client, cache and manager from config."""
    from circuitchat.api.client import ConversationAPIClient
    from circuitchat.lifecycle import ConversationManager
    from circuitchat.session import SessionStore
    from circuitchat.storage.local_cache import LocalCache

    def on_auth_failure():
        print("  ✗  Session rejected. Log in again and refresh CIRCUITCHAT_ACCESS_TOKEN.",
              file=sys.stderr)

    session = SessionStore.from_config(cfg, on_auth_failure=on_auth_failure)
    client = ConversationAPIClient.from_config(cfg, session)
    cache = LocalCache(cfg["storage"]["cache_path"])
    return ConversationManager(client, cache, session, config=cfg)


class _TerminalStream:
    """Prints the growing assistant message of one exchange as it is revealed."""

    def __init__(self, out=None):
        self.out = out or sys.stdout
        self.message_id: str | None = None
        self.printed = 0

    def __call__(self, manager):
        if self.message_id is None:
            return
        for message in manager.messages:
            if message.id != self.message_id:
                continue
            if len(message.content) > self.printed:
                self.out.write(message.content[self.printed:])
                self.out.flush()
                self.printed = len(message.content)
            break


async def _run_exchange(manager, start, stream: _TerminalStream) -> int:
    """Run one send/create call and wait for its answer, honouring Ctrl-C."""
    unsubscribe = manager.subscribe(stream)
    try:
        await start()
        if manager.current_conversation_id and manager.messages:
            last = manager.messages[-1]
            if last.role.value == "assistant":
                stream.message_id = last.id
        try:
            await manager.wait_idle()
        except asyncio.CancelledError:
            manager.stop_response()
            raise
    finally:
        unsubscribe()
    print()

    if manager.error:
        print(f"  ✗  {manager.error}", file=sys.stderr)
        return 1
    last = manager.messages[-1] if manager.messages else None
    if last is not None and last.status.value == "error":
        print(f"  ✗  {last.error}", file=sys.stderr)
        return 1
    return 0


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _cmd_conversations(manager, args) -> int:
    await manager.load_conversations()
    if manager.error:
        print(f"  ✗  {manager.error}", file=sys.stderr)
        return 1
    if not manager.conversations:
        print("  No conversations yet. Start one with: circuitchat ask \"...\"")
        return 0
    for c in manager.conversations:
        pin = "📌" if c.is_pinned else "  "
        created = c.created_at.strftime("%Y-%m-%d %H:%M")
        print(f"  {pin} {c.id}  {created}  ({c.total_messages:>3} msgs)  {c.name}")
    return 0


async def _upload(manager, paths, conversation_id=None):
    from circuitchat.api.uploads import process_multiple_file_uploads

    if not paths:
        return None
    return await process_multiple_file_uploads(manager.client, [Path(p) for p in paths], conversation_id)


def _print_trace(manager, stream: _TerminalStream):
    """Phase timeline of the exchange just run."""
    if manager.current_conversation_id is None or stream.message_id is None:
        return
    exchange = manager.exchange_for(manager.current_conversation_id, stream.message_id)
    if exchange is None:
        return
    print(exchange.render_text())
    summary = exchange.summary()
    phases = "  ".join(f"{name}={ms:.1f}ms" for name, ms in summary["phases"].items())
    print(f"  total {summary['total_ms']:.1f}ms  {phases}")


async def _cmd_ask(manager, args) -> int:
    query = " ".join(args.query)
    attachments = await _upload(manager, args.file)
    stream = _TerminalStream()
    print("  ◀ ", end="", flush=True)
    code = await _run_exchange(manager, lambda: manager.create_conversation(query, attachments), stream)
    if manager.current_conversation_id:
        print(f"  conversation: {manager.current_conversation_id}")
    if args.trace:
        _print_trace(manager, stream)
    return code


async def _cmd_send(manager, args) -> int:
    query = " ".join(args.query)
    await manager.select_conversation(args.conversation_id)
    attachments = await _upload(manager, args.file, args.conversation_id)
    stream = _TerminalStream()
    print("  ◀ ", end="", flush=True)
    code = await _run_exchange(manager, lambda: manager.send_message(query, attachments), stream)
    if args.trace:
        _print_trace(manager, stream)
    return code


async def _cmd_history(manager, args) -> int:
    messages = await manager.select_conversation(args.conversation_id)
    if not messages:
        print("  (no messages)")
        return 0
    for m in messages:
        icon = "▶" if m.role.value == "user" else "◀"
        print(f"  {icon} [{m.role.value}] {m.content}")
        if m.error:
            print(f"    ✗ {m.error}")
        print()
    return 0


async def _cmd_delete(manager, args) -> int:
    from circuitchat.errors import CircuitChatError

    if not args.yes:
        answer = input(f"  Delete conversation {args.conversation_id}? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            print("  Aborted.")
            return 1
    try:
        ok = await manager.delete_conversation(args.conversation_id)
    except CircuitChatError as e:
        print(f"  ✗  {e}", file=sys.stderr)
        return 1
    print("  ✓  Deleted" if ok else "  ✗  Server refused the delete")
    return 0 if ok else 1


async def _cmd_pin(manager, args) -> int:
    await manager.load_conversations()
    if not any(c.id == args.conversation_id for c in manager.conversations):
        print(f"  ✗  Unknown conversation: {args.conversation_id}", file=sys.stderr)
        return 1
    pinned = manager.toggle_pin(args.conversation_id)
    print(f"  {'📌 Pinned' if pinned else 'Unpinned'} {args.conversation_id}")
    return 0


def cmd_flash(args) -> int:
    """Show config and session at a glance (no network)."""
    from circuitchat.config import get_config
    from circuitchat.session import SessionStore, initials

    cfg = get_config()
    session = SessionStore.from_config(cfg)
    print(BANNER)
    print(f"  API:          {cfg['api']['base_url']}")
    print(f"  Cache:        {cfg['storage']['cache_path']}")
    p = cfg["polling"]
    print(f"  Polling:      {p['max_attempts']} attempts, {p['initial_delay']}s → {p['max_delay']}s (×{p['multiplier']})")
    s = cfg["streaming"]
    print(f"  Streaming:    {s['min_chunk']}-{s['max_chunk']} chars every {s['tick'] * 1000:.0f}ms")
    if session.is_authenticated:
        name = session.user_name or session.user_email
        print(f"  Signed in:    {name} ({initials(name)}) <{session.user_email}>")
    else:
        print("  Signed in:    no (set CIRCUITCHAT_ACCESS_TOKEN and CIRCUITCHAT_USER_EMAIL)")
    return 0


def _async_command(handler):
    """Adapt an async command to argparse: build the manager, run, close."""
    def run(args) -> int:
        from circuitchat.config import get_config
        from circuitchat.errors import CircuitChatError

        async def main() -> int:
            manager = build_manager(get_config())
            try:
                return await handler(manager, args)
            except CircuitChatError as e:
                print(f"\n  ✗  {e}", file=sys.stderr)
                return 1
            finally:
                await manager.close()

        try:
            return asyncio.run(main())
        except KeyboardInterrupt:
            print("\n  [stopped]")
            return 130
    run.__doc__ = handler.__doc__
    return run


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="circuitchat",
        description="circuitchat: the analog design assistant in your terminal.",
        epilog="Run 'circuitchat <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", "-V", action="version", version=f"circuitchat {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    _add_command(sub, ["conversations", "ls", "list"],
                 "List conversations", _async_command(_cmd_conversations))

    def setup_ask(p):
        p.add_argument("query", nargs="+", help="Question for the assistant")
        p.add_argument("--file", "-f", action="append", default=None,
                       help="Attach a file (can specify multiple times)")
        p.add_argument("--trace", action="store_true", help="Print the phase timeline afterwards")

    _add_command(sub, ["ask", "new"],
                 "Start a conversation and stream the answer", _async_command(_cmd_ask), setup_ask)

    def setup_send(p):
        p.add_argument("conversation_id", help="Conversation to reply in")
        p.add_argument("query", nargs="+", help="Message text")
        p.add_argument("--file", "-f", action="append", default=None,
                       help="Attach a file (can specify multiple times)")
        p.add_argument("--trace", action="store_true", help="Print the phase timeline afterwards")

    _add_command(sub, ["send", "reply"],
                 "Send a message in a conversation", _async_command(_cmd_send), setup_send)

    def setup_conv(p):
        p.add_argument("conversation_id", help="Conversation id")

    _add_command(sub, ["history", "show"],
                 "Print a conversation's messages", _async_command(_cmd_history), setup_conv)

    def setup_delete(p):
        setup_conv(p)
        p.add_argument("--yes", "-y", action="store_true", help="Don't ask for confirmation")

    _add_command(sub, ["delete", "rm"],
                 "Delete a conversation", _async_command(_cmd_delete), setup_delete)

    _add_command(sub, ["pin", "unpin"],
                 "Toggle a conversation's pin flag", _async_command(_cmd_pin), setup_conv)

    _add_command(sub, ["flash", "info", "config"],
                 "Show config and session at a glance", cmd_flash)

    return parser


def main(argv=None) -> int:
    from circuitchat.config import get_config

    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        print(BANNER)
        parser.print_help()
        return 0

    _setup_logging(get_config(), verbose=args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
