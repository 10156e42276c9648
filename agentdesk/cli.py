"""Command-line interface for inspecting and continuing conversations."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from dataclasses import dataclass

from .agent.controller import Controller
from .agent.messages import MessageKind
from .agent.persistence import (
    ConversationStore,
    PersistedFileAttachment,
    PersistedMessage,
    PersistedText,
    PersistedThinking,
    PersistedToolExecution,
    PersistedToolReference,
)
from .log import configure_logging
from .settings import AppSettings, load_app_settings
from .util.cancellation import CancellationEvent


@dataclass
class Command:
    """Describe a CLI command and its argument handler."""

    func: Callable[[argparse.Namespace], int]
    help: str
    add_arguments: Callable[[argparse.ArgumentParser], None]


def _store(args: argparse.Namespace) -> ConversationStore:
    return ConversationStore(args.app_settings.storage.conversations_dir)


def _title(messages: list[PersistedMessage]) -> str:
    for message in messages:
        if message.kind is not MessageKind.USER:
            continue
        for block in message.content:
            if isinstance(block, PersistedText) and block.text.strip():
                return block.text.strip().splitlines()[0]
    return "New Conversation"


def cmd_list(args: argparse.Namespace) -> int:
    """Print one line per saved conversation."""
    store = _store(args)
    for entry in store.load_index().conversations:
        try:
            manifest = store.read_messages(entry.id)
        except (OSError, ValueError):
            manifest = None
        title = _title(manifest.messages) if manifest is not None else "?"
        stamp = entry.last_message_timestamp.isoformat(timespec="seconds")
        sys.stdout.write(f"{entry.id}\t{stamp}\t{title}\n")
    return 0


def _write_execution(execution: PersistedToolExecution, indent: str) -> None:
    status = "error" if execution.is_error else ("done" if execution.is_complete else "running")
    sys.stdout.write(f"{indent}-> {execution.input or execution.name} [{status}]\n")
    for child in execution.children:
        _write_execution(child, indent + "  ")


def cmd_show(args: argparse.Namespace) -> int:
    """Print the transcript of one conversation."""
    store = _store(args)
    try:
        manifest = store.read_messages(args.id)
        outputs = store.read_tool_outputs(args.id)
    except (OSError, ValueError) as exc:
        sys.stderr.write(f"cannot read conversation {args.id}: {exc}\n")
        return 1
    if manifest is None:
        sys.stderr.write(f"conversation not found: {args.id}\n")
        return 1
    executions = outputs.executions if outputs is not None else {}
    for message in manifest.messages:
        sys.stdout.write(f"[{message.kind.value}] {message.timestamp.isoformat(timespec='seconds')}\n")
        for block in message.content:
            if isinstance(block, PersistedText):
                sys.stdout.write(f"{block.text}\n")
            elif isinstance(block, PersistedThinking):
                if args.thinking:
                    sys.stdout.write(f"(thinking) {block.thinking}\n")
            elif isinstance(block, PersistedToolReference):
                execution = executions.get(block.tool_use_id)
                if execution is None:
                    sys.stdout.write(f"  -> {block.tool_use_id} [missing]\n")
                else:
                    _write_execution(execution, "  ")
            elif isinstance(block, PersistedFileAttachment):
                sys.stdout.write(f"  [attachment] {block.file_name} ({block.file_size} bytes)\n")
        sys.stdout.write("\n")
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    """Delete a conversation and its files."""
    store = _store(args)
    if args.id not in store.load_index().ids() and not store.conversation_dir(args.id).exists():
        sys.stderr.write(f"conversation not found: {args.id}\n")
        return 1
    store.delete_conversation(args.id)
    sys.stdout.write(f"{args.id}\n")
    return 0


def _stop_on_interrupt(cancellation: CancellationEvent) -> bool:
    """Turn Ctrl+C into a cooperative stop of the running turn."""
    try:
        asyncio.get_running_loop().add_signal_handler(
            signal.SIGINT, cancellation.set, "interrupted"
        )
    except (NotImplementedError, RuntimeError):
        # no loop signal handlers on Windows or outside the main thread
        return False
    return True


async def _send(args: argparse.Namespace) -> int:
    controller = Controller(args.app_settings)
    cancellation = CancellationEvent()
    interruptible = _stop_on_interrupt(cancellation)
    await controller.start()
    try:
        if args.conversation:
            controller.load_persisted_conversations()
            conversation = controller.get(args.conversation)
            if conversation is None:
                sys.stderr.write(f"conversation not found: {args.conversation}\n")
                return 1
        else:
            conversation = controller.create_conversation()
        before = len(conversation.messages)
        await conversation.send_message(
            args.text, args.attach or (), cancellation=cancellation
        )
        failed = False
        for message in conversation.messages[before:]:
            if message.kind is MessageKind.USER:
                continue
            failed = failed or message.kind is MessageKind.ERROR
            for execution in message.executions:
                sys.stdout.write(f"-> {execution.input_summary}\n")
            if message.text_content:
                sys.stdout.write(f"{message.text_content}\n")
        sys.stdout.write(f"{conversation.id}\n")
        return 1 if failed else 0
    finally:
        if interruptible:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
        await controller.aclose()


def cmd_send(args: argparse.Namespace) -> int:
    """Send a message and print the reply."""
    return asyncio.run(_send(args))


def add_show_arguments(p: argparse.ArgumentParser) -> None:
    """Register arguments for ``show``."""
    p.add_argument("id", help="conversation id")
    p.add_argument("--thinking", action="store_true", help="include model reasoning")


def add_delete_arguments(p: argparse.ArgumentParser) -> None:
    """Register arguments for ``delete``."""
    p.add_argument("id", help="conversation id")


def add_send_arguments(p: argparse.ArgumentParser) -> None:
    """Register arguments for ``send``."""
    p.add_argument("text", help="message text")
    p.add_argument("--conversation", help="continue an existing conversation")
    p.add_argument(
        "--attach", action="append", metavar="PATH", help="attach a file (repeatable)"
    )


COMMANDS: dict[str, Command] = {
    "list": Command(cmd_list, "list saved conversations", lambda p: None),
    "show": Command(cmd_show, "print a conversation transcript", add_show_arguments),
    "delete": Command(cmd_delete, "delete a conversation", add_delete_arguments),
    "send": Command(cmd_send, "send a message to the model", add_send_arguments),
}


def build_parser() -> argparse.ArgumentParser:
    """Construct argument parser for CLI commands."""
    parser = argparse.ArgumentParser(prog="agentdesk", description="agentdesk CLI")
    parser.add_argument("--settings", help="path to JSON/TOML settings")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output")
    sub = parser.add_subparsers(dest="command", required=True)
    for name, cmd in COMMANDS.items():
        p = sub.add_parser(name, help=cmd.help)
        cmd.add_arguments(p)
        p.set_defaults(func=cmd.func)
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)
    settings = AppSettings()
    if args.settings:
        try:
            settings = load_app_settings(args.settings)
        except (OSError, ValueError) as exc:
            parser.error(f"invalid settings: {exc}")
    args.app_settings = settings
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
