"""
Cliper CLI: operate a local Cliper data directory without the server.

Usage:
    cliper boot-check
    cliper enqueue "Dana moved the design review to Thursday"
    cliper drain
    cliper ask "when is the design review?"
    cliper --help

Commands:
    boot-check      Probe storage and print boot warnings.
    status          Print health, worker and scheduler status as JSON.
    enqueue         Add a raw fragment to the ingestion queue.
    ask             Answer a question from stored memories.
    update          Run a conversational update through the decision controller.
    drain           Process queued items until the queue is idle.
    maintenance     Run one maintenance cycle now.
    export          Write the whole state as an export document.
    import          Replace the whole state from an export document.
    reset           Clear every collection (requires --yes).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

from cliper.core.config import CliperConfig
from cliper.core.engine import CliperEngine
from cliper.core.errors import CliperError, ImportFormatError
from cliper.core.types import QueueItemType

# ─────────────────────────────────────────────────────────────────────────────
# Engine helpers
# ─────────────────────────────────────────────────────────────────────────────


def _load_config(args: argparse.Namespace) -> CliperConfig:
    config = CliperConfig.from_yaml(args.config) if args.config else CliperConfig.from_env()
    if args.data_dir:
        config.data_dir = args.data_dir
        config.storage.path = os.path.join(args.data_dir, "cliper.db")
    return config


def _run(args: argparse.Namespace, action: Callable[[CliperEngine], Awaitable[int]]) -> int:
    async def _main() -> int:
        engine = CliperEngine(_load_config(args))
        await engine.initialize(start_background=False)
        try:
            return await action(engine)
        finally:
            await engine.shutdown()

    return asyncio.run(_main())


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────


def cmd_boot_check(args: argparse.Namespace) -> int:
    async def action(engine: CliperEngine) -> int:
        issues = engine.run_system_boot_check()
        if not issues:
            print("Boot check passed.")
        for issue in issues:
            print(f"- {issue}")
        if engine.safe_mode:
            print("Engine would start in safe mode.", file=sys.stderr)
            return 1
        return 0

    return _run(args, action)


def cmd_status(args: argparse.Namespace) -> int:
    async def action(engine: CliperEngine) -> int:
        _print_json(engine.status())
        return 0

    return _run(args, action)


def cmd_enqueue(args: argparse.Namespace) -> int:
    async def action(engine: CliperEngine) -> int:
        image = None
        if args.image:
            image = Path(args.image).read_text(encoding="utf-8").strip()
        item = engine.add_to_queue(args.content, QueueItemType(args.type), image_base64=image)
        print(item.id)
        return 0

    return _run(args, action)


def cmd_ask(args: argparse.Namespace) -> int:
    async def action(engine: CliperEngine) -> int:
        reply = await engine.consult_brain(args.message, is_observer=args.observer)
        if args.json:
            _print_json(reply.model_dump())
            return 0
        print(reply.reply)
        if reply.assumptions:
            print("\nAssumptions:")
            for assumption in reply.assumptions:
                print(f"- {assumption}")
        return 0

    return _run(args, action)


def cmd_update(args: argparse.Namespace) -> int:
    async def action(engine: CliperEngine) -> int:
        _print_json(await engine.process_update(args.message))
        return 0

    return _run(args, action)


def cmd_drain(args: argparse.Namespace) -> int:
    async def action(engine: CliperEngine) -> int:
        if engine.safe_mode:
            print("Safe mode is active; queue processing is suspended.", file=sys.stderr)
            return 1
        results = await engine.drain_queue(args.max_items)
        failed = [r for r in results if r["reason"] == "failed"]
        print(f"Processed {len(results) - len(failed)} item(s), {len(failed)} failure(s).")
        for result in failed:
            print(f"- {result['item_id']}: {result['error']}", file=sys.stderr)
        return 0

    return _run(args, action)


def cmd_maintenance(args: argparse.Namespace) -> int:
    async def action(engine: CliperEngine) -> int:
        _print_json(engine.run_maintenance())
        return 0

    return _run(args, action)


def cmd_export(args: argparse.Namespace) -> int:
    async def action(engine: CliperEngine) -> int:
        document = json.dumps(engine.export_state(), indent=2)
        if args.output:
            Path(args.output).write_text(document, encoding="utf-8")
            print(f"Exported to {args.output}")
        else:
            print(document)
        return 0

    return _run(args, action)


def cmd_import(args: argparse.Namespace) -> int:
    try:
        document = json.loads(Path(args.path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"Error: could not read {args.path}: {exc}", file=sys.stderr)
        return 1

    async def action(engine: CliperEngine) -> int:
        try:
            counts = engine.import_state(document)
        except ImportFormatError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        _print_json(counts)
        return 0

    return _run(args, action)


def cmd_reset(args: argparse.Namespace) -> int:
    if not args.yes:
        print("Refusing to reset without --yes.", file=sys.stderr)
        return 1

    async def action(engine: CliperEngine) -> int:
        engine.factory_reset()
        print("All collections cleared.")
        return 0

    return _run(args, action)


# ─────────────────────────────────────────────────────────────────────────────
# Parser
# ─────────────────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cliper",
        description="Cliper CLI: operate a local Cliper memory engine.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  cliper boot-check\n"
               "  cliper enqueue \"Dana prefers morning meetings\"\n"
               "  cliper drain\n"
               "  cliper ask \"what does Dana prefer?\"\n"
               "  cliper export --output backup.json\n",
    )
    parser.add_argument("--config", default=None, metavar="PATH", help="YAML config file.")
    parser.add_argument(
        "--data-dir",
        default=None,
        metavar="DIR",
        help="Data directory (default: CLIPER_DATA_DIR or the platform data dir).",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("boot-check", help="Probe storage and print boot warnings.")
    subparsers.add_parser("status", help="Print engine status as JSON.")

    enqueue = subparsers.add_parser("enqueue", help="Add a fragment to the ingestion queue.")
    enqueue.add_argument("content")
    enqueue.add_argument(
        "--type",
        default=QueueItemType.TEXT.value,
        choices=[t.value for t in QueueItemType],
        help="Queue item type (default: text).",
    )
    enqueue.add_argument("--image", default=None, metavar="PATH", help="File holding base64 image data.")

    ask = subparsers.add_parser("ask", help="Answer a question from stored memories.")
    ask.add_argument("message")
    ask.add_argument("--observer", action="store_true", help="Read-only: skip write intents.")
    ask.add_argument("--json", action="store_true", help="Print the full reply as JSON.")

    update = subparsers.add_parser("update", help="Run an update through the decision controller.")
    update.add_argument("message")

    drain = subparsers.add_parser("drain", help="Process queued items until idle.")
    drain.add_argument("--max-items", type=int, default=100)

    subparsers.add_parser("maintenance", help="Run one maintenance cycle now.")

    export = subparsers.add_parser("export", help="Write an export document.")
    export.add_argument("--output", "-o", default=None, metavar="PATH")

    import_ = subparsers.add_parser("import", help="Replace all state from an export document.")
    import_.add_argument("path")

    reset = subparsers.add_parser("reset", help="Clear every collection.")
    reset.add_argument("--yes", action="store_true", help="Confirm the reset.")
    return parser


COMMANDS = {
    "boot-check": cmd_boot_check,
    "status": cmd_status,
    "enqueue": cmd_enqueue,
    "ask": cmd_ask,
    "update": cmd_update,
    "drain": cmd_drain,
    "maintenance": cmd_maintenance,
    "export": cmd_export,
    "import": cmd_import,
    "reset": cmd_reset,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1
    try:
        return handler(args)
    except CliperError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
