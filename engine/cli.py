"""
Remote Watch — Command Line

Usage:
    # List every debuggable target on the candidate ports
    python -m engine.cli targets

    # Send one input and wait for the completed output
    python -m engine.cli send "explain the failing test" --workspace my-app

    # Follow an operation that is already running
    python -m engine.cli watch --workspace my-app

    # Common options
    python -m engine.cli --env prod --log-level DEBUG send "..." --output result.json
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from channel.connection import Connection
from channel.discovery import list_all_targets, select_target
from channel.errors import ChannelError
from engine.config_loader import ConfigError, load_config
from engine.dispatch import Dispatcher
from engine.logging import configure_logging
from engine.noise import PatternNoiseClassifier
from engine.probes import ProbeSet
from engine.session import SessionCallbacks
from engine.types import Phase


def _print_callbacks(verbose: bool) -> SessionCallbacks:
    def on_phase(phase: Phase, text):
        print(f"  ▸ phase: {phase.value}", file=sys.stderr, flush=True)

    def on_progress(text: str):
        if verbose:
            print(f"  … {len(text)} chars", file=sys.stderr, flush=True)

    def on_activity(lines):
        for line in lines:
            print(f"    · {line}", file=sys.stderr, flush=True)

    return SessionCallbacks(
        on_phase_change=on_phase,
        on_progress=on_progress,
        on_activity=on_activity,
    )


def _print_result(result, output: str | None) -> int:
    if result is None:
        print("  Session stopped before completion", file=sys.stderr)
        return 1
    print(f"\n{'═' * 70}", file=sys.stderr)
    print("  RESULT", file=sys.stderr)
    print(f"{'─' * 70}", file=sys.stderr)
    print(f"  phase:     {result.phase.value}", file=sys.stderr)
    print(f"  reason:    {result.reason.value}", file=sys.stderr)
    print(f"  timed out: {result.timed_out}", file=sys.stderr)
    print(f"  elapsed:   {result.elapsed:.1f}s", file=sys.stderr)
    print(f"  activity:  {len(result.final_activity_log)} lines", file=sys.stderr)
    print(f"{'═' * 70}\n", file=sys.stderr, flush=True)
    print(result.final_text)

    if output:
        Path(output).write_text(json.dumps(result.to_dict(), indent=2))
        print(f"  Saved: {output}", file=sys.stderr)
    return 0 if result.phase == Phase.COMPLETE else 2


def _build(args, settings):
    conn = Connection(settings.channel_options(),
                      preferred_title=args.workspace, name=args.workspace or "")
    dispatcher = Dispatcher(
        conn,
        config=settings.monitor_config(),
        probe_set=ProbeSet.from_config(settings.section("probes")),
        classifier=PatternNoiseClassifier.from_config(settings.section("noise")),
    )
    return conn, dispatcher


async def cmd_targets(args, settings) -> int:
    """List targets and mark the one discovery would pick."""
    options = settings.channel_options()
    targets = await list_all_targets(
        options.ports, host=options.host, timeout=options.discovery_timeout)
    if not targets:
        print(f"No targets on ports {list(options.ports)}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps([t.to_dict() for t in targets], indent=2))
        return 0
    chosen = select_target(targets, options.rules, preferred_title=args.workspace)
    for t in targets:
        mark = "*" if chosen is not None and t.id == chosen.id else " "
        print(f" {mark} {t.port:<5} {t.type:<16} {t.title[:50]:<50} {t.url[:60]}")
    return 0


async def cmd_send(args, settings) -> int:
    """Dispatch one input and wait for completion."""
    conn, dispatcher = _build(args, settings)
    try:
        await conn.connect()
        session = await dispatcher.dispatch(args.text, _print_callbacks(args.verbose))
        result = await session.wait()
    except ChannelError as e:
        print(f"\n  ✗ FAILED: {e}", file=sys.stderr)
        return 1
    finally:
        await dispatcher.stop_all()
        await conn.disconnect()
    return _print_result(result, args.output)


async def cmd_watch(args, settings) -> int:
    """Follow an operation that is already running."""
    conn, dispatcher = _build(args, settings)
    try:
        await conn.connect()
        session = await dispatcher.watch(_print_callbacks(args.verbose))
        result = await session.wait()
    except ChannelError as e:
        print(f"\n  ✗ FAILED: {e}", file=sys.stderr)
        return 1
    finally:
        await dispatcher.stop_all()
        await conn.disconnect()
    return _print_result(result, args.output)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Remote Watch — drive a debuggable application and detect completion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--env", default=None, help="Config overlay config/{env}.yaml (default: $RW_ENV or dev)")
    parser.add_argument("--project-root", default=".", help="Where watch_config.yaml lives")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")

    subs = parser.add_subparsers(dest="command", help="Command")

    targets_p = subs.add_parser("targets", help="List debuggable targets")
    targets_p.add_argument("--workspace", "-w", default=None, help="Preferred window title")
    targets_p.add_argument("--json", action="store_true", help="Print targets as JSON")

    send_p = subs.add_parser("send", help="Send input and wait for the output")
    send_p.add_argument("text")
    send_p.add_argument("--workspace", "-w", default=None, help="Preferred window title")
    send_p.add_argument("--output", "-o", help="Save result JSON")
    send_p.add_argument("--verbose", "-v", action="store_true")

    watch_p = subs.add_parser("watch", help="Follow a running operation")
    watch_p.add_argument("--workspace", "-w", default=None, help="Preferred window title")
    watch_p.add_argument("--output", "-o", help="Save result JSON")
    watch_p.add_argument("--verbose", "-v", action="store_true")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    commands = {"targets": cmd_targets, "send": cmd_send, "watch": cmd_watch}
    try:
        settings = load_config(env=args.env, project_root=args.project_root)
        configure_logging(level=args.log_level or settings.get("logging.level", "WARNING"))
        return asyncio.run(commands[args.command](args, settings))
    except ConfigError as e:
        print(f"  ✗ Bad configuration: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
