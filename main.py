#!/usr/bin/env python3
"""StepSmith - goal-driven code editing pipeline.

Usage:
    python main.py run --goal "add a retry to fetchUser" --root ./repo
    python main.py run --goal "..." --root ./repo --language hi --verbose
    python main.py symbols src/app.ts
    python main.py diff old.py new.py
    python main.py limits
"""

import argparse
import logging
import sys

from config.providers import PROVIDER_LIMITS
from core.collaborators import build_collaborators
from core.orchestrator import Orchestrator
from core.patches import create_diff
from core.state import Step
from core.symbols import extract_symbols
from utils.language import detect_language


def _read(path):
    with open(path, encoding="utf-8") as f:
        return f.read()


def _print_symbols(symbols, depth=0):
    for sym in symbols:
        pad = "  " * depth
        print(f"{pad}{sym.kind:9s} {sym.name}  (lines {sym.start_line}-{sym.end_line})")
        _print_symbols(sym.children, depth + 1)


def cmd_run(args):
    """Run the pipeline against a directory."""
    collaborators = build_collaborators(root=args.root, redis_url=args.redis_url)
    orchestrator = Orchestrator(collaborators, on_status=lambda m: print(f"  ... {m}"))

    try:
        state = orchestrator.run(args.goal, language=args.language)
    except KeyboardInterrupt:
        orchestrator.stop()
        state = orchestrator.snapshot()

    for message in state.transcript[1:]:
        label = "!!" if message.role == "system" else ">>"
        print(f"\n{label} [{message.step}] {message.content}")

    print(f"\nStatus: {state.current_step.value}")
    print(f"Tokens: {state.tokens_used} (~${state.estimated_cost:.4f})")
    if state.explanation_markdown and args.verbose:
        print(f"\n{state.explanation_markdown}")
    if state.current_step == Step.ERROR:
        sys.exit(1)


def cmd_symbols(args):
    language = args.language or detect_language(args.file)
    symbols = extract_symbols(_read(args.file), language)
    if not symbols:
        print(f"No symbols found ({language}).")
        return
    # methods are listed under their class
    nested = {id(child) for sym in symbols for child in sym.children}
    _print_symbols([sym for sym in symbols if id(sym) not in nested])


def cmd_diff(args):
    path = args.path or args.new
    sys.stdout.write(create_diff(path, _read(args.old), _read(args.new), args.context))


def cmd_limits(args):
    print(f"{'provider':10s} {'rpm':>6s} {'tpm':>10s}")
    for name, limits in sorted(PROVIDER_LIMITS.items()):
        print(f"{name:10s} {limits['rpm']:>6d} {limits['tpm']:>10d}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="stepsmith",
        description="Goal-driven code editing pipeline",
    )
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Plan and apply changes for a goal")
    run_parser.add_argument("--goal", required=True, help="Natural language goal")
    run_parser.add_argument("--root", default=".", help="Repository root (default: .)")
    run_parser.add_argument("--language", help="Goal language id, e.g. hi (default: detect)")
    run_parser.add_argument("--redis-url", help="Shared counter store (default: $REDIS_URL)")
    run_parser.add_argument("--verbose", action="store_true", help="Log pipeline internals")

    sym_parser = subparsers.add_parser("symbols", help="List symbols in a source file")
    sym_parser.add_argument("file")
    sym_parser.add_argument("--language", help="Override language detection")

    diff_parser = subparsers.add_parser("diff", help="Unified diff between two files")
    diff_parser.add_argument("old")
    diff_parser.add_argument("new")
    diff_parser.add_argument("--path", help="Path shown in the diff headers")
    diff_parser.add_argument("--context", type=int, default=3, help="Context lines (default: 3)")

    subparsers.add_parser("limits", help="Show per-provider rate budgets")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if getattr(args, "verbose", False) else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "run": cmd_run,
        "symbols": cmd_symbols,
        "diff": cmd_diff,
        "limits": cmd_limits,
    }
    if args.command not in commands:
        parser.print_help()
        sys.exit(1)
    commands[args.command](args)


if __name__ == "__main__":
    main()
