#!/usr/bin/env python3
"""
Session Autopilot - Main Entry Point
====================================

This is the main entry point for Session Autopilot. It provides a
command-line interface for running the watcher and for working with
rule files.

Usage:
    python main.py --watch                    # Watch sessions in the foreground
    python main.py --web                      # Dashboard API + watcher
    python main.py --tui                      # Terminal activity viewer + watcher
    python main.py --test "Continue? [y/n]"   # Dry-run text against the rules
    python main.py --validate                 # Check the rule file
    python main.py --status                   # Show configuration and rules
    python main.py --help                     # Show help
"""

import sys
import argparse
import signal
from pathlib import Path
from typing import List, Optional

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from core.config import load_config, Config
from core.logging import setup_logging, get_logger
from core.exceptions import AutopilotError

logger = get_logger("main")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Session Autopilot - rule-driven automation for agent tmux sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --watch                        Watch jat-* sessions
  python main.py --web --port 9000              Dashboard API on port 9000
  python main.py --tui                          Terminal activity viewer
  python main.py --test "Continue? [y/n]"       Which rules match this text?
  python main.py --test "Rate limited" working  Same, with a session state
  python main.py --export rules.json            Export rules as JSON
  python main.py --import rules.json --merge    Merge rules from a document
        """
    )

    # Mode selection (mutually exclusive)
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        "--watch",
        action="store_true",
        help="Watch sessions in the foreground"
    )
    mode_group.add_argument(
        "--web",
        action="store_true",
        help="Start the dashboard API server (and the watcher)"
    )
    mode_group.add_argument(
        "--tui",
        action="store_true",
        help="Start the terminal activity viewer (and the watcher)"
    )
    mode_group.add_argument(
        "--test",
        nargs="+",
        metavar=("TEXT", "STATE"),
        help="Dry-run text against the rules (usage: --test 'text' [SESSION_STATE])"
    )
    mode_group.add_argument(
        "--validate",
        action="store_true",
        help="Load and validate the rule file"
    )
    mode_group.add_argument(
        "--export",
        type=str,
        metavar="PATH",
        help="Export the rules as a JSON document ('-' for stdout)"
    )
    mode_group.add_argument(
        "--import",
        dest="import_path",
        type=str,
        metavar="PATH",
        help="Import rules from a JSON/YAML document into the rule file"
    )
    mode_group.add_argument(
        "--status",
        action="store_true",
        help="Show configuration, rules and sessions"
    )

    # Optional arguments
    parser.add_argument(
        "--merge",
        action="store_true",
        help="With --import: keep existing rules and overwrite by id"
    )
    parser.add_argument(
        "--config",
        type=str,
        metavar="PATH",
        help="Path to configuration file"
    )
    parser.add_argument(
        "--rules",
        type=str,
        metavar="PATH",
        help="Path to rule file (default: <config dir>/rules.yaml)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the dashboard API (default: from config, 8765)"
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host for the dashboard API (default: from config, 127.0.0.1)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )

    return parser.parse_args(argv)


def run_watch(config: Config) -> None:
    """Run the session watcher in the foreground."""
    from services.runtime import build_engine, build_watcher

    engine = build_engine(config)
    watcher = build_watcher(config, engine)

    print(f"\nWatching '{config.engine.session_prefix}*' sessions "
          f"every {config.watcher.poll_interval}s with {len(engine.rules)} rules")
    print("Press Ctrl+C to stop\n")

    def shutdown(signum, frame):
        raise KeyboardInterrupt

    signal.signal(signal.SIGTERM, shutdown)

    try:
        watcher.run_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        watcher.stop()
        engine.shutdown()


def run_web_ui(config: Config, host: Optional[str], port: Optional[int], debug: bool) -> None:
    """Start the dashboard API server."""
    from ui.web.app import run_app

    run_app(
        host=host or config.ui.web_host,
        port=port or config.ui.web_port,
        debug=debug,
        config=config
    )


def run_terminal_ui(config: Config) -> None:
    """Start the terminal activity viewer."""
    from ui.terminal.app import run_tui

    run_tui(config=config)


def run_test_text(config: Config, text: str, state: Optional[str] = None) -> None:
    """Show which rules match a text and what they would send."""
    from rules.engine import RuleEngine
    from rules.store import RuleStore

    engine = RuleEngine(dispatcher=None, config=config.engine)
    engine.load_rules(RuleStore(config.rules_path).load())

    print(f"\nTesting: {text!r}" + (f" (state: {state})" if state else ""))
    print("-" * 50)

    results = engine.evaluate(text, state)
    if not results:
        print("No rule matches.")
        return

    for result in results:
        marker = "  [filtered by session state]" if result.state_filtered else ""
        print(f"✓ {result.rule_id} - {result.rule_name}{marker}")
        print(f"    match:  {result.full_match!r}")
        if result.captured_groups:
            print(f"    groups: {result.captured_groups}")
        for action in result.actions:
            delay = f" (after {action['delayMs']}ms)" if action["delayMs"] else ""
            print(f"    → {action['type']}: {action['value']!r}{delay}")


def run_validate(config: Config) -> None:
    """Load and validate the rule file."""
    from rules.store import RuleStore

    store = RuleStore(config.rules_path)
    rules = store.load()
    enabled = sum(1 for rule in rules if rule.enabled)
    print(f"✓ {config.rules_path}: {len(rules)} rules valid ({enabled} enabled)")


def run_export(config: Config, path: str) -> None:
    """Export the rule file as a JSON document."""
    from rules.store import RuleStore, export_json

    document = export_json(RuleStore(config.rules_path).load())
    if path == "-":
        print(document)
        return

    Path(path).expanduser().write_text(document + "\n", encoding="utf-8")
    print(f"✓ Exported rules to {path}")


def run_import(config: Config, path: str, merge: bool) -> None:
    """Import a rule document into the rule file."""
    from rules.store import RuleStore, import_rules, parse_document

    source = Path(path).expanduser()
    if not source.exists():
        raise AutopilotError(f"File not found: {source}")

    store = RuleStore(config.rules_path)
    current = store.load()
    rules = import_rules(current, parse_document(source.read_text(encoding="utf-8")), merge=merge)
    store.save(rules)
    print(f"✓ Imported into {config.rules_path}: {len(rules)} rules ({'merged' if merge else 'replaced'})")


def run_status_check(config: Config) -> None:
    """Check and display configuration, rules and sessions."""
    from rules.store import RuleStore
    from services.watcher import SessionWatcher
    from rules.engine import RuleEngine

    print("\n" + "=" * 50)
    print("Session Autopilot - Status")
    print("=" * 50 + "\n")

    print("Configuration")
    print("-" * 30)
    print(f"  Config dir: {config.config_dir}")
    print(f"  Rules file: {config.rules_path}")
    print(f"  Log dir:    {config.log_dir}")
    print(f"  Max actions/min: {config.engine.max_actions_per_minute}")
    print(f"  Global cooldown: {config.engine.global_cooldown_seconds}s")

    print("\nRules")
    print("-" * 30)
    try:
        rules = RuleStore(config.rules_path).load()
    except AutopilotError as e:
        print(f"  ✗ {e}")
        rules = []
    for rule in sorted(rules, key=lambda r: r.order):
        status = "✓" if rule.enabled else "✗"
        print(f"  {status} [{rule.order:>3}] {rule.id} ({rule.category.value})")

    print("\nSessions")
    print("-" * 30)
    engine = RuleEngine(dispatcher=None, config=config.engine)
    watcher = SessionWatcher(engine, config.actuator, config.watcher)
    try:
        sessions = watcher.list_sessions()
    except AutopilotError as e:
        print(f"  ✗ tmux unavailable: {e.message}")
        sessions = []
    for session_id in sessions:
        print(f"  {session_id}: {watcher.read_session_state(session_id)}")
    if not sessions:
        print(f"  No '{config.engine.session_prefix}*' sessions running")

    print()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = load_config(args.config)

        # Apply command-line overrides
        if args.rules:
            config.rules_file = args.rules
        if args.debug:
            config.debug = True

        # Setup logging; the TUI owns the terminal
        setup_logging(
            log_dir=config.log_dir,
            log_level="DEBUG" if args.debug else "INFO",
            console_output=not args.tui
        )

        # Route to appropriate mode
        if args.watch:
            run_watch(config)
        elif args.web:
            run_web_ui(config, args.host, args.port, args.debug)
        elif args.tui:
            run_terminal_ui(config)
        elif args.test:
            run_test_text(config, args.test[0], args.test[1] if len(args.test) > 1 else None)
        elif args.validate:
            run_validate(config)
        elif args.export:
            run_export(config, args.export)
        elif args.import_path:
            run_import(config, args.import_path, args.merge)
        elif args.status:
            run_status_check(config)
        else:
            run_status_check(config)
            print("No mode specified. Use --watch, --web, --tui, or --help")

        return 0

    except AutopilotError as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 0
    except Exception as e:
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        if args.debug:
            import traceback
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
