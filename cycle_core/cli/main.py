"""
CLI_MAIN
========

Command-line interface for cycleCore.

Global Flags:
    --server            Start the API server
    --port PORT         Port for API server (default: 8432)
    --config PATH       Config file (default: data/cycleCore/CONFIG/config.json)

Commands:
    run                 Run a bounded session
    eternal             Run in eternal mode until Ctrl+C
    sessions            List saved session logs
    show                Show the cycles of a saved session

Usage:
    cycle-core --server
    cycle-core run "How do tides shape coastlines?" --cycles 3
    cycle-core run "Plan a garden" --cycles 5 --save garden
    cycle-core eternal --interval 20 --max-cycles 2
    cycle-core sessions
    cycle-core show garden
"""

import argparse
import json
import logging
import threading
from typing import Dict, List, Optional

from .. import __version__
from ..config.loader import ConfigError, CycleCoreConfig, load_config
from ..logging_config import setup_logging
from ..loop import LoopController, LoopExecutionError, build_controller
from ..memory.session_log import SessionLogStore
from ..scheduler.eternal import EternalScheduler, build_scheduler

logger = logging.getLogger(__name__)


# ============================================================================
# CLI COMMANDS
# ============================================================================

def cli_run(initial_input: str, cycles: int, config: CycleCoreConfig = None,
            save: Optional[str] = None, controller: LoopController = None) -> Dict:
    """
    Run one bounded session.

    Args:
        initial_input: Input for cycle 0
        cycles: Cycle budget
        config: Loaded configuration
        save: Session id to save the history under afterwards
        controller: Pre-built controller (built from config if None)

    Returns:
        Result dictionary
    """
    config = config or CycleCoreConfig()
    controller = controller or build_controller(config)
    try:
        result = controller.start(initial_input, cycles)
    except LoopExecutionError as e:
        return {"error": str(e), "status": controller.state.value}

    output = result.to_dict()
    output["cycles"] = [
        {
            "id": c.id,
            "directive": c.directive,
            "agent": c.action_result.agent_used if c.action_result else None,
            "success": c.action_result.success if c.action_result else False,
            "verdict": c.safety_verdict.reason if c.safety_verdict else None,
        }
        for c in controller.history.all() if c.run_id == result.run_id
    ]
    if save:
        path = SessionLogStore(config.paths.sessions_dir).save(save, controller.history)
        output["saved_to"] = str(path)
    return output


def cli_sessions(config: CycleCoreConfig = None, limit: int = 50) -> List[Dict]:
    config = config or CycleCoreConfig()
    return SessionLogStore(config.paths.sessions_dir).list_sessions(limit)


def cli_show(session_id: str, config: CycleCoreConfig = None) -> Dict:
    """Load a saved session's cycles."""
    config = config or CycleCoreConfig()
    try:
        cycles = SessionLogStore(config.paths.sessions_dir).load(session_id)
    except ValueError as e:
        return {"error": str(e)}
    if cycles is None:
        return {"error": f"Session not found: {session_id}"}
    return {"session_id": session_id, "cycles": [c.to_dict() for c in cycles]}


def cli_eternal(config: CycleCoreConfig, interval: Optional[float] = None,
                max_cycles: Optional[int] = None, scheduler: EternalScheduler = None,
                stop_event: threading.Event = None) -> Dict:
    """
    Run eternal mode until interrupted.

    Returns:
        Final scheduler status
    """
    partial = {}
    if interval is not None:
        partial["interval_seconds"] = interval
    if max_cycles is not None:
        partial["max_cycles_per_loop"] = max_cycles

    scheduler = scheduler or build_scheduler(config)
    stop_event = stop_event or threading.Event()
    try:
        scheduler.start_eternal(partial or None)
        while scheduler.is_eternal and not stop_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        print("\nStopping eternal mode...")
    finally:
        scheduler.stop_eternal()
    return scheduler.get_status()


def cli_start_server(port: int, config: CycleCoreConfig) -> None:
    from ..api.app import main as api_main
    api_main(port=port, config=config)


# ============================================================================
# OUTPUT
# ============================================================================

def _print_run(result: Dict) -> None:
    if "error" in result:
        print(f"Error: {result['error']}")
        return
    print(f"\nStatus: {result['status']}")
    print(f"Reason: {result['reason']}")
    print(f"Cycles: {result['cycles_run']}")
    print(f"Duration: {result['duration_ms']}ms")
    for c in result.get("cycles", []):
        directive = f" [{c['directive']}]" if c["directive"] else ""
        outcome = "ok" if c["success"] else "failed"
        print(f"  #{c['id']}{directive} {c['agent']} ({outcome}) - {c['verdict']}")
    if result.get("saved_to"):
        print(f"\nSaved to {result['saved_to']}")


# ============================================================================
# MAIN
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cycle-core",
        description="cycleCore - recursive Generator/Analyst/Actor pipeline controller",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES
========

Bounded runs:
  %(prog)s run "How do tides shape coastlines?" --cycles 3
  %(prog)s run "Plan a garden" --cycles 5 --save garden --json

Eternal mode:
  %(prog)s eternal --interval 20 --max-cycles 2

Session logs:
  %(prog)s sessions
  %(prog)s show garden

Server:
  %(prog)s --server --port 8432

For command-specific help:
  %(prog)s <command> --help
        """
    )

    parser.add_argument("--version", "-V", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--server", action="store_true", help="Start the API server")
    parser.add_argument("--port", type=int, default=8432, help="Port for API server (default: 8432)")
    parser.add_argument("--config", "-c", help="Path to config.json")

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        description="Use '%(prog)s <command> --help' for command-specific help",
        metavar="<command>"
    )

    run_parser = subparsers.add_parser("run", help="Run a bounded session")
    run_parser.add_argument("input", help="Input for the first cycle")
    run_parser.add_argument("--cycles", "-n", type=int, default=None,
                            help="Number of cycles (default: loop.default_max_cycles)")
    run_parser.add_argument("--save", "-s", metavar="SESSION_ID", help="Save the history afterwards")
    run_parser.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    eternal_parser = subparsers.add_parser("eternal", help="Run in eternal mode until Ctrl+C")
    eternal_parser.add_argument("--interval", "-i", type=float, help="Seconds between loops")
    eternal_parser.add_argument("--max-cycles", "-m", type=int, help="Cycles per loop")

    sessions_parser = subparsers.add_parser("sessions", help="List saved session logs")
    sessions_parser.add_argument("--limit", "-l", type=int, default=50, help="Max sessions to list")

    show_parser = subparsers.add_parser("show", help="Show a saved session")
    show_parser.add_argument("session_id", help="Session ID")
    show_parser.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Config error: {e}")
        return 2
    setup_logging(level=config.log_level, log_file=config.log_file, logs_dir=config.paths.logs_dir)

    if args.server:
        cli_start_server(args.port, config)
        return 0

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "run":
        cycles = args.cycles if args.cycles is not None else config.loop.default_max_cycles
        if cycles < 1:
            print("Error: --cycles must be at least 1")
            return 2
        result = cli_run(args.input, cycles, config, save=args.save)
        if args.json:
            print(json.dumps(result, indent=2, default=str))
        else:
            _print_run(result)
        return 1 if "error" in result else 0

    if args.command == "eternal":
        try:
            status = cli_eternal(config, interval=args.interval, max_cycles=args.max_cycles)
        except ConfigError as e:
            print(f"Config error: {e}")
            return 2
        print(f"\nEternal stats: {status['loop_count']} loops, {status['total_cycles']} cycles")
        return 0

    if args.command == "sessions":
        sessions = cli_sessions(config, args.limit)
        if sessions:
            print("\nSaved Sessions:")
            for s in sessions:
                print(f"  {s['session_id']}: {s['total_cycles']} cycles ({(s.get('saved_at') or '')[:19]})")
        else:
            print("No sessions found.")
        return 0

    if args.command == "show":
        result = cli_show(args.session_id, config)
        if "error" in result:
            print(f"Error: {result['error']}")
            return 1
        if args.json:
            print(json.dumps(result, indent=2, default=str))
            return 0
        print(f"\nSession {result['session_id']}: {len(result['cycles'])} cycles")
        for c in result["cycles"]:
            verdict = (c.get("safety_verdict") or {}).get("reason", "")
            agent = (c.get("action_result") or {}).get("agent_used", "")
            print(f"  {c['run_id']}#{c['id']}: {agent} - {verdict}")
            print(f"    input: {c['input'][:100]}")
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
