"""
Development runner that follows a simulated website conversion headless.
This script allows running the tracking core without installation.
"""

import argparse
import os
import sys

# Add src directory to Python path for local development
sys.path.insert(0, os.path.abspath("src"))

from PySide6.QtCore import QCoreApplication

from convtrack.config_manager import ConfigManager
from convtrack.error_handler import init_logging, setup_error_handling
from convtrack.orchestrator import JobOrchestrator
from convtrack.simulation import SimulatedEngine
from convtrack.state import JobState
from convtrack.transport import SignalTransport


def _print_state(state: JobState) -> None:
    print(
        f"[{state.status.value:>11}] {state.progress:3d}%  "
        f"discovered={state.discovered_urls} processed={state.counts.processed}/{state.counts.total}  "
        f"{state.current_unit or ''}"
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run a simulated website conversion and print its states")
    parser.add_argument("url", nargs="?", default="https://example.com/", help="Website to 'convert'")
    parser.add_argument("--pages", type=int, default=6, help="Number of simulated pages")
    parser.add_argument("--fail", metavar="MESSAGE", help="Fail the crawl part way with this message")
    parser.add_argument("--delay", type=float, default=0.05, help="Seconds between simulated events")
    args = parser.parse_args(argv)

    app = QCoreApplication.instance() or QCoreApplication(sys.argv)
    config = ConfigManager()
    init_logging(config.get("log_level"), config.get("log_file") or None)
    error_handler = setup_error_handling()

    transport = SignalTransport()
    engine = SimulatedEngine(transport)
    orchestrator = JobOrchestrator(engine, transport, config)
    orchestrator.store.stateChanged.connect(_print_state)

    options = {"pages": args.pages, "step_delay": args.delay}
    if args.fail:
        options["fail_with"] = args.fail

    try:
        handle = orchestrator.convert_website(args.url, options)
        handle.wait()

        print(f"Finished {handle.job_id}: {handle.status().value} in {orchestrator.store.timer.final_time}")
        if handle.error():
            print(f"Error: {handle.error()}")
    finally:
        orchestrator.dispose()
        app.processEvents()
        error_handler.restore_hooks()
    return 0 if handle.result() is not None else 1


if __name__ == "__main__":
    raise SystemExit(main())
