#!/usr/bin/env python3
"""
outbox-sim: watch the outbox task queue drain a simulated chat workload.

Usage:
    outbox-sim --count 100 --latency 50
    outbox-sim --count 50 --error-rate 0.1 --duration 30
    outbox-sim --scenario single_thread --count 20 --verbose
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import random
import signal
import sys
import time
from typing import Awaitable, Callable

from rich.console import Console

from outbox.config import IMAGE_GENERATION_MODES
from outbox_sim.display import SimulationState, SimulatorDisplay, print_final_summary, print_simple_stats
from outbox_sim.runner import SimConfig, SimulationRunner
from outbox_sim.scenarios import SCENARIOS, list_scenarios

EVENT_SYMBOLS = {
    "succeeded": "✓",
    "failed": "✗",
    "started": "▶",
    "queued": "+",
    "cancelled": "⊘",
    "violation": "!",
}

EXIT_INTERRUPTED = 130


def configure_logging(verbose: bool = False) -> None:
    """Route outbox library logs to stderr in verbose mode, mute them otherwise."""
    library = logging.getLogger("outbox")
    if not verbose:
        # The display reports progress itself
        library.setLevel(logging.CRITICAL)
        return
    library.setLevel(logging.DEBUG)
    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
    library.addHandler(stream)


class StallWatch:
    """
    Detects a queue that has work left but nothing running.

    Called once per display tick. After two seconds without progress it
    publishes ``debug_blocked`` output into the state; after
    ``stall_timeout`` seconds it stops the runner.
    """

    def __init__(self, runner: SimulationRunner, state: SimulationState, timeout: float | None):
        self.runner = runner
        self.state = state
        self.timeout = timeout
        self.stalled_for = 0.0
        self._last_finished = 0

    def tick(self, interval: float) -> bool:
        """Returns True once the stall timeout is hit."""
        s = self.state
        idle = s.queued > 0 and s.running == 0 and s.finished == self._last_finished
        self._last_finished = s.finished
        if not idle:
            self.stalled_for = 0.0
            s.blocked_info = []
            return False

        self.stalled_for += interval
        if self.stalled_for > 2.0:
            s.blocked_info = self.runner.debug_blocked()
        if self.timeout and self.stalled_for >= self.timeout:
            s.add_event("timeout", "system", None, f"no progress for {self.timeout}s")
            self.runner.stop()
            return True
        return False


async def _drive(runner: SimulationRunner, ticker: Callable[[], Awaitable[None]] | None = None) -> None:
    """Run the simulation with an optional background ticker, always cleaning up."""
    background = asyncio.create_task(ticker()) if ticker is not None else None
    try:
        await runner.run()
    except (KeyboardInterrupt, asyncio.CancelledError):
        runner.stop()
    finally:
        if background is not None:
            background.cancel()
            await asyncio.gather(background, return_exceptions=True)
        await runner.cleanup()


def _echo_events(state: SimulationState) -> None:
    """Make every event added to the state print a log line as well."""
    record = state.add_event
    started = time.monotonic()

    def add_and_print(event_type: str, task_id: str, task_kind: str | None = None, details: str = "") -> None:
        offset = time.monotonic() - started
        symbol = EVENT_SYMBOLS.get(event_type, "·")
        print(f"{offset:9.3f}s {symbol} {event_type:<10} {task_kind or '-':<18} {task_id[:8]:<9} {details}")
        record(event_type, task_id, task_kind, details)

    state.add_event = add_and_print  # type: ignore[method-assign]


async def _run_verbose(config: SimConfig, state: SimulationState, runner: SimulationRunner) -> None:
    _echo_events(state)
    print(f"\noutbox-sim [{config.scenario}] verbose")
    print(
        f"   {config.count} tasks over {config.conversations} conversations, "
        f"{config.max_parallel} in parallel, latency {config.latency_ms}ms, "
        f"errors {config.error_rate:.0%}\n"
    )
    print(f"{'ELAPSED':>10} {'':1} {'EVENT':<10} {'KIND':<18} {'TASK':<9} DETAILS")
    await _drive(runner)
    print()


async def _run_tui(config: SimConfig, state: SimulationState, runner: SimulationRunner) -> None:
    watch = StallWatch(runner, state, config.stall_timeout)
    display = SimulatorDisplay(state)

    async def refresh() -> None:
        while not watch.tick(0.1):
            display.refresh()
            await asyncio.sleep(0.1)

    with display:
        await _drive(runner, refresh)
        display.refresh()


async def _run_plain(config: SimConfig, state: SimulationState, runner: SimulationRunner) -> None:
    watch = StallWatch(runner, state, config.stall_timeout)
    print(f"\noutbox-sim [{config.scenario}]")
    print(f"   {config.count} tasks, latency {config.latency_ms}ms, errors {config.error_rate:.0%}\n")

    async def report() -> None:
        warned = False
        while True:
            print_simple_stats(state)
            if watch.tick(0.5):
                print(f"\nStalled for {config.stall_timeout}s, stopping.")
                return
            if state.blocked_info and not warned:
                warned = True
                print(f"\n{len(state.blocked_info)} task(s) waiting with nothing running:")
                for item in state.blocked_info[:5]:
                    print(f"    {item['task'].kind.value}: {item['reason']} ({item['details']})")
            await asyncio.sleep(0.5)

    await _drive(runner, report)
    print_simple_stats(state)
    print("\n")


async def run_with_display(config: SimConfig, use_tui: bool = True, verbose: bool = False) -> None:
    """
    Run one simulation and render it.

    Args:
        config: Simulation configuration.
        use_tui: Render the live Rich layout. Ignored when verbose.
        verbose: Print one line per event instead of a live view.
    """
    state = SimulationState()
    runner = SimulationRunner(config, state)

    if verbose:
        await _run_verbose(config, state, runner)
    elif use_tui:
        await _run_tui(config, state, runner)
    else:
        await _run_plain(config, state, runner)

    print_final_summary(state)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="outbox-sim",
        description="Drive the outbox task queue with simulated chat traffic.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  outbox-sim --count 100 --latency 50
  outbox-sim --count 200 --conversations 20 --parallel 4
  outbox-sim --count 50 --error-rate 0.2 --duration 30
  outbox-sim --scenario single_thread --count 10 --verbose
  outbox-sim --db outbox.db --count 20   # resumable across runs
  outbox-sim --list-scenarios
        """,
    )
    parser.add_argument("--scenario", default="mixed", choices=sorted(SCENARIOS),
                        help="workload pattern (default: mixed)")
    parser.add_argument("--list-scenarios", action="store_true",
                        help="show the available scenarios and exit")

    workload = parser.add_argument_group("workload")
    workload.add_argument("--count", "-n", type=int, default=100,
                          help="tasks to enqueue (default: 100)")
    workload.add_argument("--conversations", type=int, default=5,
                          help="conversations the tasks are spread over (default: 5)")
    workload.add_argument("--submit-rate", "-s", type=float, default=None,
                          help="enqueue this many tasks per second instead of all at once")
    workload.add_argument("--cancel-rate", type=float, default=0.0,
                          help="share of tasks cancelled right after enqueue (default: 0)")
    workload.add_argument("--parallel", "-p", type=int, default=2,
                          help="conversations allowed to run at once (default: 2)")
    workload.add_argument("--image-mode", choices=IMAGE_GENERATION_MODES, default="pipeline",
                          help="how generate_image tasks run (default: pipeline)")

    server = parser.add_argument_group("simulated server")
    server.add_argument("--latency", "-l", type=int, default=100,
                        help="base response time in ms (default: 100)")
    server.add_argument("--jitter", "-j", type=float, default=0.2,
                        help="latency spread as a fraction, 0.2 = ±20%% (default: 0.2)")
    server.add_argument("--outliers", type=float, default=0.0,
                        help="probability of a slow response (default: 0)")
    server.add_argument("--outlier-mult", type=float, default=5.0,
                        help="how much slower an outlier is (default: 5.0)")
    server.add_argument("--error-rate", "-e", type=float, default=0.0,
                        help="probability that a server call fails (default: 0)")

    run = parser.add_argument_group("run")
    run.add_argument("--db", default=":memory:",
                     help="SQLite file holding the queue snapshot (default: in-memory)")
    run.add_argument("--duration", "-d", type=float, default=None,
                     help="stop after this many seconds")
    run.add_argument("--timeout", type=float, default=None,
                     help="stop after this many seconds without progress")
    run.add_argument("--seed", type=int, default=None,
                     help="seed the random generator for repeatable runs")
    run.add_argument("--no-tui", action="store_true",
                     help="print periodic progress lines instead of the live view")
    run.add_argument("--verbose", "-v", action="store_true",
                     help="print every event and library debug logs")
    return parser


def config_from_args(args: argparse.Namespace) -> SimConfig:
    return SimConfig(
        count=args.count,
        conversations=args.conversations,
        latency_ms=args.latency,
        latency_jitter=args.jitter,
        outlier_chance=args.outliers,
        outlier_multiplier=args.outlier_mult,
        error_rate=args.error_rate,
        cancel_rate=args.cancel_rate,
        duration=args.duration,
        db_path=args.db,
        max_parallel=args.parallel,
        submit_rate=args.submit_rate,
        image_generation_mode=args.image_mode,
        scenario=args.scenario,
        stall_timeout=args.timeout,
    )


async def _until_signal(work: Awaitable[None]) -> bool:
    """Await work unless SIGINT/SIGTERM arrives first. Returns True if interrupted."""
    interrupted = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, interrupted.set)

    job = asyncio.ensure_future(work)
    waiter = asyncio.create_task(interrupted.wait())
    await asyncio.wait({job, waiter}, return_when=asyncio.FIRST_COMPLETED)

    if not job.done():
        job.cancel()
        await asyncio.gather(job, return_exceptions=True)
        return True
    waiter.cancel()
    job.result()
    return False


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.list_scenarios:
        print()
        for info in list_scenarios():
            print(f"  {info.name:<15} {info.description}")
        print()
        sys.exit(0)

    if args.parallel < 1:
        parser.error("--parallel must be at least 1")
    if args.conversations < 1:
        parser.error("--conversations must be at least 1")

    configure_logging(verbose=args.verbose)
    if args.seed is not None:
        random.seed(args.seed)

    config = config_from_args(args)
    use_tui = not args.no_tui and Console().is_terminal

    try:
        interrupted = asyncio.run(
            _until_signal(run_with_display(config, use_tui=use_tui, verbose=args.verbose))
        )
    except KeyboardInterrupt:
        interrupted = True
    if interrupted:
        print("\nInterrupted.")
        sys.exit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    main()
