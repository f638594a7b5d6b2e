"""
rr_sched_sim.py
--------------------
**SUMMARY**:

This module implements a tick-driven simulation of a preemptive round-robin
CPU scheduler governing a fixed set of independent workloads.

• **Workloads:** Each `WorkloadUnit` is an autonomous SimPy process with a
  private, randomly drawn burst length. It idles on its own run mailbox and
  consumes one tick of work per "run" message. When its burst is used up it
  either exits, or first asks the dispatcher for an I/O block.

• **Control blocks and ready queue:** Scheduling state lives in a
  `ControlBlockTable` of `PCB` records (state, remaining quantum, remaining
  block time, accumulated ready wait) together with a FIFO `ReadyQueue` of
  workload ids. A membership flag on each PCB keeps ids unique in the queue.

• **Clock:** A `SimulationClock` fires at a fixed period. Ticks are latched,
  so a tick that fires while the previous one is still unconsumed is dropped
  rather than queued.

• **Dispatcher:** The `Dispatcher` owns the table, the queue and the
  id -> unit mapping. It waits for either a tick or a notification from a
  unit. Notifications only latch state (exit marks the PCB done, an I/O
  request sets a flag); all queue work happens inside the tick, which runs
  the nine ordered steps: clear a finished runner, age READY workloads, wake
  sleepers, apply a latched I/O block, charge the running quantum, refill all
  quanta once the whole cohort is exhausted, dispatch from the queue, emit a
  snapshot and finally send the runner one "run" message.

• **Reporting:** A `Reporter` prints one trace line per tick and a final
  summary (quantum, elapsed ticks, average ready wait). A
  `StatisticsCollector` keeps counters for dispatches, preemptions, quantum
  refreshes and I/O blocks.

Usage example:

```
result = simulate(quantum=3)
print(result.total_ticks, result.average_ready_wait)
```

or from the shell: ``rr-sched-sim 3``.
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, Iterator, List, Optional, Sequence, TextIO
import argparse
import logging
import random
import sys

import simpy
import simpy.rt

logger = logging.getLogger(__name__)

NUM_WORKLOADS = 10
TICK_PERIOD = 1.0
BURST_RANGE = (1, 10)  # inclusive, ticks of work per workload
BLOCK_RANGE = (1, 5)  # inclusive, ticks spent SLEEPING per I/O block

Sampler = Callable[[random.Random], int]
Chooser = Callable[[random.Random], bool]


def default_burst(rng: random.Random) -> int:
    return rng.randint(*BURST_RANGE)


def default_block(rng: random.Random) -> int:
    return rng.randint(*BLOCK_RANGE)


def default_io_choice(rng: random.Random) -> bool:
    return rng.random() < 0.5


# --- Errors ---
class SchedulerError(Exception):
    """Base class for errors that abort a simulation run."""


class ConfigurationError(SchedulerError, ValueError):
    """Raised for invalid settings before any tick is processed."""


class WorkloadLaunchError(SchedulerError, RuntimeError):
    """Raised when a workload unit cannot be instantiated."""


# --- Scheduling state ---
class State(Enum):
    READY = "R"
    RUNNING = "X"
    SLEEPING = "S"
    DONE = "D"


@dataclass
class PCB:
    """Scheduling record for one workload.

    Attributes
    ----------
    wid: Stable workload index in [0, N).
    state: Current scheduling state.
    quantum_remaining: Ticks left before forced preemption.
    sleep_remaining: Ticks left in the current I/O block.
    ready_wait_ticks: Ticks spent in READY so far (never decreases).
    in_ready_queue: True while the id sits in the ready queue.
    """

    wid: int
    state: State = State.READY
    quantum_remaining: int = 0
    sleep_remaining: int = 0
    ready_wait_ticks: int = 0
    in_ready_queue: bool = False


class ReadyQueue:
    """FIFO admission queue of workload ids."""

    def __init__(self):
        self.queue: Deque[int] = deque()

    def push(self, wid: int) -> None:
        self.queue.append(wid)

    def pop(self) -> Optional[int]:
        """Remove and return the id at the head of the queue, if any."""
        if self.queue:
            return self.queue.popleft()
        return None

    def is_empty(self) -> bool:
        return not self.queue

    def ids(self) -> List[int]:
        return list(self.queue)

    def __len__(self) -> int:
        return len(self.queue)


class ControlBlockTable:
    """Fixed-size table of PCBs plus the ready queue they feed.

    Only `promote_to_ready` and `demote_to_sleep` put ids into the queue or
    clear their membership flag on the scheduler's side; `next_runnable`
    clears the flag of every id it pops.
    """

    def __init__(self, size: int, quantum: int):
        self.quantum = quantum
        self.ready_queue = ReadyQueue()
        self.pcbs: List[PCB] = []
        for wid in range(size):
            self.pcbs.append(PCB(wid=wid, quantum_remaining=quantum))
            self.promote_to_ready(wid)

    def __getitem__(self, wid: int) -> PCB:
        return self.pcbs[wid]

    def __iter__(self) -> Iterator[PCB]:
        return iter(self.pcbs)

    def __len__(self) -> int:
        return len(self.pcbs)

    def promote_to_ready(self, wid: int) -> None:
        pcb = self.pcbs[wid]
        if pcb.state is State.DONE:
            return
        pcb.state = State.READY
        if pcb.quantum_remaining > 0 and not pcb.in_ready_queue:
            self.ready_queue.push(wid)
            pcb.in_ready_queue = True

    def demote_to_sleep(self, wid: int, duration: int) -> None:
        pcb = self.pcbs[wid]
        if pcb.state is State.DONE:
            return
        pcb.state = State.SLEEPING
        pcb.sleep_remaining = duration
        pcb.in_ready_queue = False

    def mark_done(self, wid: int) -> None:
        """Record termination. A stale queue entry is skipped at dispatch."""
        pcb = self.pcbs[wid]
        pcb.state = State.DONE
        pcb.sleep_remaining = 0
        pcb.in_ready_queue = False

    def all_done(self) -> bool:
        return all(pcb.state is State.DONE for pcb in self.pcbs)

    def quanta_exhausted(self) -> bool:
        """True when every workload that is not DONE has a zero quantum."""
        return all(
            pcb.quantum_remaining == 0
            for pcb in self.pcbs
            if pcb.state is not State.DONE
        )

    def refill_quanta(self) -> None:
        for pcb in self.pcbs:
            if pcb.state is State.DONE:
                continue
            pcb.quantum_remaining = self.quantum
            if pcb.state is State.READY:
                self.promote_to_ready(pcb.wid)

    def next_runnable(self) -> Optional[int]:
        """Pop ids until one is READY with quantum left; others are discarded."""
        while not self.ready_queue.is_empty():
            wid = self.ready_queue.pop()
            pcb = self.pcbs[wid]
            pcb.in_ready_queue = False
            if pcb.state is State.READY and pcb.quantum_remaining > 0:
                return wid
            logger.debug("Skipping stale ready entry P%02d (%s)", wid, pcb.state.name)
        return None

    def average_ready_wait(self) -> float:
        if not self.pcbs:
            return 0.0
        return sum(pcb.ready_wait_ticks for pcb in self.pcbs) / len(self.pcbs)


# --- Notifications ---
class Signal(Enum):
    RUN = "run"
    IO_REQUEST = "io_request"
    EXIT = "exit"


@dataclass(frozen=True)
class Notification:
    signal: Signal
    wid: int


# --- Workloads ---
class WorkloadUnit:
    """An autonomous workload driven one tick at a time by the dispatcher.

    The unit owns a private random generator and burst counter. It never
    touches dispatcher state; it only reads its run mailbox and writes
    IO_REQUEST / EXIT notifications to the dispatcher's inbox.
    """

    def __init__(
        self,
        env: simpy.Environment,
        wid: int,
        outbox: simpy.Store,
        burst_sampler: Sampler = default_burst,
        io_chooser: Chooser = default_io_choice,
        terminate_after_io: bool = False,
    ):
        self.env = env
        self.wid = wid
        self.outbox = outbox
        self.io_chooser = io_chooser
        self.terminate_after_io = terminate_after_io
        self.rng = random.Random()
        burst = burst_sampler(self.rng)
        if not isinstance(burst, int) or burst <= 0:
            raise WorkloadLaunchError(
                f"workload P{wid:02d} drew an invalid burst length {burst!r}"
            )
        self.remaining = burst
        self.ticks_consumed = 0
        self.io_requested = False
        self.finished = False
        self.mailbox = simpy.Store(env)
        logger.debug("Launched P%02d with burst %d", wid, burst)
        self.process = env.process(self.run_loop())

    def notify_run(self) -> None:
        self.mailbox.put(Signal.RUN)

    def run_loop(self):
        while True:
            yield self.mailbox.get()
            self.ticks_consumed += 1
            if self.io_requested:
                # Resumed after its I/O block; this tick completes it.
                self._exit()
                return
            self.remaining -= 1
            if self.remaining > 0:
                continue
            if self.io_chooser(self.rng):
                self.io_requested = True
                self.outbox.put(Notification(Signal.IO_REQUEST, self.wid))
                if not self.terminate_after_io:
                    continue
            self._exit()
            return

    def _exit(self) -> None:
        self.finished = True
        self.outbox.put(Notification(Signal.EXIT, self.wid))


# --- Clock ---
class SimulationClock:
    """Periodic tick source with a single latched, coalescing tick event."""

    def __init__(self, env: simpy.Environment, period: float = TICK_PERIOD):
        self.env = env
        self.period = period
        self.fired = 0
        self.coalesced = 0
        self._pending = env.event()
        self.process = env.process(self.run_loop())

    def run_loop(self):
        while True:
            yield self.env.timeout(self.period)
            if self._pending.triggered:
                self.coalesced += 1
                logger.debug("Tick at %.1f coalesced", self.env.now)
                continue
            self.fired += 1
            self._pending.succeed(self.env.now)

    def next_tick(self) -> simpy.Event:
        return self._pending

    def acknowledge(self) -> None:
        """Consume the latched tick so the next period can fire again."""
        if self._pending.triggered:
            self._pending = self.env.event()


# --- Statistics and reporting ---
@dataclass(frozen=True)
class WorkloadView:
    state: State
    quantum_remaining: int
    sleep_remaining: int
    ready_wait_ticks: int


@dataclass(frozen=True)
class Snapshot:
    tick: int
    running: Optional[int]
    workloads: List[WorkloadView]


class StatisticsCollector:
    """Collects scheduling counters for one simulation run."""

    def __init__(self):
        self.dispatches: int = 0
        self.preemptions: int = 0
        self.io_blocks: int = 0
        self.io_dropped: int = 0
        self.refresh_ticks: List[int] = []

    def record_refresh(self, tick: int) -> None:
        self.refresh_ticks.append(tick)

    def calculate_averages(self, table: ControlBlockTable) -> Dict[str, float]:
        return {
            "average_ready_wait": table.average_ready_wait(),
            "dispatches": self.dispatches,
            "preemptions": self.preemptions,
            "quantum_refreshes": len(self.refresh_ticks),
            "io_blocks": self.io_blocks,
            "io_dropped": self.io_dropped,
        }


class Reporter:
    """Prints the per-tick trace and the final summary."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream

    def _write(self, line: str) -> None:
        print(line, file=self.stream or sys.stdout, flush=True)

    @staticmethod
    def format_tick(snapshot: Snapshot) -> str:
        running = "none" if snapshot.running is None else f"P{snapshot.running:02d}"
        cells = []
        for wid, view in enumerate(snapshot.workloads):
            if view.state is State.SLEEPING:
                detail = f"tq={view.quantum_remaining},io={view.sleep_remaining}"
            else:
                detail = f"tq={view.quantum_remaining}"
            cells.append(f"P{wid:02d}:{view.state.value}({detail})")
        return f"[tick {snapshot.tick}] running={running} | " + " ".join(cells)

    def tick(self, snapshot: Snapshot) -> None:
        self._write(self.format_tick(snapshot))

    def summary(self, result: "SimulationResult") -> None:
        self._write("")
        self._write("=== RESULT ===")
        self._write(f"TIME_QUANTUM = {result.quantum}")
        self._write(f"Total ticks = {result.total_ticks}")
        self._write(f"Average READY wait (ticks) = {result.average_ready_wait:.2f}")


# --- Dispatcher ---
class Dispatcher:
    """Tick-driven round-robin dispatcher owning all scheduling state."""

    def __init__(
        self,
        env: simpy.Environment,
        clock: SimulationClock,
        quantum: int,
        num_workloads: int = NUM_WORKLOADS,
        reporter: Optional[Reporter] = None,
        burst_sampler: Sampler = default_burst,
        io_chooser: Chooser = default_io_choice,
        block_sampler: Sampler = default_block,
        terminate_after_io: bool = False,
    ):
        self.env = env
        self.clock = clock
        self.reporter = reporter
        self.block_sampler = block_sampler
        self.rng = random.Random()
        self.table = ControlBlockTable(num_workloads, quantum)
        self.stats = StatisticsCollector()
        self.inbox = simpy.Store(env)
        self.running: Optional[int] = None
        self.io_request_latched = False
        self.tick = 0
        self.snapshots: List[Snapshot] = []
        # Any launch failure propagates and aborts the run before the first tick.
        self.units: Dict[int, WorkloadUnit] = {}
        for wid in range(num_workloads):
            self.units[wid] = WorkloadUnit(
                env,
                wid,
                self.inbox,
                burst_sampler=burst_sampler,
                io_chooser=io_chooser,
                terminate_after_io=terminate_after_io,
            )
        self.process = env.process(self.run_loop())

    def run_loop(self):
        notice = self.inbox.get()
        while not self.table.all_done():
            yield notice | self.clock.next_tick()
            if notice.triggered:
                self.on_notification(notice.value)
                notice = self.inbox.get()
                continue
            self.clock.acknowledge()
            self.on_tick()

    # --- Event handlers ---
    def on_notification(self, notification: Notification) -> None:
        """Latch a unit's notification; never touches the ready queue."""
        if notification.signal is Signal.EXIT:
            logger.info("P%02d exited", notification.wid)
            self.table.mark_done(notification.wid)
        elif notification.signal is Signal.IO_REQUEST:
            logger.info("P%02d requested I/O", notification.wid)
            self.io_request_latched = True

    def on_tick(self) -> Snapshot:
        """Process one tick. The step order below must not change."""
        self.tick += 1
        table = self.table

        # Runner exited since the last tick
        if self.running is not None and table[self.running].state is State.DONE:
            self.running = None

        for pcb in table:
            if pcb.state is State.READY:
                pcb.ready_wait_ticks += 1

        for pcb in table:
            if pcb.state is State.SLEEPING:
                pcb.sleep_remaining -= 1
                if pcb.sleep_remaining <= 0:
                    pcb.sleep_remaining = 0
                    table.promote_to_ready(pcb.wid)

        # The latch is consumed whether or not anything is running
        if self.io_request_latched:
            self.io_request_latched = False
            self._apply_io_block()

        if self.running is not None:
            pcb = table[self.running]
            pcb.quantum_remaining -= 1
            if pcb.quantum_remaining <= 0:
                pcb.quantum_remaining = 0
                pcb.state = State.READY
                table.promote_to_ready(pcb.wid)
                logger.info("Tick %d: P%02d preempted", self.tick, pcb.wid)
                self.stats.preemptions += 1
                self.running = None

        # Epoch boundary, the whole live cohort is refilled at once
        if table.quanta_exhausted():
            table.refill_quanta()
            logger.info("Tick %d: quantum refresh", self.tick)
            self.stats.record_refresh(self.tick)

        if self.running is None:
            wid = table.next_runnable()
            if wid is not None:
                table[wid].state = State.RUNNING
                self.running = wid
                self.stats.dispatches += 1
                logger.info("Tick %d: dispatching P%02d", self.tick, wid)

        snapshot = self.snapshot()
        self.snapshots.append(snapshot)
        if self.reporter is not None:
            self.reporter.tick(snapshot)

        if self.running is not None:
            self.units[self.running].notify_run()
        return snapshot

    def _apply_io_block(self) -> None:
        if self.running is None:
            # Only one request is latched between ticks; without a runner it is lost.
            logger.info("Tick %d: I/O request dropped, nothing running", self.tick)
            self.stats.io_dropped += 1
            return
        duration = self.block_sampler(self.rng)
        self.table.demote_to_sleep(self.running, duration)
        logger.info("Tick %d: P%02d blocked for %d ticks", self.tick, self.running, duration)
        self.stats.io_blocks += 1
        self.running = None

    def snapshot(self) -> Snapshot:
        views = [
            WorkloadView(
                state=pcb.state,
                quantum_remaining=pcb.quantum_remaining,
                sleep_remaining=pcb.sleep_remaining,
                ready_wait_ticks=pcb.ready_wait_ticks,
            )
            for pcb in self.table
        ]
        return Snapshot(tick=self.tick, running=self.running, workloads=views)


# --- Configuration and entry points ---
@dataclass
class SimulationConfig:
    quantum: int
    num_workloads: int = NUM_WORKLOADS
    tick_period: float = TICK_PERIOD
    realtime: bool = False
    terminate_after_io: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.quantum, int) or self.quantum <= 0:
            raise ConfigurationError("TIME_QUANTUM must be positive.")
        if self.num_workloads <= 0:
            raise ConfigurationError("number of workloads must be positive")
        if self.tick_period <= 0:
            raise ConfigurationError("tick period must be strictly positive")


@dataclass
class SimulationResult:
    quantum: int
    total_ticks: int
    ready_wait_ticks: List[int]
    snapshots: List[Snapshot] = field(repr=False)
    refresh_ticks: List[int] = field(default_factory=list)
    stats: Dict[str, float] = field(default_factory=dict)

    @property
    def average_ready_wait(self) -> float:
        if not self.ready_wait_ticks:
            return 0.0
        return sum(self.ready_wait_ticks) / len(self.ready_wait_ticks)


def simulate(
    quantum: int,
    num_workloads: int = NUM_WORKLOADS,
    tick_period: float = TICK_PERIOD,
    realtime: bool = False,
    terminate_after_io: bool = False,
    reporter: Optional[Reporter] = None,
    burst_sampler: Sampler = default_burst,
    io_chooser: Chooser = default_io_choice,
    block_sampler: Sampler = default_block,
) -> SimulationResult:
    """Run the round-robin simulation until every workload is DONE.

    Parameters
    ----------
    quantum : int
        Ticks a workload may run before forced preemption (> 0).
    num_workloads : int, optional
        Number of workload units to launch.
    tick_period : float, optional
        Clock period in simulation time units.
    realtime : bool, optional
        Pace the clock against the wall clock (one time unit per second).
    terminate_after_io : bool, optional
        Make a unit exit right after its I/O request instead of sleeping
        and resuming.
    reporter : Reporter, optional
        Receives one snapshot per tick and the final summary.
    burst_sampler, io_chooser, block_sampler : callable, optional
        Draw burst lengths, the exit path and block durations from a
        `random.Random`.

    Returns
    -------
    SimulationResult
        Elapsed ticks, per-workload ready waits, snapshots and counters.
    """
    config = SimulationConfig(
        quantum=quantum,
        num_workloads=num_workloads,
        tick_period=tick_period,
        realtime=realtime,
        terminate_after_io=terminate_after_io,
    )
    if config.realtime:
        env = simpy.rt.RealtimeEnvironment(factor=1.0, strict=False)
    else:
        env = simpy.Environment()
    clock = SimulationClock(env, period=config.tick_period)
    dispatcher = Dispatcher(
        env,
        clock,
        quantum=config.quantum,
        num_workloads=config.num_workloads,
        reporter=reporter,
        burst_sampler=burst_sampler,
        io_chooser=io_chooser,
        block_sampler=block_sampler,
        terminate_after_io=config.terminate_after_io,
    )
    env.run(until=dispatcher.process)

    result = SimulationResult(
        quantum=config.quantum,
        total_ticks=dispatcher.tick,
        ready_wait_ticks=[pcb.ready_wait_ticks for pcb in dispatcher.table],
        snapshots=dispatcher.snapshots,
        refresh_ticks=list(dispatcher.stats.refresh_ticks),
        stats=dispatcher.stats.calculate_averages(dispatcher.table),
    )
    if reporter is not None:
        reporter.summary(result)
    return result


class _UsageParser(argparse.ArgumentParser):
    """Argument parser that exits with status 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = _UsageParser(
        prog="rr-sched-sim",
        description="Simulate a tick-driven round-robin CPU scheduler.",
    )
    parser.add_argument("quantum", type=int, help="Time quantum in ticks (positive integer).")
    parser.add_argument("--workloads", type=int, default=NUM_WORKLOADS, help="Number of workloads.")
    parser.add_argument(
        "--tick-period",
        type=float,
        default=TICK_PERIOD,
        help="Clock period (seconds when --realtime is set).",
    )
    parser.add_argument("--realtime", action="store_true", help="Pace ticks against the wall clock.")
    parser.add_argument(
        "--terminate-after-io",
        action="store_true",
        help="Workloads exit right after requesting I/O instead of sleeping and resuming.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log scheduling events to stderr.")
    args = parser.parse_args(argv)
    if args.quantum <= 0:
        parser.error("TIME_QUANTUM must be positive.")
    if args.workloads <= 0:
        parser.error("--workloads must be positive.")
    if args.tick_period <= 0:
        parser.error("--tick-period must be positive.")
    return args


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_arguments(argv)
    logging.basicConfig(
        format="%(levelname)s: %(message)s",
        level=logging.INFO if args.verbose else logging.WARNING,
    )
    try:
        simulate(
            quantum=args.quantum,
            num_workloads=args.workloads,
            tick_period=args.tick_period,
            realtime=args.realtime,
            terminate_after_io=args.terminate_after_io,
            reporter=Reporter(),
        )
    except SchedulerError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
