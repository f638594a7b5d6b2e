"""Scenario tests for the tick-driven dispatcher.

Burst lengths, exit paths and block durations are injected so each
scenario has a fixed, hand-checked timeline.
"""

import io

import pytest

from rr_sched_sim import (
    ConfigurationError,
    Reporter,
    State,
    WorkloadLaunchError,
    simulate,
)


def fixed(*values):
    """Sampler handing out the given values in call order."""
    it = iter(values)
    return lambda rng: next(it)


def run_states(result, wid):
    return [snap.workloads[wid].state for snap in result.snapshots]


class TestScenarioNoPreemption:
    """quantum=3, ten workloads of three ticks each, no I/O."""

    @pytest.fixture
    def result(self):
        return simulate(
            quantum=3,
            num_workloads=10,
            burst_sampler=lambda rng: 3,
            io_chooser=lambda rng: False,
        )

    def test_total_ticks(self, result) -> None:
        assert result.total_ticks == 30

    def test_each_workload_runs_three_consecutive_ticks(self, result) -> None:
        running = [snap.running for snap in result.snapshots]
        expected = [wid for wid in range(10) for _ in range(3)]
        assert running == expected

    def test_ready_wait_follows_queue_position(self, result) -> None:
        assert result.ready_wait_ticks == [3 * wid + 1 for wid in range(10)]
        assert result.average_ready_wait == pytest.approx(14.5)

    def test_no_preemption_or_refresh(self, result) -> None:
        assert result.stats["preemptions"] == 0
        assert result.stats["quantum_refreshes"] == 0
        assert result.stats["dispatches"] == 10


class TestScenarioIoBlock:
    """A single workload blocks for two ticks after its burst."""

    @pytest.fixture
    def result(self):
        return simulate(
            quantum=5,
            num_workloads=1,
            burst_sampler=lambda rng: 2,
            io_chooser=lambda rng: True,
            block_sampler=lambda rng: 2,
        )

    def test_sleeps_exactly_two_ticks_then_resumes(self, result) -> None:
        # Request issued after tick 2, so ticks 3 and 4 are spent sleeping.
        assert run_states(result, 0) == [
            State.RUNNING,
            State.RUNNING,
            State.SLEEPING,
            State.SLEEPING,
            State.RUNNING,
        ]
        assert [snap.workloads[0].sleep_remaining for snap in result.snapshots[2:4]] == [2, 1]

    def test_resumed_workload_keeps_its_quantum(self, result) -> None:
        assert result.snapshots[-1].workloads[0].quantum_remaining == 4

    def test_counters(self, result) -> None:
        assert result.total_ticks == 5
        assert result.ready_wait_ticks == [1]
        assert result.stats["io_blocks"] == 1
        assert result.stats["io_dropped"] == 0


class TestPreemptionAndRefresh:
    """quantum=2 with bursts 3 and 1 forces one preemption and one refill."""

    @pytest.fixture
    def result(self):
        return simulate(
            quantum=2,
            num_workloads=2,
            burst_sampler=fixed(3, 1),
            io_chooser=lambda rng: False,
        )

    def test_dispatch_order(self, result) -> None:
        assert [snap.running for snap in result.snapshots] == [0, 0, 1, 0]

    def test_preempted_workload_waits_with_empty_quantum(self, result) -> None:
        third = result.snapshots[2].workloads[0]
        assert third.state is State.READY
        assert third.quantum_remaining == 0

    def test_refresh_fires_when_cohort_exhausted(self, result) -> None:
        assert result.stats["preemptions"] == 1
        assert result.stats["quantum_refreshes"] == 1
        assert result.snapshots[3].workloads[0].quantum_remaining == 2

    def test_totals(self, result) -> None:
        assert result.total_ticks == 4
        assert result.ready_wait_ticks == [2, 3]
        assert result.average_ready_wait == pytest.approx(2.5)


class TestTerminateAfterIo:
    """With the legacy coupling the latched request finds nothing to block."""

    def test_request_is_dropped(self) -> None:
        result = simulate(
            quantum=4,
            num_workloads=2,
            burst_sampler=fixed(2, 1),
            io_chooser=fixed(True, False),
            block_sampler=lambda rng: 3,
            terminate_after_io=True,
        )
        assert [snap.running for snap in result.snapshots] == [0, 0, 1]
        assert result.stats["io_dropped"] == 1
        assert result.stats["io_blocks"] == 0
        assert State.SLEEPING not in run_states(result, 0)


class TestRandomRunInvariants:
    """Properties that hold for any draw of bursts, exits and blocks."""

    @pytest.fixture(params=[1, 2, 3, 5])
    def result(self, request):
        return simulate(quantum=request.param, num_workloads=8)

    def test_only_last_runner_is_live_in_final_snapshot(self, result) -> None:
        final = result.snapshots[-1]
        live = [view.state for view in final.workloads if view.state is not State.DONE]
        assert live in ([], [State.RUNNING])

    def test_at_most_one_running(self, result) -> None:
        for snap in result.snapshots:
            running = [wid for wid, view in enumerate(snap.workloads) if view.state is State.RUNNING]
            assert len(running) <= 1
            assert running == ([] if snap.running is None else [snap.running])

    def test_done_is_final(self, result) -> None:
        for wid in range(8):
            states = run_states(result, wid)
            if State.DONE in states:
                first = states.index(State.DONE)
                assert set(states[first:]) == {State.DONE}

    def test_ready_wait_is_nondecreasing(self, result) -> None:
        for wid in range(8):
            waits = [snap.workloads[wid].ready_wait_ticks for snap in result.snapshots]
            assert waits == sorted(waits)

    def test_refresh_iff_cohort_exhausted(self, result) -> None:
        assert len(result.refresh_ticks) == result.stats["quantum_refreshes"]
        for snap in result.snapshots:
            live = [view.quantum_remaining for view in snap.workloads if view.state is not State.DONE]
            if snap.tick in result.refresh_ticks:
                assert live == [result.quantum] * len(live)
            else:
                assert any(quantum > 0 for quantum in live)

    def test_counters_stay_in_range(self, result) -> None:
        for snap in result.snapshots:
            for view in snap.workloads:
                if view.state is State.SLEEPING:
                    assert view.sleep_remaining > 0
                else:
                    assert view.sleep_remaining == 0
                assert 0 <= view.quantum_remaining <= result.quantum


class TestReporting:
    """Trace lines and summary follow the fixed text format."""

    def test_trace_and_summary(self) -> None:
        stream = io.StringIO()
        simulate(
            quantum=2,
            num_workloads=2,
            burst_sampler=fixed(3, 1),
            io_chooser=lambda rng: False,
            reporter=Reporter(stream),
        )
        lines = stream.getvalue().splitlines()
        assert lines[0] == "[tick 1] running=P00 | P00:X(tq=2) P01:R(tq=2)"
        assert lines[2] == "[tick 3] running=P01 | P00:R(tq=0) P01:X(tq=2)"
        assert lines[-4:] == [
            "=== RESULT ===",
            "TIME_QUANTUM = 2",
            "Total ticks = 4",
            "Average READY wait (ticks) = 2.50",
        ]

    def test_sleeping_line_shows_block_time(self) -> None:
        stream = io.StringIO()
        simulate(
            quantum=5,
            num_workloads=1,
            burst_sampler=lambda rng: 2,
            io_chooser=lambda rng: True,
            block_sampler=lambda rng: 2,
            reporter=Reporter(stream),
        )
        lines = stream.getvalue().splitlines()
        assert lines[2] == "[tick 3] running=none | P00:S(tq=4,io=2)"


class TestFailures:
    """Bad settings and launch failures abort before the first tick."""

    @pytest.mark.parametrize("quantum", [0, -1])
    def test_non_positive_quantum(self, quantum) -> None:
        with pytest.raises(ConfigurationError, match="must be positive"):
            simulate(quantum=quantum)

    def test_launch_failure_aborts(self) -> None:
        stream = io.StringIO()
        with pytest.raises(WorkloadLaunchError):
            simulate(
                quantum=2,
                num_workloads=3,
                burst_sampler=fixed(2, 0, 2),
                reporter=Reporter(stream),
            )
        assert stream.getvalue() == ""
