"""
Tests for the per-target state machine and the orchestrator.

Probes are scripted async callables, so these run without any network.
"""
import asyncio

import pytest

from probe import (
    InFlightCounter,
    Orchestrator,
    Status,
    Target,
    TargetRecord,
    TransitionError,
    average_ms,
)
from tests.helpers import ScriptedProbe, fail, ok, timeout

ALPHA = Target(id="vendor/alpha", label="Alpha", tier="S")


def run(coro):
    return asyncio.run(coro)


async def _orchestrate(targets, probe, **kw):
    orch = Orchestrator(targets, probe, **kw)
    await orch.run()
    return orch


class TestTargetRecord:
    def test_starts_pending(self):
        rec = TargetRecord(1, ALPHA)
        assert rec.status is Status.PENDING
        assert rec.attempt == 1
        assert rec.measurements == [None, None, None, None]
        assert not rec.outstanding

    def test_mark_up_fills_first_slot_and_opens_followups(self):
        rec = TargetRecord(1, ALPHA)
        rec.mark_up(120)
        assert rec.status is Status.UP
        assert rec.measurements[0] == 120
        assert rec.outstanding == {1, 2, 3}

    def test_retrying_must_advance_attempt(self):
        rec = TargetRecord(1, ALPHA)
        rec.mark_retrying(2)
        with pytest.raises(TransitionError):
            rec.mark_retrying(2)

    @pytest.mark.parametrize("settle", [
        lambda r: r.mark_timeout(),
        lambda r: r.mark_up(10),
        lambda r: r.mark_down("500"),
    ], ids=["timeout", "up", "down"])
    def test_settled_record_cannot_move_again(self, settle):
        rec = TargetRecord(1, ALPHA)
        settle(rec)
        assert rec.status.settled
        with pytest.raises(TransitionError):
            rec.mark_retrying(2)
        with pytest.raises(TransitionError):
            rec.mark_timeout()

    def test_measurement_slot_filled_once(self):
        rec = TargetRecord(1, ALPHA)
        rec.mark_up(100)
        rec.set_measurement(2, 95)
        with pytest.raises(TransitionError):
            rec.set_measurement(2, 80)
        assert rec.measurements == [100, None, 95, None]
        assert rec.outstanding == {1, 3}

    def test_measurement_requires_up(self):
        rec = TargetRecord(1, ALPHA)
        with pytest.raises(TransitionError):
            rec.set_measurement(1, 50)

    def test_down_without_code_defaults_to_err(self):
        rec = TargetRecord(1, ALPHA)
        rec.mark_down(None)
        assert rec.error_code == "ERR"

    def test_view_is_a_detached_copy(self):
        rec = TargetRecord(1, ALPHA)
        rec.mark_up(100)
        view = rec.view()
        rec.set_measurement(1, 200)
        assert view.measurements == (100, None, None, None)
        assert view.outstanding == frozenset({1, 2, 3})


class TestAverage:
    def test_average_of_populated_slots_only(self):
        assert average_ms([100, None, 200, None]) == 150.0

    def test_average_of_nothing(self):
        assert average_ms([None, None]) is None


class TestInFlightCounter:
    def test_add_and_done(self):
        c = InFlightCounter()
        c.add(3)
        c.done()
        assert c.value == 2

    def test_underflow_is_an_error(self):
        with pytest.raises(RuntimeError):
            InFlightCounter().done()


class TestScenarios:
    def test_scenario_a_up_with_four_measurements(self):
        probe = ScriptedProbe({ALPHA.id: [ok(100), ok(120), ok(90), ok(110)]})
        orch = run(_orchestrate([ALPHA], probe))
        view = orch.snapshot().records[0]
        assert view.status is Status.UP
        assert view.measurements == (100, 120, 90, 110)
        assert view.average_ms == 105.0
        assert view.complete
        assert orch.in_flight == 0

    def test_scenario_b_all_attempts_time_out(self):
        probe = ScriptedProbe({ALPHA.id: [timeout()] * 4})
        orch = run(_orchestrate([ALPHA], probe))
        view = orch.snapshot().records[0]
        assert view.status is Status.TIMEOUT
        assert view.measurements == (None, None, None, None)
        assert view.attempt == 4
        assert probe.count(ALPHA.id) == 4

    def test_scenario_c_http_error_is_not_retried(self):
        probe = ScriptedProbe({ALPHA.id: [fail("403")]})
        orch = run(_orchestrate([ALPHA], probe))
        view = orch.snapshot().records[0]
        assert view.status is Status.DOWN
        assert view.error_code == "403"
        assert probe.count(ALPHA.id) == 1

    def test_scenario_d_success_on_third_attempt(self):
        probe = ScriptedProbe({ALPHA.id: [timeout(), timeout(), ok(250), ok(1), ok(2), ok(3)]})
        orch = run(_orchestrate([ALPHA], probe))
        view = orch.snapshot().records[0]
        assert view.status is Status.UP
        assert view.attempt == 3
        assert view.measurements[0] == 250

    def test_max_attempts_is_configurable(self):
        probe = ScriptedProbe({ALPHA.id: [timeout(), timeout()]})
        orch = run(_orchestrate([ALPHA], probe, max_attempts=2))
        assert orch.snapshot().records[0].status is Status.TIMEOUT
        assert probe.count(ALPHA.id) == 2

    def test_failure_after_timeouts_is_down(self):
        probe = ScriptedProbe({ALPHA.id: [timeout(), fail("429")]})
        orch = run(_orchestrate([ALPHA], probe))
        view = orch.snapshot().records[0]
        assert view.status is Status.DOWN
        assert view.error_code == "429"
        assert view.attempt == 2


class TestFollowUps:
    def test_slots_follow_issuance_not_completion(self):
        # Slot 2 finishes last and slot 3 first; values still land by issuance.
        probe = ScriptedProbe({ALPHA.id: [ok(100), (0.05, ok(120)), (0.01, ok(90)), (0.03, ok(110))]})
        orch = run(_orchestrate([ALPHA], probe))
        assert orch.snapshot().records[0].measurements == (100, 120, 90, 110)

    def test_timed_out_followup_leaves_slot_empty(self):
        probe = ScriptedProbe({ALPHA.id: [ok(100), ok(200), timeout(), ok(300)]})
        orch = run(_orchestrate([ALPHA], probe))
        view = orch.snapshot().records[0]
        assert view.status is Status.UP
        assert view.measurements == (100, 200, None, 300)
        assert view.outstanding == frozenset()
        assert view.average_ms == 200.0
        assert not view.complete

    def test_followup_error_response_is_recorded(self):
        probe = ScriptedProbe({ALPHA.id: [ok(100), fail("429", ms=40), ok(60), ok(80)]})
        orch = run(_orchestrate([ALPHA], probe))
        assert orch.snapshot().records[0].measurements == (100, 40, 60, 80)

    def test_followups_are_not_retried(self):
        probe = ScriptedProbe({ALPHA.id: [ok(100), timeout(), timeout(), timeout()]})
        run(_orchestrate([ALPHA], probe))
        assert probe.count(ALPHA.id) == 4

    def test_counter_matches_outstanding_slots(self, targets):
        script = {
            t.id: [(0.01 * i, ok(100)), (0.02, ok(1)), (0.04, ok(2)), (0.06, ok(3))]
            for i, t in enumerate(targets)
        }
        probe = ScriptedProbe(script)
        seen = []

        async def go():
            orch = Orchestrator(targets, probe)
            worker = asyncio.create_task(orch.run())
            while not orch.done.is_set():
                snap = orch.snapshot()
                expected = sum(len(r.outstanding) for r in snap.records if r.status is Status.UP)
                seen.append((snap.in_flight, expected))
                await asyncio.sleep(0.005)
            await worker
            return orch

        orch = run(go())
        assert all(a == b for a, b in seen)
        assert any(a > 0 for a, _ in seen)
        assert orch.in_flight == 0


class TestOrchestrator:
    def test_status_never_returns_to_pending(self):
        history = []
        results = [timeout(), timeout(), ok(50), ok(1), ok(2), ok(3)]

        async def probe(target):
            history.append(orch.records[0].status)
            result = results[len(history) - 1]
            await asyncio.sleep(0)
            return result

        orch = Orchestrator([ALPHA], probe)
        run(orch.run())
        assert history[:3] == [Status.PENDING, Status.RETRYING, Status.RETRYING]
        assert history[3:] == [Status.UP] * 3

    def test_up_is_visible_before_followups_start(self):
        seen = []

        async def probe(target):
            rec = orch.records[0]
            seen.append((rec.status, rec.measurements[0]))
            await asyncio.sleep(0)
            return ok(77)

        orch = Orchestrator([ALPHA], probe)
        run(orch.run())
        assert seen[0] == (Status.PENDING, None)
        assert seen[1:] == [(Status.UP, 77)] * 3

    def test_crashing_target_does_not_affect_others(self, targets):
        good = ScriptedProbe({targets[1].id: [ok(10), ok(11), ok(12), ok(13)]})

        async def probe(target):
            if target.id == targets[0].id:
                raise RuntimeError("boom")
            if target.id == targets[2].id:
                return fail("500")
            return await good(target)

        orch = run(_orchestrate(targets, probe))
        statuses = [r.status for r in orch.snapshot().records]
        assert statuses == [Status.DOWN, Status.UP, Status.DOWN]
        assert orch.records[0].error_code == "ERR"
        assert orch.done.is_set()

    def test_sequence_numbers_follow_input_order(self, targets):
        orch = Orchestrator(targets, ScriptedProbe({}))
        assert [(r.seq, r.target.id) for r in orch.records] == [(i, t.id) for i, t in enumerate(targets, start=1)]

    def test_targets_probe_concurrently(self, targets):
        # Every target sleeps 0.2s; sequential would take 0.6s.
        probe = ScriptedProbe({t.id: [(0.2, fail("503"))] for t in targets})

        async def go():
            loop = asyncio.get_running_loop()
            t0 = loop.time()
            await _orchestrate(targets, probe)
            return loop.time() - t0

        assert run(go()) < 0.45

    def test_on_change_sees_settle_and_followup_completion(self):
        events = []
        probe = ScriptedProbe({ALPHA.id: [ok(10), ok(20), ok(30), ok(40)]})
        orch = Orchestrator([ALPHA], probe, on_change=lambda r: events.append((r.status, len(r.outstanding))))
        run(orch.run())
        assert events == [(Status.UP, 3), (Status.UP, 0)]
