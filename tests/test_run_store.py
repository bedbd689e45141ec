import threading

import pytest

from ai_admin.plan_validation import validate_plan_request
from ai_admin.run_store import RunStore, new_run_id, summarize_payload


def make_plan(count: int = 3):
    actions = [{"type": "research_census", "payload": {"prompt": f"q{i}"}} for i in range(count)]
    result = validate_plan_request({"callerEmail": "admin@example.org", "actions": actions})
    assert result["ok"]
    return result["plan"]


def approved_run(store: RunStore, count: int = 3):
    run = store.create_run(make_plan(count))
    assert store.approve_run(run.run_id, "admin@example.org")["ok"]
    return run.run_id


def event_types(store: RunStore, run_id: str):
    return [event.type for event in store.list_events(run_id)]


def test_create_run_awaits_approval_with_pending_steps(run_store):
    run = run_store.create_run(make_plan(2))
    assert run.run_id.startswith("ai-run-")
    assert run.status == "awaiting_approval"
    assert run.next_action_index == 0
    assert [step.status for step in run.steps] == ["pending", "pending"]
    assert run.steps[0].payload_summary == "prompt=q0"
    assert event_types(run_store, run.run_id) == ["run_created", "run_awaiting_approval"]


def test_run_ids_are_unique_within_a_millisecond(clock):
    ids = {new_run_id(clock()) for _ in range(50)}
    assert len(ids) == 50


def test_snapshots_cannot_mutate_internal_state(run_store):
    run = run_store.create_run(make_plan(1))
    run.status = "completed"
    run.steps[0].status = "completed"
    fresh = run_store.get_run(run.run_id)
    assert fresh.status == "awaiting_approval"
    assert fresh.steps[0].status == "pending"


def test_approve_only_from_awaiting_approval(run_store):
    run_id = approved_run(run_store)
    again = run_store.approve_run(run_id, "admin@example.org")
    assert again["ok"] is False
    assert again["code"] == "invalid_transition"
    assert again["run"].status == "approved"
    assert run_store.get_run(run_id).approved_by == "admin@example.org"


def test_unknown_run_reports_not_found(run_store):
    for result in (
        run_store.approve_run("missing"),
        run_store.pause_run("missing"),
        run_store.resume_run("missing"),
        run_store.stop_run("missing"),
        run_store.start_next_step("missing"),
    ):
        assert result["ok"] is False
        assert result["code"] == "run_not_found"
        assert result["run"] is None


def test_start_requires_approval(run_store):
    run = run_store.create_run(make_plan(1))
    result = run_store.start_next_step(run.run_id)
    assert result["code"] == "run_not_executable"
    assert result["run"].status == "awaiting_approval"


def test_steps_advance_in_order_until_completed(run_store):
    run_id = approved_run(run_store, 3)
    seen = []
    indexes = []
    for _ in range(3):
        started = run_store.start_next_step(run_id)
        assert started["ok"]
        seen.append(started["action"].id)
        done = run_store.complete_step(run_id, started["step_index"], "ok")
        indexes.append(done["run"].next_action_index)
    assert seen == ["step-1", "step-2", "step-3"]
    assert indexes == sorted(indexes) == [1, 2, 3]
    run = run_store.get_run(run_id)
    assert run.status == "completed"
    assert run.completed_at is not None
    assert event_types(run_store, run_id)[-1] == "run_completed"
    assert event_types(run_store, run_id).count("run_started") == 1

    finished = run_store.start_next_step(run_id)
    assert finished["code"] == "run_completed"


def test_completed_only_when_cursor_reaches_end(run_store):
    run_id = approved_run(run_store, 2)
    started = run_store.start_next_step(run_id)
    run = run_store.complete_step(run_id, started["step_index"], "ok")["run"]
    assert run.status == "running"
    assert run.next_action_index == 1


def test_start_on_paused_run_is_rejected_without_moving_cursor(run_store):
    run_id = approved_run(run_store, 3)
    started = run_store.start_next_step(run_id)
    run_store.complete_step(run_id, started["step_index"], "ok")
    paused = run_store.pause_run(run_id, "review")
    assert paused["run"].status == "paused"
    assert paused["run"].paused_reason == "review"

    for _ in range(3):
        blocked = run_store.start_next_step(run_id)
        assert blocked["code"] == "run_paused"
        assert blocked["run"].next_action_index == 1


def test_pause_resume_reproduces_the_next_action(run_store):
    run_id = approved_run(run_store, 3)
    first = run_store.start_next_step(run_id)
    run_store.complete_step(run_id, first["step_index"], "ok")

    run_store.pause_run(run_id)
    resumed = run_store.resume_run(run_id)
    assert resumed["run"].status == "running"
    assert resumed["run"].paused_reason is None

    second = run_store.start_next_step(run_id)
    assert second["action"].id == "step-2"
    assert second["step_index"] == 1


def test_resume_only_from_paused(run_store):
    run_id = approved_run(run_store)
    result = run_store.resume_run(run_id)
    assert result["code"] == "invalid_transition"


def test_stop_is_terminal(run_store):
    run_id = approved_run(run_store)
    stopped = run_store.stop_run(run_id)
    assert stopped["run"].status == "stopped"
    assert stopped["run"].stop_reason == "Stopped by user."

    assert run_store.start_next_step(run_id)["code"] == "run_stopped"
    assert run_store.pause_run(run_id)["code"] == "invalid_transition"
    assert run_store.resume_run(run_id)["code"] == "invalid_transition"
    assert run_store.approve_run(run_id)["code"] == "invalid_transition"
    assert run_store.stop_run(run_id)["code"] == "invalid_transition"


def test_fail_step_fails_run(run_store):
    run_id = approved_run(run_store, 2)
    started = run_store.start_next_step(run_id)
    failed = run_store.fail_step(run_id, started["step_index"], "variable missing")
    run = failed["run"]
    assert run.status == "failed"
    assert run.last_error == "variable missing"
    assert run.steps[0].status == "failed"
    assert run.next_action_index == 0
    assert run_store.start_next_step(run_id)["code"] == "run_failed"
    assert run_store.stop_run(run_id)["code"] == "invalid_transition"


def test_stop_mid_step_keeps_run_stopped(run_store):
    run_id = approved_run(run_store, 2)
    started = run_store.start_next_step(run_id)
    run_store.stop_run(run_id, "operator")
    done = run_store.complete_step(run_id, started["step_index"], "late result")
    assert done["run"].status == "stopped"
    assert done["run"].steps[0].status == "completed"
    assert event_types(run_store, run_id)[-1] == "step_completed"


def test_complete_last_step_while_paused_completes_run(run_store):
    run_id = approved_run(run_store, 1)
    started = run_store.start_next_step(run_id)
    run_store.pause_run(run_id)
    done = run_store.complete_step(run_id, started["step_index"], "ok")
    assert done["run"].status == "completed"


def test_complete_middle_step_while_paused_stays_paused(run_store):
    run_id = approved_run(run_store, 2)
    started = run_store.start_next_step(run_id)
    run_store.pause_run(run_id)
    done = run_store.complete_step(run_id, started["step_index"], "ok")
    assert done["run"].status == "paused"
    assert done["run"].next_action_index == 1


def test_second_start_while_step_running_is_rejected(run_store):
    run_id = approved_run(run_store, 2)
    first = run_store.start_next_step(run_id)
    assert first["ok"]
    second = run_store.start_next_step(run_id)
    assert second["code"] == "step_in_progress"
    assert second["run"].next_action_index == 0


def test_expired_lease_surfaces_stalled_step(run_store, clock):
    run_id = approved_run(run_store, 2)
    run_store.start_next_step(run_id)
    clock.advance(61)
    result = run_store.start_next_step(run_id)
    assert result["code"] == "step_stalled"
    assert result["run"].steps[0].stalled is True
    assert run_store.stop_run(run_id)["run"].status == "stopped"


def test_release_step_returns_it_to_pending(run_store):
    run_id = approved_run(run_store, 2)
    started = run_store.start_next_step(run_id)
    released = run_store.release_step(run_id, started["step_index"], "conflicts")
    assert released["run"].steps[0].status == "pending"
    assert released["run"].next_action_index == 0
    assert event_types(run_store, run_id)[-1] == "step_released"
    again = run_store.start_next_step(run_id)
    assert again["action"].id == "step-1"


def test_complete_requires_running_step(run_store):
    run_id = approved_run(run_store, 2)
    result = run_store.complete_step(run_id, 0, "ok")
    assert result["code"] == "invalid_transition"


def test_every_mutation_appends_one_event(run_store, clock):
    run = run_store.create_run(make_plan(1))
    before = len(run_store.list_events(run.run_id))
    clock.advance(1)
    approved = run_store.approve_run(run.run_id)
    assert len(run_store.list_events(run.run_id)) == before + 1
    assert approved["run"].updated_at == clock()


def test_concurrent_starts_run_each_action_once(run_store):
    run_id = approved_run(run_store, 1)
    results = []

    def worker():
        results.append(run_store.start_next_step(run_id))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert sum(1 for result in results if result["ok"]) == 1
    assert {result["code"] for result in results if not result["ok"]} == {"step_in_progress"}


def test_reset_and_close(run_store):
    run_id = approved_run(run_store)
    run_store.reset()
    assert run_store.get_run(run_id) is None
    run_store.close()
    with pytest.raises(RuntimeError):
        run_store.create_run(make_plan(1))


def test_summarize_payload_truncates():
    summary = summarize_payload({"a": "x" * 100, "b": [1, 2, 3, 4, 5, 6], "c": None, "d": True, "e": 1, "f": 2})
    assert summary.startswith("a=" + "x" * 77 + "...")
    assert "b=[1,2,3,4,5,...]" in summary
    assert "f=" not in summary
    assert summarize_payload({}) == "no_payload"


def test_unknown_run_lookups_do_not_register_locks(run_store):
    for index in range(50):
        assert run_store.get_run(f"ai-run-missing-{index}") is None
        assert run_store.approve_run(f"ai-run-missing-{index}")["code"] == "run_not_found"
        assert run_store.start_next_step(f"ai-run-missing-{index}")["code"] == "run_not_found"
    assert run_store._locks == {}
    run_id = approved_run(run_store)
    assert list(run_store._locks) == [run_id]
