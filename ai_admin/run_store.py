import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .schemas import Action, Run, RunEvent, RunStep, ValidatedPlan

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def new_run_id(now: datetime) -> str:
    return f"ai-run-{epoch_ms(now)}-{uuid.uuid4().hex[:6]}"


def to_short_string(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return f"{value[:77]}..." if len(value) > 80 else value
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        head = ",".join(to_short_string(item) for item in value[:5])
        return f"[{head}{',...' if len(value) > 5 else ''}]"
    if isinstance(value, dict):
        entries = list(value.items())
        head = ",".join(f"{key}:{to_short_string(item)}" for key, item in entries[:4])
        return f"{{{head}{',...' if len(entries) > 4 else ''}}}"
    return str(value)


def summarize_payload(payload: Dict[str, Any]) -> str:
    if not payload:
        return "no_payload"
    return "; ".join(f"{key}={to_short_string(payload[key])}" for key in list(payload)[:5])


def _fail(code: str, message: str, run: Optional[Run] = None) -> Dict[str, Any]:
    return {"ok": False, "code": code, "message": message, "run": run}


class RunStore:
    """In-process registry of run state machines.

    All transitions return {"ok": True, "run": snapshot, ...} or
    {"ok": False, "code": ..., "message": ..., "run": snapshot-or-None}.
    Snapshots are deep copies; callers never hold live run state.
    """

    def __init__(self, clock: Optional[Clock] = None, step_lease_seconds: int = 900):
        self._clock = clock or utc_now
        self.step_lease = timedelta(seconds=max(int(step_lease_seconds), 1))
        self._runs: Dict[str, Run] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self._closed = False

    def _now(self) -> datetime:
        return self._clock()

    def _lock_for(self, run_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(run_id)
        # Unknown ids get a throwaway lock; only create_run registers one.
        return lock if lock is not None else threading.RLock()

    def _register_lock(self, run_id: str) -> threading.RLock:
        with self._registry_lock:
            return self._locks.setdefault(run_id, threading.RLock())

    def _snapshot(self, run: Run) -> Run:
        snapshot = run.model_copy(deep=True)
        now = self._now()
        for step in snapshot.steps:
            step.stalled = bool(
                step.status == "running" and step.lease_expires_at is not None and step.lease_expires_at <= now
            )
        return snapshot

    def _add_event(
        self,
        run: Run,
        event_type: str,
        now: datetime,
        summary: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        run.events.append(
            RunEvent(
                id=f"{run.run_id}::{event_type}::{epoch_ms(now)}::{len(run.events) + 1}",
                run_id=run.run_id,
                type=event_type,
                created_at=now,
                summary=summary,
                metadata=metadata,
            )
        )
        run.updated_at = now

    @staticmethod
    def _step_metadata(step: RunStep, **extra: Any) -> Dict[str, Any]:
        return {"stepIndex": step.index, "actionId": step.action_id, "actionType": step.action_type, **extra}

    def create_run(self, plan: ValidatedPlan, run_id: Optional[str] = None) -> Run:
        if self._closed:
            raise RuntimeError("Run store is closed.")
        now = self._now()
        run_id = run_id or new_run_id(now)
        actions = [action.model_copy(deep=True) for action in plan.actions]
        steps = [
            RunStep(
                index=index,
                action_id=action.id,
                action_type=action.type,
                payload_summary=summarize_payload(action.payload),
            )
            for index, action in enumerate(actions)
        ]
        run = Run(
            run_id=run_id,
            caller_email=plan.caller_email,
            caps=plan.caps.model_copy(),
            estimate=plan.estimate.model_copy(),
            actions=actions,
            steps=steps,
            created_at=now,
            updated_at=now,
        )
        with self._register_lock(run_id):
            self._add_event(run, "run_created", now, "Run created in draft state.")
            run.status = "awaiting_approval"
            self._add_event(run, "run_awaiting_approval", now, "Run is awaiting user approval.")
            with self._registry_lock:
                self._runs[run_id] = run
            return self._snapshot(run)

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._lock_for(run_id):
            run = self._runs.get(run_id)
            return self._snapshot(run) if run else None

    def list_events(self, run_id: str) -> List[RunEvent]:
        with self._lock_for(run_id):
            run = self._runs.get(run_id)
            if not run:
                return []
            return [event.model_copy(deep=True) for event in run.events]

    def approve_run(self, run_id: str, approved_by: Optional[str] = None) -> Dict[str, Any]:
        with self._lock_for(run_id):
            run = self._runs.get(run_id)
            if not run:
                return _fail("run_not_found", "Run not found.")
            if run.status not in ("draft", "awaiting_approval"):
                return _fail(
                    "invalid_transition",
                    f'Run cannot be approved from status "{run.status}".',
                    self._snapshot(run),
                )
            now = self._now()
            run.status = "approved"
            run.approved_at = now
            run.approved_by = approved_by
            self._add_event(
                run, "run_approved", now, "Run approved for execution.", {"approvedBy": approved_by or "unknown"}
            )
            return {"ok": True, "run": self._snapshot(run)}

    def pause_run(self, run_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        with self._lock_for(run_id):
            run = self._runs.get(run_id)
            if not run:
                return _fail("run_not_found", "Run not found.")
            if run.status not in ("running", "approved"):
                return _fail(
                    "invalid_transition",
                    f'Run cannot be paused from status "{run.status}".',
                    self._snapshot(run),
                )
            now = self._now()
            run.status = "paused"
            run.paused_at = now
            run.paused_reason = reason or "Paused by user."
            self._add_event(run, "run_paused", now, run.paused_reason)
            return {"ok": True, "run": self._snapshot(run)}

    def resume_run(self, run_id: str) -> Dict[str, Any]:
        with self._lock_for(run_id):
            run = self._runs.get(run_id)
            if not run:
                return _fail("run_not_found", "Run not found.")
            if run.status != "paused":
                return _fail(
                    "invalid_transition",
                    f'Run cannot be resumed from status "{run.status}".',
                    self._snapshot(run),
                )
            now = self._now()
            run.status = "running"
            run.paused_at = None
            run.paused_reason = None
            self._add_event(run, "run_resumed", now, "Run resumed.")
            return {"ok": True, "run": self._snapshot(run)}

    def stop_run(self, run_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        with self._lock_for(run_id):
            run = self._runs.get(run_id)
            if not run:
                return _fail("run_not_found", "Run not found.")
            if run.is_terminal:
                return _fail(
                    "invalid_transition",
                    f'Run cannot be stopped from status "{run.status}".',
                    self._snapshot(run),
                )
            now = self._now()
            run.status = "stopped"
            run.stopped_at = now
            run.stop_reason = reason or "Stopped by user."
            self._add_event(run, "run_stopped", now, run.stop_reason)
            return {"ok": True, "run": self._snapshot(run)}

    def start_next_step(self, run_id: str) -> Dict[str, Any]:
        with self._lock_for(run_id):
            run = self._runs.get(run_id)
            if not run:
                return _fail("run_not_found", "Run not found.")
            if run.status == "paused":
                return _fail("run_paused", "Run is paused.", self._snapshot(run))
            if run.status == "stopped":
                return _fail("run_stopped", "Run is stopped.", self._snapshot(run))
            if run.status == "completed":
                return _fail("run_completed", "Run is already completed.", self._snapshot(run))
            if run.status == "failed":
                return _fail("run_failed", "Run has failed.", self._snapshot(run))
            if run.status not in ("approved", "running"):
                return _fail(
                    "run_not_executable",
                    f'Run is not executable from status "{run.status}".',
                    self._snapshot(run),
                )

            now = self._now()
            in_flight = next((step for step in run.steps if step.status == "running"), None)
            if in_flight is not None:
                if in_flight.lease_expires_at is not None and in_flight.lease_expires_at <= now:
                    return _fail(
                        "step_stalled",
                        f"Step {in_flight.index} ({in_flight.action_id}) exceeded its lease; stop the run to recover.",
                        self._snapshot(run),
                    )
                return _fail(
                    "step_in_progress",
                    f"Step {in_flight.index} ({in_flight.action_id}) is still running.",
                    self._snapshot(run),
                )

            if run.next_action_index >= len(run.actions):
                return _fail("no_pending_steps", "No pending actions.", self._snapshot(run))

            step = run.steps[run.next_action_index]
            if run.status == "approved":
                self._add_event(run, "run_started", now, "Run execution started.")
            run.status = "running"
            step.status = "running"
            step.started_at = now
            step.finished_at = None
            step.error = None
            step.lease_expires_at = now + self.step_lease
            self._add_event(
                run,
                "step_started",
                now,
                f"Started {step.action_type} ({step.action_id}).",
                self._step_metadata(step),
            )
            action: Action = run.actions[run.next_action_index].model_copy(deep=True)
            return {"ok": True, "run": self._snapshot(run), "action": action, "step_index": step.index}

    def _running_step(self, run: Run, step_index: int) -> Optional[RunStep]:
        if step_index < 0 or step_index >= len(run.steps):
            return None
        step = run.steps[step_index]
        return step if step.status == "running" else None

    def complete_step(self, run_id: str, step_index: int, result_summary: str) -> Dict[str, Any]:
        with self._lock_for(run_id):
            run = self._runs.get(run_id)
            if not run:
                return _fail("run_not_found", "Run not found.")
            step = self._running_step(run, step_index)
            if step is None:
                return _fail("invalid_transition", "Step is not running.", self._snapshot(run))
            now = self._now()
            step.status = "completed"
            step.finished_at = now
            step.lease_expires_at = None
            step.result_summary = result_summary
            step.error = None
            run.next_action_index = max(run.next_action_index, step_index + 1)
            self._add_event(
                run,
                "step_completed",
                now,
                f"Completed {step.action_type} ({step.action_id}).",
                self._step_metadata(step, resultSummary=result_summary),
            )
            if run.status == "stopped":
                return {"ok": True, "run": self._snapshot(run)}
            if run.next_action_index >= len(run.actions):
                run.status = "completed"
                run.completed_at = now
                self._add_event(run, "run_completed", now, "Run completed successfully.")
            elif run.status != "paused":
                run.status = "running"
            return {"ok": True, "run": self._snapshot(run)}

    def fail_step(self, run_id: str, step_index: int, error_message: str) -> Dict[str, Any]:
        with self._lock_for(run_id):
            run = self._runs.get(run_id)
            if not run:
                return _fail("run_not_found", "Run not found.")
            step = self._running_step(run, step_index)
            if step is None:
                return _fail("invalid_transition", "Step is not running.", self._snapshot(run))
            now = self._now()
            step.status = "failed"
            step.finished_at = now
            step.lease_expires_at = None
            step.error = error_message
            step.result_summary = None
            run.last_error = error_message
            if run.status != "stopped":
                run.status = "failed"
                run.failed_at = now
            self._add_event(
                run,
                "step_failed",
                now,
                f"Failed {step.action_type} ({step.action_id}).",
                self._step_metadata(step, error=error_message),
            )
            return {"ok": True, "run": self._snapshot(run)}

    def release_step(self, run_id: str, step_index: int, reason: str) -> Dict[str, Any]:
        """Return a running step to pending without moving the cursor."""
        with self._lock_for(run_id):
            run = self._runs.get(run_id)
            if not run:
                return _fail("run_not_found", "Run not found.")
            step = self._running_step(run, step_index)
            if step is None:
                return _fail("invalid_transition", "Step is not running.", self._snapshot(run))
            now = self._now()
            step.status = "pending"
            step.started_at = None
            step.finished_at = None
            step.lease_expires_at = None
            self._add_event(
                run,
                "step_released",
                now,
                f"Released {step.action_type} ({step.action_id}).",
                self._step_metadata(step, reason=reason),
            )
            return {"ok": True, "run": self._snapshot(run)}

    def run_ids(self) -> List[str]:
        with self._registry_lock:
            return list(self._runs)

    def reset(self) -> None:
        with self._registry_lock:
            self._runs.clear()
            self._locks.clear()

    def close(self) -> None:
        self.reset()
        self._closed = True
