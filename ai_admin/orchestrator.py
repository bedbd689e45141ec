import logging
from typing import Any, Dict, List, Optional, Tuple

from .actions import ActionContext, execute_write_action, summarize_result
from .census import CensusClient
from .conflicts import find_existing_stat_conflicts
from .datastore import DataStore, DataStoreConfigError
from .plan_validation import (
    is_write_action_type,
    normalize_string,
    parse_boolean,
    summarize_actions,
    validate_plan_request,
)
from .run_store import RunStore, new_run_id, utc_now
from .schemas import Action, Conflict, Run, RunCaps

logger = logging.getLogger("uvicorn.error")

RUN_COMMANDS = {"create_run", "get_run", "approve_run", "run_next_step", "pause_run", "resume_run", "stop_run"}
RUN_GUARDRAILS = {
    "createOnly": True,
    "allowlistedActionsOnly": True,
    "payloadMutationIntentBlocked": True,
}
CONFLICT_PAUSE_REASON = "Execution paused: existing stat conflicts must be reviewed before writes."
CONFLICT_BLOCK_REASON = "Existing stat conflicts must be reviewed before writes."

Response = Tuple[int, Dict[str, Any]]


def read_command(value: Any) -> Optional[str]:
    command = normalize_string(value)
    return command if command in RUN_COMMANDS else None


def execute_mode(body: Any, create_run: bool = False) -> str:
    if isinstance(body, dict):
        if parse_boolean(body.get("validateOnly"), False):
            return "validate_only"
        if parse_boolean(body.get("dryRun"), False):
            return "dry_run"
    return "create_run" if create_run else "execute"


def response_mode(body: Any) -> str:
    """Mode reported for an /execute body, including ones rejected before dispatch."""
    if not isinstance(body, dict):
        return "execute"
    command = read_command(body.get("command"))
    if command == "get_run":
        return "run_status"
    if command and command != "create_run":
        return command
    return execute_mode(body, create_run=command == "create_run")


def _run_json(run: Optional[Run]) -> Optional[Dict[str, Any]]:
    return run.to_json() if run is not None else None


def _conflicts_json(conflicts: List[Conflict]) -> List[Dict[str, Any]]:
    return [conflict.to_json() for conflict in conflicts]


def transition_failure(result: Dict[str, Any], mode: str) -> Response:
    code = result["code"]
    if code == "run_not_found":
        status = 404
    elif code == "no_pending_steps":
        status = 200
    else:
        status = 409
    return status, {
        "ok": code == "no_pending_steps",
        "mode": mode,
        "code": code,
        "error": result["message"],
        "run": _run_json(result.get("run")),
        "guardrails": RUN_GUARDRAILS,
    }


class RunOrchestrator:
    """Handles /execute bodies: immediate execution and the stepwise run commands."""

    def __init__(
        self,
        run_store: RunStore,
        db: DataStore,
        census: Optional[CensusClient] = None,
        parent_area: str = "Oklahoma",
    ):
        self.run_store = run_store
        self.db = db
        self.census = census
        self.parent_area = parent_area

    def _context(self, run_id: str, caps: RunCaps, caller_email: Optional[str]) -> ActionContext:
        return ActionContext(
            run_id=run_id,
            caps=caps,
            caller_email=caller_email,
            census=self.census,
            parent_area=self.parent_area,
        )

    async def handle(self, body: Any) -> Response:
        if not isinstance(body, dict):
            return await self.execute_plan(body)
        command = read_command(body.get("command"))
        caller_email = normalize_string(body.get("callerEmail"))
        if command in ("get_run", "approve_run", "pause_run", "resume_run", "stop_run", "run_next_step"):
            run_id = normalize_string(body.get("runId"))
            if not run_id:
                return 400, {"ok": False, "mode": command, "error": "Missing required runId.", "guardrails": RUN_GUARDRAILS}
            if command == "get_run":
                return self.get_run(run_id)
            if command == "approve_run":
                return self.approve_run(run_id, caller_email)
            if command == "pause_run":
                return self.pause_run(run_id, normalize_string(body.get("reason")))
            if command == "resume_run":
                return self.resume_run(run_id)
            if command == "stop_run":
                return self.stop_run(run_id, normalize_string(body.get("reason")))
            return await self.run_next_step(run_id)
        return await self.execute_plan(body, create_run=command == "create_run")

    def get_run(self, run_id: str) -> Response:
        run = self.run_store.get_run(run_id)
        if run is None:
            return 404, {"ok": False, "mode": "run_status", "error": "Run not found.", "guardrails": RUN_GUARDRAILS}
        return 200, {"ok": True, "mode": "run_status", "run": run.to_json(), "guardrails": RUN_GUARDRAILS}

    def _transition(self, result: Dict[str, Any], mode: str) -> Response:
        if not result["ok"]:
            return transition_failure(result, mode)
        run: Run = result["run"]
        logger.info("Run %s -> %s (%s)", run.run_id, run.status, mode)
        return 200, {"ok": True, "mode": mode, "run": run.to_json(), "guardrails": RUN_GUARDRAILS}

    def approve_run(self, run_id: str, approved_by: Optional[str]) -> Response:
        return self._transition(self.run_store.approve_run(run_id, approved_by), "approve_run")

    def pause_run(self, run_id: str, reason: Optional[str]) -> Response:
        return self._transition(self.run_store.pause_run(run_id, reason), "pause_run")

    def resume_run(self, run_id: str) -> Response:
        return self._transition(self.run_store.resume_run(run_id), "resume_run")

    def stop_run(self, run_id: str, reason: Optional[str]) -> Response:
        return self._transition(self.run_store.stop_run(run_id, reason), "stop_run")

    async def run_next_step(self, run_id: str) -> Response:
        mode = "run_next_step"
        started = self.run_store.start_next_step(run_id)
        if not started["ok"]:
            return transition_failure(started, mode)

        action: Action = started["action"]
        step_index: int = started["step_index"]
        snapshot: Run = started["run"]
        logger.info("Run %s step %s started: %s (%s)", run_id, step_index, action.type, action.id)

        if is_write_action_type(action.type):
            try:
                conflicts = await find_existing_stat_conflicts(self.db, [action])
            except DataStoreConfigError as exc:
                return self._fail_step(run_id, step_index, snapshot, str(exc), "Server configuration error.")
            except Exception as exc:
                logger.warning("Conflict check failed for run %s step %s: %s", run_id, step_index, exc)
                released = self.run_store.release_step(run_id, step_index, f"Conflict check failed: {exc}")
                return 502, {
                    "ok": False,
                    "mode": mode,
                    "error": "Conflict check failed.",
                    "message": str(exc),
                    "run": _run_json(released.get("run") or snapshot),
                    "guardrails": RUN_GUARDRAILS,
                }
            if conflicts:
                logger.warning("Run %s hit %s conflict(s) at step %s", run_id, len(conflicts), step_index)
                self.run_store.release_step(run_id, step_index, CONFLICT_PAUSE_REASON)
                paused = self.run_store.pause_run(run_id, CONFLICT_PAUSE_REASON)
                if not paused["ok"]:
                    # Stopped or finished while the conflict check was in flight.
                    logger.warning("Run %s could not be paused: %s", run_id, paused["message"])
                return 409, {
                    "ok": False,
                    "mode": mode,
                    "error": CONFLICT_PAUSE_REASON if paused["ok"] else CONFLICT_BLOCK_REASON,
                    "paused": paused["ok"],
                    "requiresUserReview": True,
                    "conflicts": _conflicts_json(conflicts),
                    "run": _run_json(paused.get("run") or self.run_store.get_run(run_id) or snapshot),
                    "guardrails": RUN_GUARDRAILS,
                }

        context = self._context(run_id, snapshot.caps, snapshot.caller_email)
        try:
            result = await execute_write_action(self.db, action, context)
        except DataStoreConfigError as exc:
            return self._fail_step(run_id, step_index, snapshot, str(exc), "Server configuration error.")
        except Exception as exc:
            logger.warning("Run %s step %s failed: %s", run_id, step_index, exc)
            return self._fail_step(run_id, step_index, snapshot, str(exc) or "Action execution failed.", "Step execution failed.")

        completed = self.run_store.complete_step(run_id, step_index, summarize_result(result))
        if not completed["ok"]:
            return transition_failure(completed, mode)
        run: Run = completed["run"]
        logger.info("Run %s step %s completed; run is %s", run_id, step_index, run.status)
        return 202, {
            "ok": True,
            "mode": mode,
            "run": run.to_json(),
            "stepResult": result,
            "guardrails": RUN_GUARDRAILS,
        }

    def _fail_step(self, run_id: str, step_index: int, snapshot: Run, message: str, error: str) -> Response:
        failed = self.run_store.fail_step(run_id, step_index, message)
        return 500, {
            "ok": False,
            "mode": "run_next_step",
            "error": error,
            "message": message,
            "run": _run_json(failed.get("run") or snapshot),
            "guardrails": RUN_GUARDRAILS,
        }

    async def execute_plan(self, body: Any, create_run: bool = False) -> Response:
        mode = execute_mode(body, create_run)
        validation = validate_plan_request(body)
        if not validation["ok"]:
            return 400, {
                "ok": False,
                "mode": mode,
                "error": "Invalid plan.",
                "details": [issue.to_json() for issue in validation["errors"]],
                "guardrails": RUN_GUARDRAILS,
            }
        plan = validation["plan"]
        action_summary = summarize_actions(plan.actions)

        if plan.validate_only or plan.dry_run:
            return 200, {
                "ok": True,
                "mode": mode,
                "caps": plan.caps.to_json(),
                "estimate": plan.estimate.to_json(),
                "actions": action_summary,
                "guardrails": RUN_GUARDRAILS,
            }

        try:
            conflicts = await find_existing_stat_conflicts(self.db, plan.actions)
        except DataStoreConfigError as exc:
            return 500, {
                "ok": False,
                "mode": mode,
                "error": "Server configuration error.",
                "message": str(exc),
                "guardrails": RUN_GUARDRAILS,
            }
        except Exception as exc:
            logger.warning("Preflight conflict check failed: %s", exc)
            return 502, {
                "ok": False,
                "mode": mode,
                "error": "Conflict check failed.",
                "message": str(exc),
                "guardrails": RUN_GUARDRAILS,
            }
        if conflicts:
            logger.warning("Preflight found %s conflict(s); refusing to execute", len(conflicts))
            return 409, {
                "ok": False,
                "mode": mode,
                "error": CONFLICT_PAUSE_REASON,
                "paused": True,
                "requiresUserReview": True,
                "conflicts": _conflicts_json(conflicts),
                "guardrails": RUN_GUARDRAILS,
            }

        if create_run:
            run = self.run_store.create_run(plan)
            logger.info("Run %s created with %s action(s)", run.run_id, len(run.actions))
            return 202, {
                "ok": True,
                "mode": "create_run",
                "run": run.to_json(),
                "actions": action_summary,
                "guardrails": RUN_GUARDRAILS,
            }

        run_id = new_run_id(utc_now())
        context = self._context(run_id, plan.caps, plan.caller_email)
        step_results: List[Dict[str, Any]] = []
        for action in plan.actions:
            try:
                step_results.append(await execute_write_action(self.db, action, context))
            except DataStoreConfigError as exc:
                return 500, {
                    "ok": False,
                    "mode": mode,
                    "error": "Server configuration error.",
                    "message": str(exc),
                    "guardrails": RUN_GUARDRAILS,
                }
            except Exception as exc:
                logger.warning("Immediate execution %s failed at %s: %s", run_id, action.id, exc)
                return 500, {
                    "ok": False,
                    "mode": "execute",
                    "runId": run_id,
                    "error": "Step execution failed.",
                    "message": str(exc) or "Action execution failed.",
                    "failedActionId": action.id,
                    "stepResults": step_results,
                    "guardrails": RUN_GUARDRAILS,
                }

        return 202, {
            "ok": True,
            "mode": "execute",
            "runId": run_id,
            "caps": plan.caps.to_json(),
            "estimate": plan.estimate.to_json(),
            "stepResults": step_results,
            "guardrails": RUN_GUARDRAILS,
        }
