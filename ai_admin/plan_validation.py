import copy
import math
import re
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .schemas import Action, PlanEstimate, PlanIssue, RunCaps, ValidatedPlan

ALLOWED_ACTION_TYPES = (
    "research_census",
    "import_census_stat",
    "create_derived_stat",
    "create_stat_family_links",
)
ACTION_TYPE_ALIASES = {
    "research": "research_census",
    "import_stat": "import_census_stat",
    "create_family_links": "create_stat_family_links",
}
WRITE_ACTION_TYPES = frozenset({"import_census_stat", "create_derived_stat", "create_stat_family_links"})

DEFAULT_CAPS = RunCaps(max_steps=12, max_stats_created=8, max_rows_written=60000)
HARD_CAPS = RunCaps(max_steps=50, max_stats_created=25, max_rows_written=200000)
CAP_FIELDS = (
    ("max_steps", "maxSteps"),
    ("max_stats_created", "maxStatsCreated"),
    ("max_rows_written", "maxRowsWritten"),
)

DEFAULT_ROWS_PER_YEAR = 12000

BLOCKED_MUTATION_TOKENS = frozenset(
    {
        "delete",
        "remove",
        "update",
        "edit",
        "drop",
        "truncate",
        "destroy",
        "unlink",
        "overwrite",
        "replace",
    }
)

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")
_TRUE_STRINGS = {"1", "true", "yes"}
_FALSE_STRINGS = {"0", "false", "no"}


def normalize_string(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def parse_boolean(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return fallback


def parse_integer_like(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return int(parsed) if math.isfinite(parsed) else None
    return None


def normalize_action_type(value: Any) -> Optional[str]:
    raw = normalize_string(value)
    if raw is None:
        return None
    return ACTION_TYPE_ALIASES.get(raw, raw)


def is_write_action_type(action_type: str) -> bool:
    return action_type in WRITE_ACTION_TYPES


def _clamp_cap(raw: Any, fallback: int, hard_limit: int, path: str, errors: List[PlanIssue]) -> int:
    if raw is None:
        return fallback
    parsed = parse_integer_like(raw)
    if parsed is None or parsed < 1:
        errors.append(PlanIssue(code="invalid_caps", message="Run caps must be positive integers.", path=path))
        return fallback
    if parsed > hard_limit:
        errors.append(
            PlanIssue(code="invalid_caps", message=f"Run cap exceeds hard limit ({hard_limit}).", path=path)
        )
        return hard_limit
    return parsed


def normalize_caps(raw_caps: Any, errors: List[PlanIssue]) -> RunCaps:
    if raw_caps is not None and not isinstance(raw_caps, dict):
        errors.append(PlanIssue(code="invalid_caps", message="caps must be an object.", path="caps"))
        return DEFAULT_CAPS.model_copy()
    caps_obj = raw_caps or {}
    values = {}
    for field, wire_key in CAP_FIELDS:
        values[field] = _clamp_cap(
            caps_obj.get(wire_key),
            getattr(DEFAULT_CAPS, field),
            getattr(HARD_CAPS, field),
            f"caps.{wire_key}",
            errors,
        )
    return RunCaps(**values)


def split_key_tokens(key: str) -> List[str]:
    snake = _CAMEL_BOUNDARY.sub(r"\1_\2", key).lower()
    return [token for token in _TOKEN_SPLIT.split(snake) if token]


def blocked_token_for_key(key: str) -> Optional[str]:
    for token in split_key_tokens(key):
        if token in BLOCKED_MUTATION_TOKENS:
            return token
    return None


def iter_payload_keys(value: Any, path: str) -> Iterator[Tuple[str, str]]:
    """Yield (key_path, key) for every mapping key in a JSON-like value, depth first."""
    if isinstance(value, list):
        for index, item in enumerate(value):
            yield from iter_payload_keys(item, f"{path}[{index}]")
    elif isinstance(value, dict):
        for key, nested in value.items():
            key_path = f"{path}.{key}"
            yield key_path, str(key)
            yield from iter_payload_keys(nested, key_path)


def find_blocked_mutation_intent(value: Any, path: str) -> Optional[Tuple[str, str]]:
    for key_path, key in iter_payload_keys(value, path):
        token = blocked_token_for_key(key)
        if token:
            return key_path, token
    return None


def _payload_number(payload: Dict[str, Any], key: str) -> Optional[int]:
    parsed = parse_integer_like(payload.get(key))
    if parsed is None or parsed < 0:
        return None
    return parsed


def estimate_action_impact(action: Action) -> Tuple[int, int]:
    """Return (stats_created, rows_written) for one action."""
    if not is_write_action_type(action.type):
        return 0, 0
    payload = action.payload
    expected_stats = _payload_number(payload, "expectedStatsCreated")
    expected_rows = _payload_number(payload, "expectedRowsWritten")
    years_raw = _payload_number(payload, "years")
    years = max(years_raw if years_raw is not None else 1, 1)

    if action.type == "import_census_stat":
        return (
            expected_stats if expected_stats is not None else 1,
            expected_rows if expected_rows is not None else DEFAULT_ROWS_PER_YEAR * years,
        )
    if action.type == "create_derived_stat":
        return (
            expected_stats if expected_stats is not None else 1,
            expected_rows if expected_rows is not None else DEFAULT_ROWS_PER_YEAR,
        )
    return (
        expected_stats if expected_stats is not None else 0,
        expected_rows if expected_rows is not None else 0,
    )


def estimate_plan(actions: List[Action]) -> PlanEstimate:
    estimate = PlanEstimate()
    for action in actions:
        stats, rows = estimate_action_impact(action)
        estimate.action_count += 1
        estimate.write_action_count += 1 if is_write_action_type(action.type) else 0
        estimate.estimated_stats_created += stats
        estimate.estimated_rows_written += rows
    return estimate


def _parse_action(raw_action: Any, index: int, errors: List[PlanIssue]) -> Optional[Action]:
    base_path = f"actions[{index}]"
    if not isinstance(raw_action, dict):
        errors.append(PlanIssue(code="invalid_actions", message="Each action must be an object.", path=base_path))
        return None

    type_raw = normalize_action_type(raw_action.get("type"))
    if not type_raw:
        errors.append(PlanIssue(code="invalid_actions", message="Action type is required.", path=f"{base_path}.type"))
        return None
    if type_raw not in ALLOWED_ACTION_TYPES:
        errors.append(
            PlanIssue(
                code="unsupported_action_type",
                message=f"Unsupported action type: {type_raw}",
                path=f"{base_path}.type",
            )
        )
        return None

    payload_raw = raw_action.get("payload")
    if payload_raw is not None and not isinstance(payload_raw, dict):
        errors.append(
            PlanIssue(
                code="invalid_action_payload",
                message="Action payload must be an object when provided.",
                path=f"{base_path}.payload",
            )
        )
        return None

    payload = copy.deepcopy(payload_raw or {})
    blocked = find_blocked_mutation_intent(payload, f"{base_path}.payload")
    if blocked:
        blocked_path, token = blocked
        errors.append(
            PlanIssue(
                code="blocked_mutation_intent",
                message=f'Blocked mutation intent token "{token}" found in payload.',
                path=blocked_path,
            )
        )
        return None

    action_id = normalize_string(raw_action.get("id")) or f"step-{index + 1}"
    return Action(id=action_id, type=type_raw, payload=payload)


def validate_plan_request(body: Any) -> Dict[str, Any]:
    """Validate a raw execute body.

    Returns {"ok": True, "plan": ValidatedPlan} or {"ok": False, "errors": [PlanIssue, ...]}.
    Any invalid action rejects the whole plan.
    """
    if not isinstance(body, dict):
        return {
            "ok": False,
            "errors": [PlanIssue(code="invalid_body", message="Request body must be an object.", path="body")],
        }

    errors: List[PlanIssue] = []
    caller_email = normalize_string(body.get("callerEmail"))
    dry_run = parse_boolean(body.get("dryRun"), False)
    validate_only = parse_boolean(body.get("validateOnly"), False)
    caps = normalize_caps(body.get("caps"), errors)

    raw_actions = body.get("actions")
    if not isinstance(raw_actions, list) or not raw_actions:
        errors.append(PlanIssue(code="invalid_actions", message="actions must be a non-empty array.", path="actions"))
        raw_actions = raw_actions if isinstance(raw_actions, list) else []

    actions: List[Action] = []
    seen_ids = set()
    for index, raw_action in enumerate(raw_actions):
        action = _parse_action(raw_action, index, errors)
        if action is None:
            continue
        if action.id in seen_ids:
            errors.append(
                PlanIssue(
                    code="invalid_actions",
                    message=f"Duplicate action id: {action.id}",
                    path=f"actions[{index}].id",
                )
            )
            continue
        seen_ids.add(action.id)
        actions.append(action)

    if len(raw_actions) > caps.max_steps:
        errors.append(
            PlanIssue(
                code="caps_exceeded",
                message=f"Plan has {len(raw_actions)} steps but maxSteps is {caps.max_steps}.",
                path="actions",
            )
        )

    estimate = estimate_plan(actions)
    if estimate.estimated_stats_created > caps.max_stats_created:
        errors.append(
            PlanIssue(
                code="caps_exceeded",
                message=(
                    f"Estimated stats to create ({estimate.estimated_stats_created}) "
                    f"exceed maxStatsCreated ({caps.max_stats_created})."
                ),
                path="caps.maxStatsCreated",
            )
        )
    if estimate.estimated_rows_written > caps.max_rows_written:
        errors.append(
            PlanIssue(
                code="caps_exceeded",
                message=(
                    f"Estimated rows to write ({estimate.estimated_rows_written}) "
                    f"exceed maxRowsWritten ({caps.max_rows_written})."
                ),
                path="caps.maxRowsWritten",
            )
        )

    if errors:
        return {"ok": False, "errors": errors}

    plan = ValidatedPlan(
        caller_email=caller_email,
        dry_run=dry_run,
        validate_only=validate_only,
        caps=caps,
        actions=actions,
        estimate=estimate,
    )
    return {"ok": True, "plan": plan}


def summarize_actions(actions: List[Action]) -> List[Dict[str, Any]]:
    return [
        {"id": action.id, "type": action.type, "writeAction": is_write_action_type(action.type)}
        for action in actions
    ]
