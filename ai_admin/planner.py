import asyncio
import json
import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from .census import CensusClient, derive_stat_name, infer_stat_type, resolve_variables, table_doc_url
from .llm import OpenRouterClient, extract_first_json_object, message_content
from .plan_validation import DEFAULT_CAPS, normalize_string, validate_plan_request

logger = logging.getLogger("uvicorn.error")

DEFAULT_DATASET = "acs/acs5"
DEFAULT_YEAR = 2023
MAX_GROUP_RESULTS = 8
MAX_IMPORT_CANDIDATES = 6
MAX_DERIVED_CANDIDATES = 4
MAX_FAMILY_CANDIDATES = 4
MAX_VARIABLES_PER_IMPORT = 3
DEFAULT_INTENT_CONFIDENCE = 0.45
EXPECTED_ROWS_PER_IMPORT = 12000

ALLOWED_FORMULAS = {"percent", "sum", "difference", "rate_per_1000", "ratio", "index", "change_over_time"}

_GROUP_ID_RE = re.compile(r"^[A-Z0-9]+$")
_VARIABLE_ID_RE = re.compile(r"^[A-Z0-9_]+$")

PLANNING_PROMPT = """You are planning create-only admin actions for a US Census stats app.

Given the user request, produce a strict JSON object with this exact shape:
{{
  "confidence": 0.0,
  "notes": "short note",
  "imports": [
    {{
      "dataset": "acs/acs5",
      "year": 2023,
      "group": "B01001",
      "variables": ["B01001_001E"],
      "reason": "why this import"
    }}
  ],
  "derived": [
    {{
      "name": "Example Derived",
      "formula": "percent",
      "numeratorVariable": "B01001_002E",
      "denominatorVariable": "B01001_001E",
      "sumOperandVariables": [],
      "reason": "why this derived"
    }}
  ],
  "families": [
    {{
      "parentName": "Demographics",
      "childNames": ["Example Derived"],
      "statAttribute": "Total",
      "reason": "why this family"
    }}
  ]
}}

Rules:
- Allowed formulas: percent, sum, difference, rate_per_1000, ratio, index, change_over_time
- Use only create intents.
- Keep imports <= 6 and variables per import <= 3.
- Use dataset {dataset} and year {year} unless a different group prefix requires another ACS endpoint.
- Return JSON only, no markdown, no explanations.

User request: "{prompt}\""""


def parse_year(value: Any, fallback: int) -> int:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        raw = float(value)
    elif isinstance(value, str):
        try:
            raw = float(value.strip())
        except ValueError:
            return fallback
    else:
        return fallback
    if not math.isfinite(raw):
        return fallback
    return max(2005, min(2100, int(raw)))


def normalize_group_id(value: Any) -> Optional[str]:
    cleaned = (normalize_string(value) or "").upper()
    if not cleaned or not _GROUP_ID_RE.match(cleaned):
        return None
    if len(cleaned) < 2 or len(cleaned) > 12:
        return None
    return cleaned


def normalize_variable_id(value: Any) -> Optional[str]:
    cleaned = (normalize_string(value) or "").upper()
    if not cleaned or not _VARIABLE_ID_RE.match(cleaned):
        return None
    if cleaned[-1] not in ("E", "M"):
        return None
    return cleaned


def normalize_confidence(value: Any, fallback: float) -> float:
    try:
        numeric = float(value.strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return fallback
    if isinstance(value, bool) or not math.isfinite(numeric):
        return fallback
    return max(0.0, min(1.0, numeric))


def infer_dataset_for_group(dataset: Optional[str], group: str) -> str:
    normalized_dataset = normalize_string(dataset) or DEFAULT_DATASET
    normalized_group = normalize_group_id(group) or ""
    if not normalized_group or normalized_dataset != DEFAULT_DATASET:
        return normalized_dataset
    if normalized_group.startswith("DP"):
        return "acs/acs5/profile"
    if normalized_group.startswith("CP"):
        return "acs/acs5/cprofile"
    if normalized_group.startswith("S"):
        return "acs/acs5/subject"
    return normalized_dataset


def _id_list(value: Any, normalizer: Callable[[Any], Optional[str]], limit: int) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in (normalizer(entry) for entry in value) if item][:limit]


@dataclass
class ImportCandidate:
    dataset: str
    year: int
    group: str
    variables: List[str]
    reason: str

    @property
    def key(self) -> str:
        return f"{self.dataset}::{self.year}::{self.group}::{','.join(self.variables)}"


@dataclass
class DerivedCandidate:
    name: str
    formula: str
    numerator_variable: Optional[str]
    denominator_variable: Optional[str]
    sum_operand_variables: List[str]
    reason: str


@dataclass
class FamilyCandidate:
    parent_name: str
    child_names: List[str]
    stat_attribute: Optional[str]
    reason: str


@dataclass
class PlannedIntent:
    confidence: float = DEFAULT_INTENT_CONFIDENCE
    notes: str = "Model-generated planning intent."
    imports: List[ImportCandidate] = field(default_factory=list)
    derived: List[DerivedCandidate] = field(default_factory=list)
    families: List[FamilyCandidate] = field(default_factory=list)


def parse_planned_intent(parsed: Dict[str, Any], dataset: str, year: int) -> PlannedIntent:
    imports: List[ImportCandidate] = []
    for raw in (parsed.get("imports") or [])[:MAX_IMPORT_CANDIDATES]:
        if not isinstance(raw, dict):
            continue
        group = normalize_group_id(raw.get("group"))
        if not group:
            continue
        imports.append(
            ImportCandidate(
                dataset=infer_dataset_for_group(normalize_string(raw.get("dataset")) or dataset, group),
                year=parse_year(raw.get("year"), year),
                group=group,
                variables=_id_list(raw.get("variables"), normalize_variable_id, MAX_VARIABLES_PER_IMPORT),
                reason=normalize_string(raw.get("reason")) or "Model-recommended Census import.",
            )
        )

    derived: List[DerivedCandidate] = []
    for raw in (parsed.get("derived") or [])[:MAX_DERIVED_CANDIDATES]:
        if not isinstance(raw, dict):
            continue
        name = normalize_string(raw.get("name"))
        if not name:
            continue
        formula = normalize_string(raw.get("formula"))
        derived.append(
            DerivedCandidate(
                name=name,
                formula=formula if formula in ALLOWED_FORMULAS else "percent",
                numerator_variable=normalize_variable_id(raw.get("numeratorVariable")),
                denominator_variable=normalize_variable_id(raw.get("denominatorVariable")),
                sum_operand_variables=_id_list(
                    raw.get("sumOperandVariables"), normalize_variable_id, MAX_IMPORT_CANDIDATES
                ),
                reason=normalize_string(raw.get("reason")) or "Model-recommended derived stat.",
            )
        )

    families: List[FamilyCandidate] = []
    for raw in (parsed.get("families") or [])[:MAX_FAMILY_CANDIDATES]:
        if not isinstance(raw, dict):
            continue
        parent_name = normalize_string(raw.get("parentName"))
        child_names = _id_list(raw.get("childNames"), normalize_string, MAX_IMPORT_CANDIDATES)
        if not parent_name or not child_names:
            continue
        families.append(
            FamilyCandidate(
                parent_name=parent_name,
                child_names=child_names,
                stat_attribute=normalize_string(raw.get("statAttribute")),
                reason=normalize_string(raw.get("reason")) or "Model-recommended family grouping.",
            )
        )

    return PlannedIntent(
        confidence=normalize_confidence(parsed.get("confidence"), DEFAULT_INTENT_CONFIDENCE),
        notes=normalize_string(parsed.get("notes")) or "Model-generated planning intent.",
        imports=imports,
        derived=derived,
        families=families,
    )


def score_group_match(group: Dict[str, str], terms: List[str]) -> int:
    score = 0
    name = group["name"].lower()
    description = group["description"].lower()
    for term in terms:
        if name == term:
            score += 100
        elif name.startswith(term):
            score += 50
        elif term in name:
            score += 25
        if f" {term}" in description or description.startswith(term):
            score += 10
        elif term in description:
            score += 5
    return score


def dedupe_import_candidates(candidates: List[ImportCandidate]) -> List[ImportCandidate]:
    seen = set()
    out = []
    for candidate in candidates:
        if candidate.key in seen:
            continue
        seen.add(candidate.key)
        out.append(candidate)
    return out


def derive_overall_confidence(intent_confidence: float, evidence: List[Dict[str, Any]]) -> float:
    variables = [variable for entry in evidence for variable in entry.get("variables", [])]
    if not variables:
        return max(0.2, min(0.6, intent_confidence))
    available = sum(1 for variable in variables if variable.get("available"))
    blended = intent_confidence * 0.6 + (available / len(variables)) * 0.4
    return max(0.0, min(1.0, blended))


class ModelPlanner(Protocol):
    async def plan(self, prompt: str, dataset: str, year: int) -> Optional[PlannedIntent]:
        ...


class GroupSearch(Protocol):
    async def search(self, dataset: str, year: int, prompt: str, limit: int) -> List[Dict[str, Any]]:
        ...


class ImportInspector(Protocol):
    async def inspect(self, candidate: ImportCandidate) -> Dict[str, Any]:
        ...


class OpenRouterModelPlanner:
    def __init__(self, client: OpenRouterClient, model: str):
        self.client = client
        self.model = model

    async def plan(self, prompt: str, dataset: str, year: int) -> Optional[PlannedIntent]:
        if not self.client.enabled:
            return None
        response = await self.client.chat_completion(
            model=self.model,
            messages=[{"role": "user", "content": PLANNING_PROMPT.format(dataset=dataset, year=year, prompt=prompt)}],
            temperature=0.2,
            max_tokens=900,
        )
        content = message_content(response)
        if not content:
            return None
        parsed = json.loads(extract_first_json_object(content) or content)
        if not isinstance(parsed, dict):
            return None
        return parse_planned_intent(parsed, dataset, year)


class CensusGroupSearch:
    def __init__(self, census: CensusClient):
        self.census = census

    async def search(self, dataset: str, year: int, prompt: str, limit: int) -> List[Dict[str, Any]]:
        groups = await self.census.fetch_groups(year, dataset)
        terms = [token for token in prompt.lower().split() if token]
        scored = [{**group, "score": score_group_match(group, terms)} for group in groups]
        matches = sorted((g for g in scored if g["score"] > 0), key=lambda g: g["score"], reverse=True)
        return matches[: max(1, min(MAX_GROUP_RESULTS, limit))]


class CensusImportInspector:
    def __init__(self, census: CensusClient):
        self.census = census

    async def inspect(self, candidate: ImportCandidate) -> Dict[str, Any]:
        dataset = infer_dataset_for_group(candidate.dataset, candidate.group)
        year = parse_year(candidate.year, DEFAULT_YEAR)
        base = {
            "dataset": dataset,
            "year": year,
            "group": candidate.group,
            "tableUrl": table_doc_url(year, dataset, candidate.group),
            "reason": candidate.reason,
        }
        try:
            group_meta = await self.census.fetch_group_metadata(year, dataset, candidate.group)
            estimates, _ = resolve_variables(candidate.variables, group_meta)
            requested = candidate.variables or estimates[:1]
            available_set = set(estimates)
            available = [v for v in requested if v in available_set][:MAX_VARIABLES_PER_IMPORT]
            missing = [v for v in requested if v not in available_set]
            summaries = await self.census.fetch_variable_summaries(year, dataset, available)
        except Exception as exc:
            return {
                **base,
                "status": "error",
                "concept": None,
                "universe": None,
                "variables": [],
                "missingVariables": list(candidate.variables),
                "error": str(exc) or "Failed to inspect Census group.",
            }

        variables = []
        for variable in requested:
            meta = group_meta.variables.get(variable)
            is_available = meta is not None and variable in available_set
            summary = summaries.get(variable, {}) if is_available else {}
            variables.append(
                {
                    "variable": variable,
                    "label": meta.label if meta else "",
                    "statName": derive_stat_name(variable, meta, group_meta) if meta else variable,
                    "inferredType": infer_stat_type(meta) if meta else "count",
                    "available": is_available,
                    "zipCount": summary.get("zipCount", 0),
                    "countyCount": summary.get("countyCount", 0),
                }
            )
        return {
            **base,
            "status": "ok",
            "concept": group_meta.concept,
            "universe": group_meta.universe,
            "variables": variables,
            "missingVariables": missing,
        }


class Planner:
    """Turns a natural-language request into a reviewable, create-only plan. Never writes."""

    def __init__(
        self,
        model_planner: ModelPlanner,
        group_search: GroupSearch,
        inspector: ImportInspector,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.model_planner = model_planner
        self.group_search = group_search
        self.inspector = inspector
        self._clock = clock or time.time

    async def build_plan(self, body: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        prompt = normalize_string(body.get("prompt"))
        if not prompt:
            return 400, {"ok": False, "mode": "plan", "error": "Missing required 'prompt'."}
        caller_email = normalize_string(body.get("callerEmail"))
        dataset = normalize_string(body.get("dataset")) or DEFAULT_DATASET
        year = parse_year(body.get("year"), DEFAULT_YEAR)
        warnings: List[str] = []

        intent_result, groups_result = await asyncio.gather(
            self.model_planner.plan(prompt, dataset, year),
            self.group_search.search(dataset, year, prompt, MAX_GROUP_RESULTS),
            return_exceptions=True,
        )
        intent: Optional[PlannedIntent] = None
        if isinstance(intent_result, BaseException):
            logger.warning("Model planning failed: %s", intent_result)
            warnings.append(f"Model planning fallback: {intent_result or 'Model planning research was unavailable.'}")
        else:
            intent = intent_result
        if isinstance(groups_result, BaseException):
            logger.warning("Census group search failed: %s", groups_result)
            return 502, {
                "ok": False,
                "mode": "plan",
                "error": "Failed to run Census group search.",
                "details": str(groups_result) or "Census group search unavailable.",
            }
        group_matches: List[Dict[str, Any]] = groups_result

        candidates: List[ImportCandidate] = list(intent.imports) if intent else []
        if not candidates and group_matches:
            top = group_matches[0]["name"]
            candidates.append(
                ImportCandidate(
                    dataset=infer_dataset_for_group(dataset, top),
                    year=year,
                    group=top,
                    variables=[],
                    reason="Top Census group search match from prompt.",
                )
            )
        candidates = dedupe_import_candidates(candidates)[:MAX_IMPORT_CANDIDATES]
        evidence = list(await asyncio.gather(*(self.inspector.inspect(c) for c in candidates)))

        intent_confidence = intent.confidence if intent else DEFAULT_INTENT_CONFIDENCE
        confidence = derive_overall_confidence(intent_confidence, evidence)
        steps, all_actions, executable, expected_stats, import_step_by_variable = self._import_steps(
            prompt, dataset, year, confidence, group_matches, evidence
        )
        if intent:
            self._derived_steps(intent.derived, import_step_by_variable, steps, all_actions, expected_stats)
            self._family_steps(intent.families, steps, all_actions)

        raw_caps = body.get("caps") if isinstance(body.get("caps"), dict) else DEFAULT_CAPS.to_json()
        draft = validate_plan_request(
            {
                "callerEmail": caller_email,
                "dryRun": False,
                "validateOnly": False,
                "caps": raw_caps,
                "actions": executable,
            }
        )
        if not draft["ok"]:
            return 400, {
                "ok": False,
                "mode": "plan",
                "error": "Failed to build executable draft plan.",
                "details": [issue.to_json() for issue in draft["errors"]],
            }

        unresolved = [
            {"stepId": step["id"], "type": step["type"], "blockers": step.get("blockers", [])}
            for step in steps
            if not step["executableNow"]
        ]
        families = intent.families if intent else []
        return 200, {
            "ok": True,
            "mode": "plan",
            "plan": {
                "prompt": prompt,
                "notes": intent.notes if intent else "Generated from Census research evidence.",
                "confidence": confidence,
                "requiresUserApproval": True,
                "readOnlyResearch": True,
                "steps": steps,
                "actions": all_actions,
                "executeRequestDraft": draft["plan"].to_json(),
                "unresolvedSteps": unresolved,
                "expectedCreates": {
                    "stats": expected_stats,
                    "relationLinks": sum(len(family.child_names) for family in families),
                },
            },
            "research": {
                "dataset": dataset,
                "year": year,
                "topGroups": group_matches,
                "importEvidence": evidence,
                "warnings": warnings,
            },
            "guardrails": {"createOnly": True, "writesExecuted": False},
        }

    def _import_steps(self, prompt, dataset, year, confidence, group_matches, evidence):
        research_action = {
            "id": "step-research-1",
            "type": "research_census",
            "payload": {"prompt": prompt, "dataset": dataset, "year": year, "generatedAt": int(self._clock() * 1000)},
        }
        all_actions = [research_action]
        executable = [research_action]
        expected_stats: List[Dict[str, Any]] = []
        steps: List[Dict[str, Any]] = [
            {
                **research_action,
                "title": "Research Census options",
                "description": "Collect candidate groups and verify variable availability before writes.",
                "confidence": confidence,
                "executableNow": True,
                "evidence": {"topGroups": group_matches},
            }
        ]
        import_step_by_variable: Dict[str, str] = {}
        index = 0
        for entry in evidence:
            if entry["status"] != "ok":
                index += 1
                steps.append(
                    {
                        "id": f"step-import-error-{index}",
                        "type": "import_census_stat",
                        "title": f"Import Census group {entry['group']}",
                        "description": "Import candidate failed validation against Census metadata.",
                        "confidence": 0.2,
                        "executableNow": False,
                        "payload": {"dataset": entry["dataset"], "group": entry["group"], "year": entry["year"]},
                        "blockers": [entry.get("error") or "Unknown Census error."],
                        "evidence": entry,
                    }
                )
                continue
            for variable in entry["variables"]:
                if not variable["available"]:
                    continue
                index += 1
                step_id = f"step-import-{index}"
                action = {
                    "id": step_id,
                    "type": "import_census_stat",
                    "payload": {
                        "dataset": entry["dataset"],
                        "group": entry["group"],
                        "variable": variable["variable"],
                        "year": entry["year"],
                        "years": 1,
                        "expectedStatsCreated": 1,
                        "expectedRowsWritten": EXPECTED_ROWS_PER_IMPORT,
                        "reason": entry["reason"],
                    },
                }
                all_actions.append(action)
                executable.append(action)
                import_step_by_variable[variable["variable"]] = step_id
                expected_stats.append(
                    {
                        "key": f"census:{variable['variable']}",
                        "name": variable["statName"],
                        "source": "census_import",
                        "fromStepId": step_id,
                        "neId": f"census:{variable['variable']}",
                    }
                )
                steps.append(
                    {
                        **action,
                        "title": f"Import {variable['variable']}",
                        "description": f"Import {variable['statName']} from Census group {entry['group']}.",
                        "confidence": 0.85,
                        "executableNow": True,
                        "evidence": {
                            "dataset": entry["dataset"],
                            "year": entry["year"],
                            "group": entry["group"],
                            "concept": entry.get("concept"),
                            "universe": entry.get("universe"),
                            "tableUrl": entry["tableUrl"],
                            "variable": variable,
                        },
                    }
                )
        return steps, all_actions, executable, expected_stats, import_step_by_variable

    def _derived_steps(self, derived, import_step_by_variable, steps, all_actions, expected_stats) -> None:
        for index, candidate in enumerate(derived[:MAX_DERIVED_CANDIDATES], start=1):
            step_id = f"step-derived-{index}"
            blockers: List[str] = []
            payload: Dict[str, Any] = {
                "name": candidate.name,
                "formula": candidate.formula,
                "reason": candidate.reason,
                "expectedStatsCreated": 1,
                "expectedRowsWritten": EXPECTED_ROWS_PER_IMPORT,
            }
            if candidate.formula == "sum":
                payload["sumOperandVariables"] = candidate.sum_operand_variables
                payload["sumOperandImportStepIds"] = [
                    import_step_by_variable.get(v) for v in candidate.sum_operand_variables
                ]
                unresolved = [v for v in candidate.sum_operand_variables if v not in import_step_by_variable]
                if unresolved:
                    blockers.append(f"Missing import steps for sum operands: {', '.join(unresolved)}.")
            else:
                payload["numeratorVariable"] = candidate.numerator_variable
                payload["denominatorVariable"] = candidate.denominator_variable
                payload["numeratorImportStepId"] = import_step_by_variable.get(candidate.numerator_variable or "")
                payload["denominatorImportStepId"] = import_step_by_variable.get(candidate.denominator_variable or "")
                for role, variable in (
                    ("numerator", candidate.numerator_variable),
                    ("denominator", candidate.denominator_variable),
                ):
                    if variable and variable not in import_step_by_variable:
                        blockers.append(f"Missing import step for {role} variable {variable}.")
            if not blockers:
                blockers.append("Operand stat ids resolve only after the import steps run; approve it as a follow-up plan.")
            action = {"id": step_id, "type": "create_derived_stat", "payload": payload}
            all_actions.append(action)
            expected_stats.append(
                {"key": f"derived:{candidate.name}", "name": candidate.name, "source": "derived", "fromStepId": step_id}
            )
            steps.append(
                {
                    **action,
                    "title": f"Create derived stat {candidate.name}",
                    "description": candidate.reason,
                    "confidence": 0.72 if len(blockers) == 1 and blockers[0].startswith("Operand") else 0.4,
                    "executableNow": False,
                    "blockers": blockers,
                }
            )

    def _family_steps(self, families, steps, all_actions) -> None:
        for index, family in enumerate(families[:MAX_FAMILY_CANDIDATES], start=1):
            action = {
                "id": f"step-family-{index}",
                "type": "create_stat_family_links",
                "payload": {
                    "parentName": family.parent_name,
                    "childNames": family.child_names,
                    "statAttribute": family.stat_attribute,
                    "reason": family.reason,
                },
            }
            all_actions.append(action)
            steps.append(
                {
                    **action,
                    "title": f"Create family links under {family.parent_name}",
                    "description": family.reason,
                    "confidence": 0.6,
                    "executableNow": False,
                    "blockers": ["Family links need parent and child stat ids resolved from the created stats."],
                }
            )
