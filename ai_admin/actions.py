import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from .census import (
    CensusClient,
    derive_stat_name,
    infer_stat_type,
    resolve_variables,
    survey_for_dataset,
    table_doc_url,
)
from .datastore import DataStore, lookup, new_id, tx_update, unwrap_rows
from .plan_validation import normalize_string, parse_boolean
from .schemas import Action, RunCaps
from .stat_data import (
    WRITE_TX_BATCH,
    apply_stat_data_payloads,
    build_stat_data_payloads,
    chunk_and_transact,
    compute_summary,
    hydrate_county_zip_buckets,
    now_ms,
    summary_key,
)

logger = logging.getLogger("uvicorn.error")

DEFAULT_CATEGORY = "demographics"
DEFAULT_DERIVED_SOURCE = "Census Derived"
DEFAULT_IMPORT_DATASET = "acs/acs5"
DEFAULT_IMPORT_YEAR = 2023
DEFAULT_IMPORT_YEARS = 1
MAX_IMPORT_YEARS = 5
UNDEFINED_STAT_ATTRIBUTE = "__undefined__"

ALLOWED_CATEGORIES = {"food", "demographics", "health", "education", "economy", "housing", "justice"}
ALLOWED_VISIBILITIES = {"public", "private", "inactive"}
FORMULA_TO_STAT_TYPE = {
    "percent": "percent",
    "sum": "number",
    "difference": "number",
    "rate_per_1000": "number",
    "ratio": "number",
    "index": "number",
    "change_over_time": "percent_change",
}


class ActionError(RuntimeError):
    """Permanent executor failure for one action; the step is not retried."""


@dataclass
class ActionContext:
    run_id: str
    caps: RunCaps
    caller_email: Optional[str] = None
    census: Optional[CensusClient] = None
    parent_area: str = "Oklahoma"


@dataclass
class SourceRow:
    parent_area: Optional[str]
    boundary_type: Optional[str]
    date: Optional[str]
    data: Dict[str, float]

    @property
    def key(self) -> str:
        return f"{self.parent_area or ''}::{self.boundary_type or ''}::{self.date or ''}"


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def parse_number(value: Any) -> Optional[float]:
    if _finite(value):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def parse_int_in_range(value: Any, fallback: int, low: int, high: int) -> int:
    parsed = parse_number(value)
    if parsed is None:
        return fallback
    return max(low, min(high, int(parsed)))


def coerce_category(value: Any) -> str:
    normalized = normalize_string(value) or DEFAULT_CATEGORY
    return normalized if normalized in ALLOWED_CATEGORIES else DEFAULT_CATEGORY


def coerce_visibility(value: Any, fallback: str = "private") -> str:
    normalized = normalize_string(value)
    if not normalized:
        return fallback
    return normalized if normalized in ALLOWED_VISIBILITIES else fallback


def coerce_formula(value: Any) -> str:
    normalized = normalize_string(value)
    return normalized if normalized in FORMULA_TO_STAT_TYPE else "percent"


def normalize_data_map(value: Any) -> Dict[str, float]:
    out: Dict[str, float] = {}
    if not isinstance(value, dict):
        return out
    for key, raw in value.items():
        parsed = parse_number(raw)
        if parsed is not None:
            out[str(key)] = parsed
    return out


def string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in (normalize_string(entry) for entry in value) if item]


def build_year_range(start: int, count: int) -> List[int]:
    return [start - offset for offset in range(count)]


def compute_derived_values(a_data: Dict[str, float], b_data: Dict[str, float], formula: str) -> Dict[str, float]:
    """Per-area arithmetic for two-operand formulas."""
    out: Dict[str, float] = {}
    if formula in ("sum", "difference"):
        keys = list(dict.fromkeys([*a_data, *b_data]))
    else:
        keys = list(a_data)
    for area in keys:
        a_val = a_data.get(area)
        b_val = b_data.get(area)
        a_ok = _finite(a_val)
        b_ok = _finite(b_val)
        if formula in ("percent", "ratio"):
            if a_ok and b_ok and b_val != 0:
                out[area] = a_val / b_val
        elif formula == "sum":
            if a_ok and b_ok:
                out[area] = a_val + b_val
            elif a_ok:
                out[area] = a_val
            elif b_ok:
                out[area] = b_val
        elif formula == "difference":
            if a_ok and b_ok:
                out[area] = a_val - b_val
        elif formula == "rate_per_1000":
            if a_ok and b_ok and b_val != 0:
                out[area] = (a_val / b_val) * 1000
        elif formula == "index":
            if a_ok and b_ok and b_val != 0:
                out[area] = (a_val / b_val) * 100
    return out


def _change_over_time_rows(payload: Dict[str, Any], rows_by_stat: Dict[str, Dict[str, SourceRow]]) -> List[SourceRow]:
    stat_id = normalize_string(payload.get("numeratorId")) or normalize_string(payload.get("statId"))
    start_year = normalize_string(str(payload["startYear"])) if payload.get("startYear") is not None else None
    end_year = normalize_string(str(payload["endYear"])) if payload.get("endYear") is not None else None
    if not stat_id or not start_year or not end_year:
        raise ActionError("change_over_time requires numeratorId (or statId), startYear, and endYear.")
    stat_rows = rows_by_stat.get(stat_id)
    if not stat_rows:
        raise ActionError("No source rows found for change_over_time.")

    contexts: Dict[Tuple[Optional[str], Optional[str]], Dict[str, Dict[str, float]]] = {}
    for row in stat_rows.values():
        if not row.date:
            continue
        contexts.setdefault((row.parent_area, row.boundary_type), {})[row.date] = row.data

    derived: List[SourceRow] = []
    for (parent_area, boundary_type), by_date in contexts.items():
        start_data = by_date.get(start_year)
        end_data = by_date.get(end_year)
        if not start_data or not end_data:
            continue
        out: Dict[str, float] = {}
        for area, end_value in end_data.items():
            start_value = start_data.get(area)
            if _finite(start_value) and start_value != 0 and _finite(end_value):
                out[area] = (end_value - start_value) / abs(start_value)
        if out:
            derived.append(SourceRow(parent_area, boundary_type, f"{start_year}-{end_year}", out))
    if not derived:
        raise ActionError("No overlapping rows found for change_over_time.")
    return derived


def _sum_rows(payload: Dict[str, Any], rows_by_stat: Dict[str, Dict[str, SourceRow]]) -> List[SourceRow]:
    operand_ids = string_list(payload.get("sumOperandIds"))
    if len(operand_ids) < 2:
        raise ActionError("sum requires at least two stat ids in sumOperandIds.")
    row_keys: List[str] = []
    for stat_id in operand_ids:
        for key in rows_by_stat.get(stat_id, {}):
            if key not in row_keys:
                row_keys.append(key)
    if not row_keys:
        raise ActionError("No source rows found for sum operands.")

    derived: List[SourceRow] = []
    for row_key in row_keys:
        operand_rows = [rows_by_stat[s][row_key] for s in operand_ids if row_key in rows_by_stat.get(s, {})]
        if not operand_rows:
            continue
        out: Dict[str, float] = {}
        for row in operand_rows:
            for area, value in row.data.items():
                if _finite(value):
                    out[area] = out.get(area, 0) + value
        if out:
            template = operand_rows[0]
            derived.append(SourceRow(template.parent_area, template.boundary_type, template.date, out))
    if not derived:
        raise ActionError("No overlapping rows found for sum operands.")
    return derived


def _ratio_rows(formula: str, payload: Dict[str, Any], rows_by_stat: Dict[str, Dict[str, SourceRow]]) -> List[SourceRow]:
    numerator_id = normalize_string(payload.get("numeratorId"))
    denominator_id = normalize_string(payload.get("denominatorId"))
    if not numerator_id or not denominator_id:
        raise ActionError(f"{formula} requires numeratorId and denominatorId.")
    numerator_rows = rows_by_stat.get(numerator_id)
    denominator_rows = rows_by_stat.get(denominator_id)
    if not numerator_rows or not denominator_rows:
        raise ActionError("Missing source rows for numerator or denominator.")

    def dates(rows: Dict[str, SourceRow]) -> Set[str]:
        return {row.date for row in rows.values() if row.date}

    def boundaries(rows: Dict[str, SourceRow]) -> Set[str]:
        return {row.boundary_type for row in rows.values() if row.boundary_type}

    if dates(numerator_rows) != dates(denominator_rows):
        raise ActionError("Numerator and denominator have incompatible year sets.")
    if boundaries(numerator_rows) != boundaries(denominator_rows):
        raise ActionError("Numerator and denominator have incompatible boundary sets.")

    derived: List[SourceRow] = []
    for row_key, denominator_row in denominator_rows.items():
        numerator_row = numerator_rows.get(row_key)
        out = compute_derived_values(numerator_row.data if numerator_row else {}, denominator_row.data, formula)
        if out:
            derived.append(
                SourceRow(denominator_row.parent_area, denominator_row.boundary_type, denominator_row.date, out)
            )
    if not derived:
        raise ActionError("No overlapping rows found for derived formula.")
    return derived


def create_derived_rows(
    formula: str, payload: Dict[str, Any], rows_by_stat: Dict[str, Dict[str, SourceRow]]
) -> List[SourceRow]:
    if formula == "change_over_time":
        return _change_over_time_rows(payload, rows_by_stat)
    if formula == "sum":
        return _sum_rows(payload, rows_by_stat)
    return _ratio_rows(formula, payload, rows_by_stat)


def parse_source_row(raw: Dict[str, Any]) -> SourceRow:
    raw_date = raw.get("date")
    if isinstance(raw_date, str) and raw_date.strip():
        date: Optional[str] = raw_date.strip()
    elif _finite(raw_date):
        date = str(int(raw_date)) if float(raw_date).is_integer() else str(raw_date)
    else:
        date = None
    return SourceRow(
        parent_area=normalize_string(raw.get("parentArea")),
        boundary_type=normalize_string(raw.get("boundaryType")),
        date=date,
        data=normalize_data_map(raw.get("data")),
    )


async def fetch_root_rows_by_stat_ids(db: DataStore, stat_ids: List[str]) -> Dict[str, Dict[str, SourceRow]]:
    if not stat_ids:
        return {}
    resp = await db.query(
        {
            "statData": {
                "$": {
                    "where": {"name": "root", "statId": {"$in": stat_ids}},
                    "fields": ["statId", "parentArea", "boundaryType", "date", "data"],
                }
            }
        }
    )
    rows_by_stat: Dict[str, Dict[str, SourceRow]] = {}
    for raw in unwrap_rows(resp, "statData"):
        stat_id = normalize_string(raw.get("statId"))
        if not stat_id:
            continue
        row = parse_source_row(raw)
        rows_by_stat.setdefault(stat_id, {})[row.key] = row
    return rows_by_stat


def parse_import_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    group = normalize_string(payload.get("group"))
    variable = normalize_string(payload.get("variable"))
    if not group:
        raise ActionError("import_census_stat requires payload.group.")
    if not variable:
        raise ActionError("import_census_stat requires payload.variable.")
    return {
        "dataset": normalize_string(payload.get("dataset")) or DEFAULT_IMPORT_DATASET,
        "group": group,
        "variable": variable,
        "year": parse_int_in_range(payload.get("year"), DEFAULT_IMPORT_YEAR, 2005, 2100),
        "years": parse_int_in_range(payload.get("years"), DEFAULT_IMPORT_YEARS, 1, MAX_IMPORT_YEARS),
        "include_moe": parse_boolean(payload.get("includeMoe"), False),
        "category": coerce_category(payload.get("category")),
        "visibility": coerce_visibility(payload.get("visibility"), "private"),
        "created_by": normalize_string(payload.get("createdBy")),
    }


async def execute_import_census_stat(db: DataStore, action: Action, context: ActionContext) -> Dict[str, Any]:
    census = context.census
    if census is None:
        raise ActionError("import_census_stat requires a Census client.")
    params = parse_import_payload(action.payload)
    dataset = params["dataset"]
    group = params["group"]
    variable = params["variable"]
    survey = survey_for_dataset(dataset)
    years = build_year_range(params["year"], params["years"])

    stat_id = new_id()
    stat_name: Optional[str] = None
    stat_type: Optional[str] = None
    all_payloads = []
    degraded_years: List[int] = []
    zips_without_county = 0

    for current_year in years:
        group_meta = await census.fetch_group_metadata(current_year, dataset, group)
        estimates, moe_map = resolve_variables([variable], group_meta, params["include_moe"])
        if variable not in estimates:
            raise ActionError(f"Variable {variable} is not available in {group} for year {current_year}.")
        variable_meta = group_meta.variables.get(variable)
        if variable_meta is None:
            raise ActionError(f"Missing metadata for {variable} in {group}.")

        if stat_name is None or stat_type is None:
            stat_name = derive_stat_name(variable, variable_meta, group_meta)
            stat_type = infer_stat_type(variable_meta)
            now = now_ms()
            record: Dict[str, Any] = {
                "name": stat_name,
                "category": params["category"],
                "neId": f"census:{variable}",
                "source": "Census",
                "goodIfUp": None,
                "active": True,
                "createdOn": now,
                "lastUpdated": now,
                "visibility": params["visibility"],
                "visibilityEffective": params["visibility"],
            }
            if params["created_by"]:
                record["createdBy"] = params["created_by"]
            await db.transact([tx_update("stats", stat_id, record)])

        moe_variable = moe_map.get(variable) if params["include_moe"] else None
        moe_variables = list(moe_map.values()) if params["include_moe"] else []
        zip_records = await census.fetch_zip_data(current_year, dataset, [variable], moe_variables)
        county_records = await census.fetch_county_data(current_year, dataset, [variable], moe_variables)
        maps = census.build_data_maps(variable, moe_variable, zip_records, county_records)
        hydration = await hydrate_county_zip_buckets(db, maps)
        if hydration.degraded:
            degraded_years.append(current_year)
        zips_without_county += hydration.zips_without_county
        all_payloads.extend(
            build_stat_data_payloads(
                stat_id,
                stat_name,
                stat_type,
                maps,
                parent_area=context.parent_area,
                census_variable=variable,
                census_survey=survey,
                census_universe=group_meta.universe,
                census_table_url=table_doc_url(current_year, dataset, group),
                year=current_year,
            )
        )

    if stat_name is None or stat_type is None:
        raise ActionError("Failed to build import payload.")

    written = await apply_stat_data_payloads(db, all_payloads)
    logger.info(
        "Imported %s as stat %s (%s years, %s rows created, %s merged)",
        variable,
        stat_id,
        len(years),
        written["created"],
        written["merged"],
    )
    return {
        "actionId": action.id,
        "actionType": action.type,
        "status": "completed",
        "createdStatId": stat_id,
        "createdStatName": stat_name,
        "statType": stat_type,
        "yearsProcessed": years,
        "countyBucketsDegradedYears": degraded_years,
        "zipsWithoutCounty": zips_without_county,
        "runId": context.run_id,
    }


async def execute_create_derived_stat(db: DataStore, action: Action, context: ActionContext) -> Dict[str, Any]:
    payload = action.payload
    formula = coerce_formula(payload.get("formula"))
    name = normalize_string(payload.get("name"))
    if not name:
        raise ActionError("create_derived_stat requires payload.name.")
    label = normalize_string(payload.get("label")) or name
    category = coerce_category(payload.get("category"))
    source = (
        normalize_string(payload.get("description"))
        or normalize_string(payload.get("source"))
        or DEFAULT_DERIVED_SOURCE
    )
    created_by = normalize_string(payload.get("createdBy"))
    visibility = coerce_visibility(payload.get("visibility"), "private")

    lookup_ids: List[str] = []
    for candidate in [payload.get("numeratorId"), payload.get("denominatorId"), payload.get("statId")]:
        value = normalize_string(candidate)
        if value and value not in lookup_ids:
            lookup_ids.append(value)
    for value in string_list(payload.get("sumOperandIds")):
        if value not in lookup_ids:
            lookup_ids.append(value)

    rows_by_stat = await fetch_root_rows_by_stat_ids(db, lookup_ids)
    derived_rows = create_derived_rows(formula, payload, rows_by_stat)

    now = now_ms()
    new_stat_id = new_id()
    record: Dict[str, Any] = {
        "name": name,
        "label": label,
        "category": category,
        "source": source,
        "goodIfUp": None,
        "featured": False,
        "homeFeatured": False,
        "visibility": visibility,
        "visibilityEffective": visibility,
        "createdOn": now,
        "lastUpdated": now,
    }
    if created_by:
        record["createdBy"] = created_by
    await db.transact([tx_update("stats", new_stat_id, record)])

    data_type = FORMULA_TO_STAT_TYPE[formula]
    operations: List[List[Any]] = []
    for row in sorted(derived_rows, key=lambda r: r.date or ""):
        if not row.parent_area or not row.boundary_type or not row.date:
            continue
        key = summary_key(new_stat_id, "root", row.parent_area, row.boundary_type)
        summary = compute_summary(row.data)
        operations.append(
            tx_update(
                "statData",
                new_id(),
                {
                    "statId": new_stat_id,
                    "name": "root",
                    "parentArea": row.parent_area,
                    "boundaryType": row.boundary_type,
                    "date": row.date,
                    "type": data_type,
                    "data": row.data,
                    "source": source,
                    "statTitle": label,
                    "createdOn": now,
                    "lastUpdated": now,
                },
            )
        )
        operations.append(
            tx_update(
                "statDataSummaries",
                lookup("summaryKey", key),
                {
                    "summaryKey": key,
                    "statId": new_stat_id,
                    "name": "root",
                    "parentArea": row.parent_area,
                    "boundaryType": row.boundary_type,
                    "date": row.date,
                    "minDate": row.date,
                    "maxDate": row.date,
                    "type": data_type,
                    "updatedAt": now,
                    **summary,
                },
            )
        )

    await chunk_and_transact(db, operations, WRITE_TX_BATCH)
    return {
        "actionId": action.id,
        "actionType": action.type,
        "status": "completed",
        "createdStatId": new_stat_id,
        "createdStatName": name,
        "createdRows": len(operations) // 2,
        "formula": formula,
        "runId": context.run_id,
    }


def relation_key(parent_id: str, child_id: str, attribute: str) -> str:
    return f"{parent_id}::{child_id}::{attribute}"


async def execute_create_stat_family_links(db: DataStore, action: Action, context: ActionContext) -> Dict[str, Any]:
    payload = action.payload
    parent_id = normalize_string(payload.get("parentStatId"))
    if not parent_id:
        raise ActionError("create_stat_family_links requires payload.parentStatId.")
    child_ids = [cid for cid in dict.fromkeys(string_list(payload.get("childStatIds"))) if cid != parent_id]
    if not child_ids:
        raise ActionError("create_stat_family_links requires at least one childStatId different from parentStatId.")

    attribute = normalize_string(payload.get("statAttribute")) or UNDEFINED_STAT_ATTRIBUTE
    sort_order_raw = parse_number(payload.get("sortOrder"))
    sort_order = int(sort_order_raw) if sort_order_raw is not None else None
    now = now_ms()

    keys = [relation_key(parent_id, child_id, attribute) for child_id in child_ids]
    resp = await db.query(
        {"statRelations": {"$": {"where": {"relationKey": {"$in": keys}}, "fields": ["relationKey"]}}}
    )
    existing = {
        key for key in (normalize_string(row.get("relationKey")) for row in unwrap_rows(resp, "statRelations")) if key
    }

    operations: List[List[Any]] = []
    for child_id in child_ids:
        key = relation_key(parent_id, child_id, attribute)
        if key in existing:
            continue
        record: Dict[str, Any] = {
            "relationKey": key,
            "parentStatId": parent_id,
            "childStatId": child_id,
            "statAttribute": attribute,
            "createdAt": now,
            "updatedAt": now,
        }
        if sort_order is not None:
            record["sortOrder"] = sort_order
        operations.append(tx_update("statRelations", new_id(), record))

    await chunk_and_transact(db, operations, WRITE_TX_BATCH)
    return {
        "actionId": action.id,
        "actionType": action.type,
        "status": "completed",
        "createdRelations": len(operations),
        "skippedExistingRelations": len(keys) - len(operations),
        "runId": context.run_id,
    }


EXECUTORS = {
    "import_census_stat": execute_import_census_stat,
    "create_derived_stat": execute_create_derived_stat,
    "create_stat_family_links": execute_create_stat_family_links,
}


async def execute_write_action(db: DataStore, action: Action, context: ActionContext) -> Dict[str, Any]:
    executor = EXECUTORS.get(action.type)
    if executor is None:
        return {
            "actionId": action.id,
            "actionType": action.type,
            "status": "accepted_not_executed",
            "message": "Read-only action accepted.",
            "runId": context.run_id,
        }
    return await executor(db, action, context)


def summarize_result(value: Any) -> str:
    """Short one-line summary of an executor result for the run log."""
    if isinstance(value, dict):
        parts = []
        for key in ("status", "createdStatId", "createdStatName", "createdRows", "createdRelations", "yearsProcessed"):
            if key in value:
                parts.append(f"{key}={value[key]}")
        if parts:
            return ", ".join(parts)
    text = str(value)
    return text if len(text) <= 200 else f"{text[:197]}..."
