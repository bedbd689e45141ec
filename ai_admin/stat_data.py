import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .census import DataMaps
from .datastore import DataStore, new_id, tx_update, unwrap_rows

logger = logging.getLogger("uvicorn.error")

IMPORT_TX_BATCH = 20
WRITE_TX_BATCH = 10
AREAS_QUERY_LIMIT = 2000


def now_ms() -> int:
    return int(time.time() * 1000)


async def chunk_and_transact(db: DataStore, operations: Sequence[List[Any]], max_batch: int = WRITE_TX_BATCH) -> int:
    """Write operations in fixed-size batches; returns the number of transact calls."""
    calls = 0
    for start in range(0, len(operations), max_batch):
        chunk = list(operations[start : start + max_batch])
        if chunk:
            await db.transact(chunk)
            calls += 1
    return calls


def _normalize_words(value: str) -> str:
    return " ".join(segment[:1].upper() + segment[1:].lower() for segment in value.split() if segment)


def format_county_scope_label(value: Any) -> Optional[str]:
    """Normalize "tulsa county, oklahoma" style names to "Tulsa County"."""
    if not isinstance(value, str) or not value.strip():
        return None
    normalized = _normalize_words(value.strip())
    base = re.sub(r",\s*Oklahoma$", "", normalized, flags=re.IGNORECASE).strip()
    base = re.sub(r"\s+County$", "", base, flags=re.IGNORECASE).strip()
    base = _normalize_words(base)
    if not base:
        return None
    return f"{base} County"


async def zip_to_county_map(db: DataStore) -> Dict[str, str]:
    resp = await db.query(
        {
            "areas": {
                "$": {
                    "where": {"kind": "ZIP"},
                    "fields": ["code", "parentCode"],
                    "limit": AREAS_QUERY_LIMIT,
                }
            }
        }
    )
    mapping: Dict[str, str] = {}
    for row in unwrap_rows(resp, "areas"):
        code = row.get("code")
        parent = row.get("parentCode")
        if isinstance(code, str) and isinstance(parent, str) and code and parent:
            mapping[code] = parent
    return mapping


@dataclass
class HydrationResult:
    degraded: bool = False
    zips_without_county: int = 0


async def hydrate_county_zip_buckets(db: DataStore, maps: DataMaps) -> HydrationResult:
    """Group ZIP values under their county using the store's areas records.

    Failures degrade to statewide ZIP rows only and are reported as degraded.
    """
    try:
        zip_to_county = await zip_to_county_map(db)
    except Exception as exc:
        logger.warning("County ZIP hydration failed; falling back to statewide ZIP rows only: %s", exc)
        return HydrationResult(degraded=True, zips_without_county=len(maps.zip))
    result = HydrationResult()
    for zip_code, value in maps.zip.items():
        county_key = format_county_scope_label(zip_to_county.get(zip_code))
        if not county_key:
            result.zips_without_county += 1
            continue
        maps.county_zip_buckets.setdefault(county_key, {})[zip_code] = value
        moe = maps.zip_moe.get(zip_code)
        if moe is not None:
            maps.county_zip_moe.setdefault(county_key, {})[zip_code] = moe
    return result


@dataclass
class StatDataPayload:
    stat_id: str
    stat_name: str
    stat_type: str
    parent_area: str
    boundary_type: str
    data: Dict[str, float]
    census_variable: str
    census_survey: str
    census_table_url: str
    year: int
    margin: Optional[Dict[str, float]] = None
    census_universe: Optional[str] = None
    name: str = "root"

    @property
    def key(self) -> str:
        return f"{self.boundary_type}::{self.parent_area}::{self.year}::{self.name}"


def build_stat_data_payloads(
    stat_id: str,
    stat_name: str,
    stat_type: str,
    maps: DataMaps,
    parent_area: str,
    census_variable: str,
    census_survey: str,
    census_table_url: str,
    year: int,
    census_universe: Optional[str] = None,
) -> List[StatDataPayload]:
    """One statewide ZIP row, one ZIP row per county bucket, one statewide COUNTY row."""

    def payload(area: str, boundary: str, data: Dict[str, float], margin: Optional[Dict[str, float]]) -> StatDataPayload:
        return StatDataPayload(
            stat_id=stat_id,
            stat_name=stat_name,
            stat_type=stat_type,
            parent_area=area,
            boundary_type=boundary,
            data=data,
            margin=margin or None,
            census_variable=census_variable,
            census_survey=census_survey,
            census_universe=census_universe,
            census_table_url=census_table_url,
            year=year,
        )

    payloads = [payload(parent_area, "ZIP", maps.zip, maps.zip_moe)]
    for county_name, bucket in maps.county_zip_buckets.items():
        if not bucket:
            continue
        payloads.append(payload(county_name, "ZIP", bucket, maps.county_zip_moe.get(county_name)))
    payloads.append(payload(parent_area, "COUNTY", maps.county, maps.county_moe))
    return payloads


def _existing_key(row: Dict[str, Any]) -> str:
    return f"{row.get('boundaryType')}::{row.get('parentArea')}::{row.get('date')}::{row.get('name') or 'root'}"


async def fetch_existing_stat_data(db: DataStore, stat_id: str) -> Dict[str, Dict[str, Any]]:
    resp = await db.query({"statData": {"$": {"where": {"statId": stat_id}}}})
    return {_existing_key(row): row for row in unwrap_rows(resp, "statData")}


def merge_number_maps(existing: Optional[Dict[str, Any]], incoming: Dict[str, float]) -> Dict[str, Any]:
    merged = dict(existing or {})
    merged.update(incoming)
    return merged


async def apply_stat_data_payloads(db: DataStore, payloads: List[StatDataPayload]) -> Dict[str, int]:
    """Merge payload rows into the store, last write wins per area key."""
    if not payloads:
        return {"created": 0, "merged": 0}
    now = now_ms()
    existing = await fetch_existing_stat_data(db, payloads[0].stat_id)
    operations: List[List[Any]] = []
    created = 0
    merged_count = 0

    for payload in payloads:
        key = payload.key
        base_fields: Dict[str, Any] = {
            "statId": payload.stat_id,
            "name": payload.name,
            "statTitle": payload.stat_name,
            "statNameHint": payload.stat_name,
            "parentArea": payload.parent_area,
            "boundaryType": payload.boundary_type,
            "date": str(payload.year),
            "type": payload.stat_type,
            "source": "Census",
            "censusVariable": payload.census_variable,
            "censusSurvey": payload.census_survey,
            "censusUniverse": payload.census_universe,
            "censusTableUrl": payload.census_table_url,
        }
        row = existing.get(key)
        if row:
            merged = merge_number_maps(row.get("data"), payload.data)
            updates = {**base_fields, "data": merged, "lastUpdated": now}
            if payload.margin:
                updates["marginOfError"] = merge_number_maps(row.get("marginOfError"), payload.margin)
            operations.append(tx_update("statData", row["id"], updates))
            existing[key] = {**row, **updates}
            merged_count += 1
        else:
            row_id = new_id()
            record = {**base_fields, "data": dict(payload.data), "createdOn": now, "lastUpdated": now}
            if payload.margin:
                record["marginOfError"] = dict(payload.margin)
            operations.append(tx_update("statData", row_id, record))
            existing[key] = {**record, "id": row_id}
            created += 1

    await chunk_and_transact(db, operations, IMPORT_TX_BATCH)
    return {"created": created, "merged": merged_count}


def compute_summary(data: Dict[str, Any]) -> Dict[str, float]:
    values = [v for v in (data or {}).values() if isinstance(v, (int, float)) and not isinstance(v, bool)]
    if not values:
        return {"count": 0, "sum": 0, "avg": 0, "min": 0, "max": 0}
    total = sum(values)
    return {"count": len(values), "sum": total, "avg": total / len(values), "min": min(values), "max": max(values)}


def summary_key(stat_id: str, name: str, parent_area: Optional[str], boundary_type: Optional[str]) -> str:
    return f"{stat_id}::{name}::{parent_area or ''}::{boundary_type or ''}"
