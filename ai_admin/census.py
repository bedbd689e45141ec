import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from .config import DEFAULT_ZIP_PREFIXES

ZCTA_FIELD = "zip code tabulation area"
SENTINEL_FLOOR = -99999999

CUSTOM_LABELS = {
    "B22003_001E": "Total Households",
    "B22003_002E": "Households Receiving SNAP",
    "B22003_003E": "Households Receiving SNAP (Below Poverty)",
    "B22003_004E": "Households Receiving SNAP (At or Above Poverty)",
    "B22003_005E": "Households Not Receiving SNAP",
    "B22003_006E": "Households Not Receiving SNAP (Below Poverty)",
    "B22003_007E": "Households Not Receiving SNAP (At or Above Poverty)",
    "B01002_001E": "Median Age",
    "B01003_001E": "Population",
    "B12001_001E": "Population 15+",
    "B12001_004E": "Married Population (Male)",
    "B12001_010E": "Married Population (Female)",
}


class CensusError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class VariableMeta:
    name: str
    label: str = ""
    concept: Optional[str] = None
    predicate_type: Optional[str] = None


@dataclass
class GroupMeta:
    group: str
    label: str
    concept: str
    universe: Optional[str] = None
    variables: Dict[str, VariableMeta] = field(default_factory=dict)


@dataclass
class DataMaps:
    zip: Dict[str, float] = field(default_factory=dict)
    zip_moe: Dict[str, float] = field(default_factory=dict)
    county: Dict[str, float] = field(default_factory=dict)
    county_moe: Dict[str, float] = field(default_factory=dict)
    # county scope label -> {zip: value}
    county_zip_buckets: Dict[str, Dict[str, float]] = field(default_factory=dict)
    county_zip_moe: Dict[str, Dict[str, float]] = field(default_factory=dict)


def table_doc_url(year: int, dataset: str, group: str) -> str:
    return f"https://api.census.gov/data/{year}/{dataset}/groups/{group}.html"


def survey_for_dataset(dataset: str) -> str:
    return dataset.split("/")[-1] or "acs5"


def to_number_or_none(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text or text == "null":
            return None
        try:
            num = float(text)
        except ValueError:
            return None
    elif isinstance(value, (int, float)):
        num = float(value)
    else:
        return None
    if not math.isfinite(num) or num <= SENTINEL_FLOOR:
        return None
    return int(num) if num.is_integer() else num


def normalize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(segment[:1].upper() + segment[1:].lower() for segment in value.split(" ") if segment)


def clean_variable_label(label: str) -> str:
    if not label:
        return ""
    cleaned = re.sub(r"^Estimate!!", "", label, flags=re.IGNORECASE)
    cleaned = cleaned.replace("!!", " → ")
    cleaned = re.sub(r":+$", "", cleaned)
    return cleaned.strip()


def derive_stat_name(variable_name: str, variable: VariableMeta, group: GroupMeta) -> str:
    custom = CUSTOM_LABELS.get(variable_name)
    if custom:
        return custom
    cleaned = clean_variable_label(variable.label)
    if not cleaned:
        return normalize_text(group.concept or variable.name)
    concept = normalize_text(group.concept or "")
    if not concept:
        return cleaned
    if concept.lower() in cleaned.lower():
        return cleaned
    return f"{concept} – {cleaned}"


def infer_stat_type(variable: VariableMeta) -> str:
    label = (variable.label or "").lower()
    if "percent" in label or "%" in label:
        return "percent"
    predicate = (variable.predicate_type or "").lower()
    if predicate in ("float", "double"):
        return "rate"
    return "count"


def resolve_variables(
    variables: Sequence[str], group_meta: GroupMeta, include_moe: bool = False
) -> Tuple[List[str], Dict[str, str]]:
    """Return (available estimate ids, estimate -> margin-of-error id)."""
    base = list(variables) or [
        name for name in group_meta.variables if name.endswith("E") and name != "NAME"
    ]
    estimates = [name for name in base if name in group_meta.variables]
    moe_map: Dict[str, str] = {}
    if include_moe:
        for estimate in estimates:
            candidate = f"{estimate[:-1]}M"
            if candidate in group_meta.variables:
                moe_map[estimate] = candidate
    return estimates, moe_map


def normalize_county_fips(county_id: Optional[str], state_fips: str) -> Optional[str]:
    if not county_id:
        return None
    trimmed = str(county_id).strip()
    if not trimmed:
        return None
    if len(trimmed) == 5:
        return trimmed
    if len(trimmed) < 5:
        return f"{state_fips}{trimmed.zfill(3)}"
    return trimmed


def rows_to_records(data: Any) -> List[Dict[str, Any]]:
    """Census responses are a header row followed by value rows."""
    if not isinstance(data, list) or not data:
        return []
    headers = data[0]
    return [dict(zip(headers, row)) for row in data[1:] if isinstance(row, list)]


def build_data_maps(
    variable: str,
    moe_variable: Optional[str],
    zip_records: List[Dict[str, Any]],
    county_records: List[Dict[str, Any]],
    zip_prefixes: Sequence[str],
    state_fips: str,
) -> DataMaps:
    maps = DataMaps()
    prefixes = set(zip_prefixes)
    for record in zip_records:
        zip_code = record.get(ZCTA_FIELD)
        if not isinstance(zip_code, str) or zip_code[:3] not in prefixes:
            continue
        estimate = to_number_or_none(record.get(variable))
        if estimate is not None:
            maps.zip[zip_code] = estimate
        if moe_variable:
            moe = to_number_or_none(record.get(moe_variable))
            if moe is not None:
                maps.zip_moe[zip_code] = moe

    for record in county_records:
        if record.get("state") != state_fips:
            continue
        county_id = normalize_county_fips(record.get("county"), state_fips)
        if not county_id:
            continue
        estimate = to_number_or_none(record.get(variable))
        if estimate is not None:
            maps.county[county_id] = estimate
        if moe_variable:
            moe = to_number_or_none(record.get(moe_variable))
            if moe is not None:
                maps.county_moe[county_id] = moe
    return maps


class CensusClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://api.census.gov/data",
        state_fips: str = "40",
        zip_prefixes: Optional[Sequence[str]] = None,
        timeout: float = 60,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.state_fips = state_fips
        self.zip_prefixes = list(zip_prefixes or DEFAULT_ZIP_PREFIXES)
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    def _url(self, year: int, dataset: str, path: str = "") -> str:
        base = f"{self.base_url}/{year}/{dataset}"
        trimmed = path.lstrip("/")
        return f"{base}/{trimmed}" if trimmed else base

    async def fetch_json(self, year: int, dataset: str, path: str = "", params: Optional[Dict[str, str]] = None) -> Any:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if self.api_key:
            query["key"] = self.api_key
        url = self._url(year, dataset, path)
        try:
            resp = await self.client.get(url, params=query)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            text = e.response.text or e.response.reason_phrase
            raise CensusError(f"Census HTTP {e.response.status_code}: {text}", e.response.status_code) from e
        except httpx.RequestError as e:
            raise CensusError(f"Census request failed: {e}") from e
        try:
            return resp.json()
        except ValueError as e:
            raise CensusError(f"Census returned non-JSON body for {url}") from e

    async def fetch_groups(self, year: int, dataset: str) -> List[Dict[str, str]]:
        data = await self.fetch_json(year, dataset, "groups.json")
        raw_groups = data.get("groups", []) if isinstance(data, dict) else []
        groups = []
        for group in raw_groups:
            name = group.get("name") if isinstance(group, dict) else None
            if not isinstance(name, str):
                continue
            description = group.get("description")
            groups.append({"name": name, "description": description if isinstance(description, str) else name})
        return groups

    async def fetch_group_metadata(self, year: int, dataset: str, group: str) -> GroupMeta:
        data = await self.fetch_json(year, dataset, f"groups/{group}.json")
        data = data if isinstance(data, dict) else {}
        variables: Dict[str, VariableMeta] = {}
        for key, value in (data.get("variables") or {}).items():
            value = value if isinstance(value, dict) else {}
            name = value.get("name") or key
            variables[name] = VariableMeta(
                name=name,
                label=value.get("label") or "",
                concept=value.get("concept"),
                predicate_type=value.get("predicateType"),
            )
        return GroupMeta(
            group=group,
            label=data.get("label") or data.get("concept") or group,
            concept=data.get("concept") or data.get("label") or group,
            universe=data.get("universe"),
            variables=variables,
        )

    async def fetch_zip_data(
        self, year: int, dataset: str, estimates: Sequence[str], moe_variables: Sequence[str] = ()
    ) -> List[Dict[str, Any]]:
        if not estimates:
            return []
        params = {"get": ",".join(["NAME", *estimates, *moe_variables]), "for": f"{ZCTA_FIELD}:*"}
        return rows_to_records(await self.fetch_json(year, dataset, "", params))

    async def fetch_county_data(
        self, year: int, dataset: str, estimates: Sequence[str], moe_variables: Sequence[str] = ()
    ) -> List[Dict[str, Any]]:
        if not estimates:
            return []
        params = {
            "get": ",".join(["NAME", *estimates, *moe_variables]),
            "for": "county:*",
            "in": f"state:{self.state_fips}",
        }
        return rows_to_records(await self.fetch_json(year, dataset, "", params))

    async def fetch_variable_summaries(self, year: int, dataset: str, variables: Sequence[str]) -> Dict[str, Dict[str, int]]:
        """Count non-sentinel ZIP and county values per variable."""
        result = {variable: {"zipCount": 0, "countyCount": 0} for variable in variables}
        if not variables:
            return result
        zip_records = await self.fetch_zip_data(year, dataset, variables)
        for record in zip_records:
            for variable in variables:
                if to_number_or_none(record.get(variable)) is not None:
                    result[variable]["zipCount"] += 1
        county_records = await self.fetch_county_data(year, dataset, variables)
        for record in county_records:
            for variable in variables:
                if to_number_or_none(record.get(variable)) is not None:
                    result[variable]["countyCount"] += 1
        return result

    def build_data_maps(
        self,
        variable: str,
        moe_variable: Optional[str],
        zip_records: List[Dict[str, Any]],
        county_records: List[Dict[str, Any]],
    ) -> DataMaps:
        return build_data_maps(variable, moe_variable, zip_records, county_records, self.zip_prefixes, self.state_fips)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
