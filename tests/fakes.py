import copy
import json
import uuid
from typing import Any, Dict, List, Optional, Sequence

from ai_admin.census import DataMaps, GroupMeta, VariableMeta, build_data_maps, to_number_or_none
from ai_admin.config import DEFAULT_ZIP_PREFIXES


def _matches(row: Dict[str, Any], where: Dict[str, Any]) -> bool:
    for attr, expected in where.items():
        value = row.get(attr)
        if isinstance(expected, dict) and "$in" in expected:
            if value not in expected["$in"]:
                return False
        elif value != expected:
            return False
    return True


class FakeDataStore:
    """In-memory stand-in for the admin store: equality/$in where, fields, limit, update + lookup upserts."""

    def __init__(
        self,
        seed: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        fail_queries: Sequence[str] = (),
    ) -> None:
        self.entities: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.queries: List[Dict[str, Any]] = []
        self.transactions: List[List[List[Any]]] = []
        self.fail_queries = set(fail_queries)
        self.closed = False
        for entity, rows in (seed or {}).items():
            for row in rows:
                self.insert(entity, row)

    def insert(self, entity: str, row: Dict[str, Any]) -> str:
        row_id = row.get("id") or str(uuid.uuid4())
        self.entities.setdefault(entity, {})[row_id] = {**copy.deepcopy(row), "id": row_id}
        return row_id

    def rows(self, entity: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(row) for row in self.entities.get(entity, {}).values()]

    @property
    def write_count(self) -> int:
        return sum(len(tx) for tx in self.transactions)

    async def query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        self.queries.append(copy.deepcopy(query))
        result: Dict[str, Any] = {}
        for entity, clause in query.items():
            if entity in self.fail_queries:
                raise RuntimeError(f"store unavailable for {entity}")
            options = (clause or {}).get("$", {})
            where = options.get("where") or {}
            fields = options.get("fields")
            limit = options.get("limit")
            matched = [row for row in self.entities.get(entity, {}).values() if _matches(row, where)]
            if limit is not None:
                matched = matched[:limit]
            if fields:
                matched = [{key: row.get(key) for key in [*fields, "id"] if key in row} for row in matched]
            result[entity] = copy.deepcopy(matched)
        return result

    async def transact(self, steps: Sequence[List[Any]]) -> Dict[str, Any]:
        self.transactions.append(copy.deepcopy(list(steps)))
        for op, entity, entity_id, attrs in steps:
            assert op == "update", f"unexpected op {op}"
            table = self.entities.setdefault(entity, {})
            if isinstance(entity_id, list):
                attr, value = entity_id
                existing = next((row for row in table.values() if row.get(attr) == value), None)
                row_id = existing["id"] if existing else str(uuid.uuid4())
            else:
                row_id = entity_id
            current = table.get(row_id, {"id": row_id})
            table[row_id] = {**current, **copy.deepcopy(attrs)}
        return {"status": "ok"}

    async def close(self) -> None:
        self.closed = True


def make_group(
    group: str = "B01001",
    concept: str = "SEX BY AGE",
    universe: str = "Total population",
    variables: Optional[Dict[str, str]] = None,
) -> GroupMeta:
    variables = variables or {"B01001_001E": "Estimate!!Total:", "B01001_001M": "Margin of Error!!Total:"}
    return GroupMeta(
        group=group,
        label=concept,
        concept=concept,
        universe=universe,
        variables={name: VariableMeta(name=name, label=label, concept=concept) for name, label in variables.items()},
    )


class FakeCensusClient:
    def __init__(
        self,
        groups: Optional[List[Dict[str, str]]] = None,
        metadata: Optional[Dict[str, GroupMeta]] = None,
        zip_values: Optional[Dict[str, Any]] = None,
        county_values: Optional[Dict[str, Any]] = None,
        missing_years: Optional[Sequence[int]] = None,
        fail_groups: bool = False,
        state_fips: str = "40",
    ) -> None:
        self.groups = groups if groups is not None else [
            {"name": "B01001", "description": "Sex by Age"},
            {"name": "B19013", "description": "Median Household Income"},
        ]
        self.metadata = metadata if metadata is not None else {"B01001": make_group()}
        self.zip_values = zip_values if zip_values is not None else {"73301": 100, "74001": 200, "90210": 999}
        self.county_values = county_values if county_values is not None else {"001": 300, "003": "-666666666"}
        self.missing_years = set(missing_years or [])
        self.fail_groups = fail_groups
        self.state_fips = state_fips
        self.zip_prefixes = list(DEFAULT_ZIP_PREFIXES)
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def fetch_groups(self, year: int, dataset: str) -> List[Dict[str, str]]:
        self.calls.append({"method": "fetch_groups", "year": year, "dataset": dataset})
        if self.fail_groups:
            raise RuntimeError("Census HTTP 503: unavailable")
        return list(self.groups)

    async def fetch_group_metadata(self, year: int, dataset: str, group: str) -> GroupMeta:
        self.calls.append({"method": "fetch_group_metadata", "year": year, "dataset": dataset, "group": group})
        meta = self.metadata.get(group)
        if meta is None:
            raise RuntimeError(f"Census HTTP 404: unknown group {group}")
        if year in self.missing_years:
            return GroupMeta(group=meta.group, label=meta.label, concept=meta.concept, universe=meta.universe)
        return copy.deepcopy(meta)

    async def fetch_zip_data(
        self, year: int, dataset: str, estimates: Sequence[str], moe_variables: Sequence[str] = ()
    ) -> List[Dict[str, Any]]:
        self.calls.append({"method": "fetch_zip_data", "year": year, "estimates": list(estimates)})
        return [
            {"NAME": f"ZCTA5 {zip_code}", "zip code tabulation area": zip_code, **{v: str(value) for v in estimates}}
            for zip_code, value in self.zip_values.items()
        ]

    async def fetch_county_data(
        self, year: int, dataset: str, estimates: Sequence[str], moe_variables: Sequence[str] = ()
    ) -> List[Dict[str, Any]]:
        self.calls.append({"method": "fetch_county_data", "year": year, "estimates": list(estimates)})
        return [
            {"NAME": f"County {county}", "state": self.state_fips, "county": county, **{v: str(value) for v in estimates}}
            for county, value in self.county_values.items()
        ]

    async def fetch_variable_summaries(self, year: int, dataset: str, variables: Sequence[str]) -> Dict[str, Dict[str, int]]:
        zip_count = sum(1 for value in self.zip_values.values() if to_number_or_none(value) is not None)
        county_count = sum(1 for value in self.county_values.values() if to_number_or_none(value) is not None)
        return {variable: {"zipCount": zip_count, "countyCount": county_count} for variable in variables}

    def build_data_maps(
        self,
        variable: str,
        moe_variable: Optional[str],
        zip_records: List[Dict[str, Any]],
        county_records: List[Dict[str, Any]],
    ) -> DataMaps:
        return build_data_maps(variable, moe_variable, zip_records, county_records, self.zip_prefixes, self.state_fips)

    async def close(self) -> None:
        self.closed = True


class FakeLLMClient:
    def __init__(self, response: Optional[Any] = None, error: Optional[Exception] = None, api_key: str = "test-key") -> None:
        self.api_key = api_key
        self.response = response
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 900,
    ) -> Dict[str, Any]:
        self.calls.append({"model": model, "messages": messages, "temperature": temperature, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        if isinstance(self.response, str):
            content = self.response
        else:
            content = json.dumps(self.response or {"confidence": 0.5, "imports": []})
        return {"choices": [{"message": {"content": content}}]}

    async def close(self) -> None:
        self.closed = True
