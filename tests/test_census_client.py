import pytest
import respx
from httpx import Response

from ai_admin.census import (
    CensusClient,
    CensusError,
    GroupMeta,
    VariableMeta,
    derive_stat_name,
    infer_stat_type,
    resolve_variables,
    to_number_or_none,
)

BASE = "https://api.census.gov/data"


def test_to_number_or_none_discards_sentinels():
    assert to_number_or_none("123") == 123
    assert to_number_or_none("12.5") == 12.5
    assert to_number_or_none("-666666666") is None
    assert to_number_or_none("null") is None
    assert to_number_or_none(float("nan")) is None
    assert to_number_or_none(True) is None


def test_stat_naming_and_type_inference():
    group = GroupMeta(group="B19013", label="MEDIAN HOUSEHOLD INCOME", concept="MEDIAN HOUSEHOLD INCOME")
    variable = VariableMeta(name="B19013_001E", label="Estimate!!Median household income!!Total:")
    assert derive_stat_name("B19013_001E", variable, group) == "Median household income → Total"
    other = VariableMeta(name="B19013_002E", label="Estimate!!Total:")
    assert derive_stat_name("B19013_002E", other, group) == "Median Household Income – Total"
    assert derive_stat_name("B01003_001E", variable, group) == "Population"
    assert infer_stat_type(VariableMeta(name="x", label="Percent!!Total")) == "percent"
    assert infer_stat_type(VariableMeta(name="x", label="Total", predicate_type="float")) == "rate"
    assert infer_stat_type(VariableMeta(name="x", label="Total", predicate_type="int")) == "count"


def test_resolve_variables_with_margins():
    group = GroupMeta(
        group="B01001",
        label="x",
        concept="x",
        variables={name: VariableMeta(name=name) for name in ("B01001_001E", "B01001_001M", "B01001_002E")},
    )
    estimates, moe = resolve_variables([], group, include_moe=True)
    assert estimates == ["B01001_001E", "B01001_002E"]
    assert moe == {"B01001_001E": "B01001_001M"}
    estimates, _ = resolve_variables(["B01001_002E", "B99999_001E"], group)
    assert estimates == ["B01001_002E"]


@pytest.mark.asyncio
async def test_fetch_group_metadata_parses_variables_and_sends_key():
    client = CensusClient("census-key")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.get(f"{BASE}/2023/acs/acs5/groups/B01001.json").mock(
                return_value=Response(
                    200,
                    json={
                        "concept": "SEX BY AGE",
                        "universe": "Total population",
                        "variables": {
                            "B01001_001E": {"label": "Estimate!!Total:", "predicateType": "int"},
                        },
                    },
                )
            )
            meta = await client.fetch_group_metadata(2023, "acs/acs5", "B01001")
            assert route.calls.last.request.url.params["key"] == "census-key"
        assert meta.concept == "SEX BY AGE"
        assert meta.universe == "Total population"
        assert meta.variables["B01001_001E"].predicate_type == "int"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_fetch_county_data_scopes_to_state():
    client = CensusClient(None, state_fips="40")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.get(f"{BASE}/2023/acs/acs5").mock(
                return_value=Response(
                    200,
                    json=[["NAME", "B01001_001E", "state", "county"], ["Tulsa County", "650000", "40", "143"]],
                )
            )
            records = await client.fetch_county_data(2023, "acs/acs5", ["B01001_001E"])
            params = route.calls.last.request.url.params
            assert params["for"] == "county:*"
            assert params["in"] == "state:40"
            assert params["get"] == "NAME,B01001_001E"
            assert "key" not in params
        assert records == [{"NAME": "Tulsa County", "B01001_001E": "650000", "state": "40", "county": "143"}]
        maps = client.build_data_maps("B01001_001E", None, [], records)
        assert maps.county == {"40143": 650000}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_fetch_variable_summaries_counts_non_sentinel_values():
    client = CensusClient(None)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                if request.url.params["for"].startswith("zip"):
                    return Response(
                        200,
                        json=[
                            ["NAME", "V_001E", "zip code tabulation area"],
                            ["a", "10", "73301"],
                            ["b", "-666666666", "73302"],
                        ],
                    )
                return Response(200, json=[["NAME", "V_001E", "state", "county"], ["c", "5", "40", "001"]])

            respx_mock.get(f"{BASE}/2023/acs/acs5").mock(side_effect=handler)
            summaries = await client.fetch_variable_summaries(2023, "acs/acs5", ["V_001E"])
        assert summaries == {"V_001E": {"zipCount": 1, "countyCount": 1}}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_http_errors_raise_census_error():
    client = CensusClient(None)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(f"{BASE}/2023/acs/acs5/groups.json").mock(return_value=Response(503, text="busy"))
            with pytest.raises(CensusError) as info:
                await client.fetch_groups(2023, "acs/acs5")
        assert info.value.status_code == 503
        assert "Census HTTP 503: busy" in str(info.value)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_fetch_groups_normalizes_entries():
    client = CensusClient(None)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get(f"{BASE}/2023/acs/acs5/groups.json").mock(
                return_value=Response(
                    200,
                    json={"groups": [{"name": "B01001", "description": "SEX BY AGE"}, {"name": "B02001"}, {"bad": 1}]},
                )
            )
            groups = await client.fetch_groups(2023, "acs/acs5")
        assert groups == [
            {"name": "B01001", "description": "SEX BY AGE"},
            {"name": "B02001", "description": "B02001"},
        ]
    finally:
        await client.close()
