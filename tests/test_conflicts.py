import pytest

from ai_admin.conflicts import collect_plan_identities, find_existing_stat_conflicts
from ai_admin.schemas import Action
from tests.fakes import FakeDataStore


def derived(action_id: str, name: str) -> Action:
    return Action(id=action_id, type="create_derived_stat", payload={"name": name, "formula": "percent"})


def imported(action_id: str, variable: str) -> Action:
    return Action(id=action_id, type="import_census_stat", payload={"group": "B01001", "variable": variable})


@pytest.mark.asyncio
async def test_duplicate_derived_names_in_plan_report_one_conflict_per_action():
    actions = [derived("a", "Male share"), derived("b", "Male share")]
    conflicts = await find_existing_stat_conflicts(FakeDataStore(), actions)
    assert len(conflicts) == 2
    assert {c.action_id for c in conflicts} == {"a", "b"}
    assert {c.reason for c in conflicts} == {"duplicate_derived_name_in_plan"}


def test_duplicate_imports_in_plan_are_flagged_before_storage():
    _, _, duplicates = collect_plan_identities([imported("a", "B01001_001E"), imported("b", "B01001_001E")])
    assert [(c.action_id, c.reason, c.ne_id) for c in duplicates] == [
        ("a", "duplicate_import_in_plan", "census:B01001_001E"),
        ("b", "duplicate_import_in_plan", "census:B01001_001E"),
    ]


@pytest.mark.asyncio
async def test_existing_stats_are_reported_with_ids():
    db = FakeDataStore(
        seed={
            "stats": [
                {"id": "stat-pop", "name": "Population", "neId": "census:B01003_001E"},
                {"id": "stat-share", "name": "Male share"},
            ]
        }
    )
    actions = [imported("i1", "B01003_001E"), imported("i2", "B01001_002E"), derived("d1", "Male share")]
    conflicts = await find_existing_stat_conflicts(db, actions)

    by_action = {c.action_id: c for c in conflicts}
    assert set(by_action) == {"i1", "d1"}
    assert by_action["i1"].reason == "existing_stat_by_external_id"
    assert by_action["i1"].stat_id == "stat-pop"
    assert by_action["d1"].reason == "existing_stat_by_name"
    assert by_action["d1"].stat_id == "stat-share"


@pytest.mark.asyncio
async def test_detection_never_writes_and_skips_queries_without_identities():
    db = FakeDataStore()
    actions = [Action(id="r", type="research_census", payload={}), Action(id="f", type="create_stat_family_links", payload={})]
    assert await find_existing_stat_conflicts(db, actions) == []
    assert db.queries == []
    assert db.transactions == []


@pytest.mark.asyncio
async def test_conflicts_serialize_with_camel_case_keys():
    db = FakeDataStore(seed={"stats": [{"id": "s1", "name": "Pop", "neId": "census:V_001E"}]})
    conflicts = await find_existing_stat_conflicts(db, [imported("i", "V_001E")])
    data = conflicts[0].to_json()
    assert data["actionId"] == "i"
    assert data["statId"] == "s1"
    assert data["neId"] == "census:V_001E"
