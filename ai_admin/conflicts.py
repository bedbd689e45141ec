from typing import Dict, List, Sequence

from .datastore import DataStore, unwrap_rows
from .plan_validation import normalize_string
from .schemas import Action, Conflict


def import_external_id(action: Action) -> str:
    variable = normalize_string(action.payload.get("variable"))
    return f"census:{variable}" if variable else ""


def collect_plan_identities(actions: Sequence[Action]):
    """Map action ids to the identity each would create and flag in-plan repeats."""
    import_ne_ids: Dict[str, str] = {}
    derived_names: Dict[str, str] = {}
    by_ne_id: Dict[str, List[str]] = {}
    by_name: Dict[str, List[str]] = {}

    for action in actions:
        if action.type == "import_census_stat":
            ne_id = import_external_id(action)
            if not ne_id:
                continue
            import_ne_ids[action.id] = ne_id
            by_ne_id.setdefault(ne_id, []).append(action.id)
        elif action.type == "create_derived_stat":
            name = normalize_string(action.payload.get("name"))
            if not name:
                continue
            derived_names[action.id] = name
            by_name.setdefault(name, []).append(action.id)

    duplicates: List[Conflict] = []
    for ne_id, action_ids in by_ne_id.items():
        if len(action_ids) < 2:
            continue
        for action_id in action_ids:
            duplicates.append(
                Conflict(
                    action_id=action_id,
                    action_type="import_census_stat",
                    reason="duplicate_import_in_plan",
                    ne_id=ne_id,
                    detail=f"Plan includes duplicate import variable {ne_id}.",
                )
            )
    for name, action_ids in by_name.items():
        if len(action_ids) < 2:
            continue
        for action_id in action_ids:
            duplicates.append(
                Conflict(
                    action_id=action_id,
                    action_type="create_derived_stat",
                    reason="duplicate_derived_name_in_plan",
                    stat_name=name,
                    detail=f'Plan includes duplicate derived stat name "{name}".',
                )
            )
    return import_ne_ids, derived_names, duplicates


async def find_existing_stat_conflicts(db: DataStore, actions: Sequence[Action]) -> List[Conflict]:
    """Preflight check; queries only, never writes."""
    import_ne_ids, derived_names, conflicts = collect_plan_identities(actions)

    ne_ids = sorted(set(import_ne_ids.values()))
    if ne_ids:
        resp = await db.query({"stats": {"$": {"where": {"neId": {"$in": ne_ids}}, "fields": ["id", "name", "neId"]}}})
        existing_by_ne_id = {}
        for row in unwrap_rows(resp, "stats"):
            ne_id = normalize_string(row.get("neId"))
            stat_id = normalize_string(row.get("id"))
            if ne_id and stat_id:
                existing_by_ne_id[ne_id] = (stat_id, normalize_string(row.get("name")))
        for action_id, ne_id in import_ne_ids.items():
            existing = existing_by_ne_id.get(ne_id)
            if not existing:
                continue
            conflicts.append(
                Conflict(
                    action_id=action_id,
                    action_type="import_census_stat",
                    reason="existing_stat_by_external_id",
                    stat_id=existing[0],
                    stat_name=existing[1],
                    ne_id=ne_id,
                    detail=f"Existing stat found for {ne_id}.",
                )
            )

    names = sorted(set(derived_names.values()))
    if names:
        resp = await db.query({"stats": {"$": {"where": {"name": {"$in": names}}, "fields": ["id", "name", "neId"]}}})
        existing_by_name = {}
        for row in unwrap_rows(resp, "stats"):
            name = normalize_string(row.get("name"))
            stat_id = normalize_string(row.get("id"))
            if name and stat_id:
                existing_by_name[name] = (stat_id, normalize_string(row.get("neId")))
        for action_id, name in derived_names.items():
            existing = existing_by_name.get(name)
            if not existing:
                continue
            conflicts.append(
                Conflict(
                    action_id=action_id,
                    action_type="create_derived_stat",
                    reason="existing_stat_by_name",
                    stat_id=existing[0],
                    stat_name=name,
                    ne_id=existing[1],
                    detail=f'Existing stat found with name "{name}".',
                )
            )

    return conflicts
