import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .auth import authorize_request
from .census import CensusClient
from .config import AppSettings, load_settings
from .datastore import DataStore, InstantAdminClient
from .llm import OpenRouterClient
from .orchestrator import RunOrchestrator, response_mode
from .plan_validation import normalize_string
from .planner import CensusGroupSearch, CensusImportInspector, OpenRouterModelPlanner, Planner
from .run_store import RunStore

logger = logging.getLogger("uvicorn.error")

router = APIRouter()


class InvalidJSONBody(ValueError):
    pass


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> RunOrchestrator:
    return request.app.state.orchestrator


def get_planner(request: Request) -> Planner:
    return request.app.state.planner


def get_run_store(request: Request) -> RunStore:
    return request.app.state.run_store


async def read_json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return await request.json()
    except ValueError as exc:
        raise InvalidJSONBody(str(exc)) from exc


async def _authorized_body(request: Request, settings: AppSettings, mode_for: Callable[[Any], str]):
    """Returns (body, None) or (None, error response) tagged with mode_for(body)."""
    try:
        body = await read_json_body(request)
    except InvalidJSONBody:
        return None, JSONResponse({"ok": False, "mode": mode_for(None), "error": "Invalid JSON body."}, status_code=400)
    caller_email = normalize_string(body.get("callerEmail")) if isinstance(body, dict) else None
    auth = authorize_request(request.headers, caller_email, settings)
    if not auth["ok"]:
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, auth["reason"])
        return None, JSONResponse(
            {"ok": False, "mode": mode_for(body), "error": "Forbidden", "reason": auth["reason"]},
            status_code=403,
        )
    return body, None


def _plan_mode(body: Any) -> str:
    return "plan"


@router.get("/health")
async def health(
    settings: AppSettings = Depends(get_settings),
    run_store: RunStore = Depends(get_run_store),
) -> Dict[str, Any]:
    return {"ok": True, "env": settings.app_env, "runs": len(run_store.run_ids())}


@router.post("/plan")
async def plan(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    planner: Planner = Depends(get_planner),
):
    body, error = await _authorized_body(request, settings, _plan_mode)
    if error is not None:
        return error
    if not isinstance(body, dict):
        return JSONResponse({"ok": False, "mode": "plan", "error": "Request body must be an object."}, status_code=400)
    status, payload = await planner.build_plan(body)
    return JSONResponse(payload, status_code=status)


@router.post("/execute")
async def execute(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
):
    body, error = await _authorized_body(request, settings, response_mode)
    if error is not None:
        return error
    status, payload = await orchestrator.handle(body)
    return JSONResponse(payload, status_code=status)


def create_app(
    settings: AppSettings,
    *,
    run_store: Optional[RunStore] = None,
    db: Optional[DataStore] = None,
    census: Optional[CensusClient] = None,
    llm_client: Optional[OpenRouterClient] = None,
    planner: Optional[Planner] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("AI admin orchestrator starting (%s)", app.state.settings.app_env)
        try:
            yield
        finally:
            await app.state.db.close()
            await app.state.census.close()
            await app.state.llm_client.close()
            app.state.run_store.close()

    app = FastAPI(title="AI Admin Run Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.run_store = run_store or RunStore(step_lease_seconds=settings.step_lease_seconds)
    app.state.db = db or InstantAdminClient(
        settings.instant_app_id, settings.instant_admin_token, base_url=settings.instant_base_url
    )
    app.state.census = census or CensusClient(
        settings.census_api_key,
        base_url=settings.census_base_url,
        state_fips=settings.census_state_fips,
        zip_prefixes=settings.zip_prefixes,
    )
    app.state.llm_client = llm_client or OpenRouterClient(
        settings.openrouter_api_key, base_url=settings.openrouter_base_url
    )
    app.state.planner = planner or Planner(
        OpenRouterModelPlanner(app.state.llm_client, settings.planner_model),
        CensusGroupSearch(app.state.census),
        CensusImportInspector(app.state.census),
    )
    app.state.orchestrator = RunOrchestrator(
        app.state.run_store,
        app.state.db,
        census=app.state.census,
        parent_area=settings.default_parent_area,
    )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    try:
        uvicorn.run("ai_admin.main:app", host=settings.host, port=settings.port)
    except KeyboardInterrupt:
        pass
