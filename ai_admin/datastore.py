import uuid
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

import httpx

EntityId = Union[str, List[str]]


class DataStoreError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class DataStoreConfigError(DataStoreError):
    pass


class DataStore(Protocol):
    async def query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def transact(self, steps: Sequence[List[Any]]) -> Dict[str, Any]:
        ...

    async def close(self) -> None:
        ...


def new_id() -> str:
    return str(uuid.uuid4())


def lookup(attribute: str, value: str) -> List[str]:
    """Entity reference resolved by a unique attribute; upserts on write."""
    return [attribute, value]


def tx_update(entity: str, entity_id: EntityId, attrs: Dict[str, Any]) -> List[Any]:
    return ["update", entity, entity_id, attrs]


def unwrap_rows(result: Any, key: str) -> List[Dict[str, Any]]:
    if not isinstance(result, dict):
        return []
    rows = result.get(key)
    if isinstance(rows, list):
        return rows
    data = result.get("data")
    if isinstance(data, dict) and isinstance(data.get(key), list):
        return data[key]
    return []


class InstantAdminClient:
    """Admin HTTP client for the hosted document store (query + transact)."""

    def __init__(
        self,
        app_id: Optional[str],
        admin_token: Optional[str],
        base_url: str = "https://api.instantdb.com",
        timeout: float = 60,
    ):
        self.app_id = app_id
        self.admin_token = admin_token
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.app_id and self.admin_token)

    def _headers(self) -> Dict[str, str]:
        if not self.app_id:
            raise DataStoreConfigError("Missing VITE_INSTANT_APP_ID/INSTANT_APP_ID")
        if not self.admin_token:
            raise DataStoreConfigError("Missing INSTANT_APP_ADMIN_TOKEN")
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.admin_token}",
            "App-Id": self.app_id,
        }

    async def query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        return await self._post("/admin/query", {"query": query})

    async def transact(self, steps: Sequence[List[Any]]) -> Dict[str, Any]:
        return await self._post("/admin/transact", {"steps": list(steps)})

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = self._headers()
        try:
            resp = await self.client.post(f"{self.base_url}{path}", json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            raise DataStoreError(
                f"Data store HTTP {e.response.status_code} on {path}",
                status_code=e.response.status_code,
                detail=detail,
            ) from e
        except httpx.RequestError as e:
            raise DataStoreError(f"Data store request failed on {path}: {e}") from e
        body = resp.json()
        return body if isinstance(body, dict) else {"data": body}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
