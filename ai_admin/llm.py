import json
from typing import Any, Dict, List, Optional

import httpx

ALLOWED_ROLES = {"system", "user", "assistant"}
REFERER = "https://neprotomin.app"


def extract_first_json_object(text: str) -> Optional[str]:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start : end + 1]


def message_content(response: Dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content")
    return content.strip() if isinstance(content, str) else ""


class LLMError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OpenRouterClient:
    """OpenAI-compatible chat-completions client for plan suggestions."""

    def __init__(self, api_key: Optional[str], base_url: str = "https://openrouter.ai/api/v1", timeout: float = 60):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict) or msg.get("role") not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if content is None:
                continue
            if not isinstance(content, str):
                content = json.dumps(content, ensure_ascii=True)
            if not content.strip():
                continue
            sanitized.append({"role": msg["role"], "content": content})
        return sanitized

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        return response.text or response.reason_phrase

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 900,
    ) -> Dict[str, Any]:
        if not self.enabled:
            raise LLMError("OpenRouter API key is not configured.")
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        payload = {
            "model": model,
            "messages": cleaned,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": REFERER,
        }
        try:
            resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response)
            raise LLMError(
                f"OpenRouter planning failed ({exc.response.status_code}): {detail}", exc.response.status_code
            ) from exc
        data = resp.json()
        return data if isinstance(data, dict) else {}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
