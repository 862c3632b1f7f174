import json
import logging
import re
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx

from poliscope_backend.config import (
    API_LOG_PREVIEW_CHARS,
    ORACLE_API_KEY,
    ORACLE_BASE_URL,
    ORACLE_CHAT_MODEL,
    ORACLE_MODE,
    TRACE_API_CALLS,
)

logger = logging.getLogger("poliscope_backend")

_TRANSPORT_CACHE: Dict[Tuple[str, str, float], "ScoringOracleTransport"] = {}

ANALYZER_SYSTEM_PROMPT = (
    "You are PoliScope's Advanced Argument Analyzer. Provide multi-dimensional analysis "
    "of political statements with complete ideological neutrality. Reply with one JSON "
    "object only."
)

ANALYZER_USER_TEMPLATE = """Analyze this political statement in context:

STATEMENT: "{text}"
CONTEXT: "{context}"

Return JSON with exactly this structure:
{{
  "ideology": {{"economic": -100 to 100, "social": -100 to 100}},
  "emotions": {{"anger": 0-100, "fear": 0-100, "hope": 0-100}},
  "fallacies": [{{"type": "fallacy name", "severity": "low|medium|high"}}],
  "confidence": 0-100
}}
If you refuse to analyze the statement, return {{"rejected": true, "reason": "why"}}."""


class OracleTransientError(Exception):
    """Timeouts, transport failures, 5xx and rate limits. Safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OracleRejectedError(Exception):
    """The oracle refused the request or answered with something unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ScoringOracleTransport(Protocol):
    async def analyze(self, text: str, context: Dict[str, Any]) -> Any:
        ...


def _preview_text(value: Any, limit: int = API_LOG_PREVIEW_CHARS) -> str:
    text = str(value or "")
    if len(text) <= limit:
        return text
    return f"{text[:limit]}...<truncated {len(text) - limit} chars>"


def extract_json_from_text(text: str) -> Any:
    if text is None:
        raise ValueError("Oracle response text is empty")

    # Strip chain-of-thought style wrappers commonly emitted by local models.
    normalized = re.sub(r"<think>.*?</think>", "", str(text), flags=re.IGNORECASE | re.DOTALL).strip()
    if not normalized:
        raise json.JSONDecodeError("No JSON object found", str(text), 0)

    try:
        return json.loads(normalized)
    except json.JSONDecodeError:
        pass

    if "```" in normalized:
        for fence in ("```json", "```"):
            if fence in normalized:
                snippet = normalized.split(fence, 1)[1]
                if "```" in snippet:
                    candidate = snippet.split("```", 1)[0].strip()
                    try:
                        return json.loads(candidate)
                    except json.JSONDecodeError:
                        continue

    decoder = json.JSONDecoder()
    for index, char in enumerate(normalized):
        if char not in "{[":
            continue
        try:
            decoded, _ = decoder.raw_decode(normalized[index:])
            return decoded
        except json.JSONDecodeError:
            continue

    raise json.JSONDecodeError("No JSON object found", normalized, 0)


def is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


async def _post_json(client: httpx.AsyncClient, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Any:
    if TRACE_API_CALLS:
        logger.info("[ORACLE API] POST %s", url)
    try:
        response = await client.post(url, json=payload, headers=headers)
    except httpx.TransportError as exc:
        # Includes connect/read timeouts.
        raise OracleTransientError(f"{type(exc).__name__}: {exc}") from exc

    if TRACE_API_CALLS:
        logger.info("[ORACLE API] %s status=%s preview=%s", url, response.status_code, _preview_text(response.text))

    if response.status_code >= 400:
        message = f"HTTP {response.status_code}: {_preview_text(response.text)}"
        if is_transient_status(response.status_code):
            raise OracleTransientError(message, status_code=response.status_code)
        raise OracleRejectedError(message, status_code=response.status_code)

    try:
        return response.json()
    except ValueError as exc:
        raise OracleRejectedError(f"non-JSON response body: {_preview_text(response.text)}") from exc


class _PooledTransport:
    def __init__(self, base_url: str, timeout_seconds: float = 10.0, api_key: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.api_key = api_key
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


class HttpScoringOracle(_PooledTransport):
    """`POST {base_url}/analyze` with {"text", "context"}; the body is the score JSON."""

    async def analyze(self, text: str, context: Dict[str, Any]) -> Any:
        return await _post_json(
            self._get_client(),
            f"{self.base_url}/analyze",
            {"text": text, "context": context},
            self._headers(),
        )


class ChatScoringOracle(_PooledTransport):
    """OpenAI-compatible chat completions endpoint prompted to answer with score JSON."""

    def __init__(self, base_url: str, model: str, timeout_seconds: float = 10.0,
                 api_key: Optional[str] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(base_url, timeout_seconds=timeout_seconds, api_key=api_key, client=client)
        self.model = model

    async def analyze(self, text: str, context: Dict[str, Any]) -> Any:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": ANALYZER_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": ANALYZER_USER_TEMPLATE.format(text=text, context=json.dumps(context)),
                },
            ],
            "temperature": 0.0,
            "response_format": {"type": "json_object"},
        }
        response = await _post_json(
            self._get_client(),
            f"{self.base_url}/v1/chat/completions",
            payload,
            self._headers(),
        )
        try:
            content = response["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise OracleRejectedError("chat completion response missing choices[0].message.content") from exc
        try:
            return extract_json_from_text(content)
        except (ValueError, json.JSONDecodeError) as exc:
            raise OracleRejectedError(f"no JSON in completion: {_preview_text(content)}") from exc


def get_oracle_transport(
    mode: str = ORACLE_MODE,
    base_url: str = ORACLE_BASE_URL,
    timeout_seconds: float = 10.0,
) -> ScoringOracleTransport:
    normalized_mode = (mode or "analyze").strip().lower()
    key = (normalized_mode, base_url.rstrip("/"), float(timeout_seconds))
    if key not in _TRANSPORT_CACHE:
        if normalized_mode == "chat":
            _TRANSPORT_CACHE[key] = ChatScoringOracle(
                base_url, ORACLE_CHAT_MODEL, timeout_seconds=timeout_seconds, api_key=ORACLE_API_KEY
            )
        else:
            _TRANSPORT_CACHE[key] = HttpScoringOracle(
                base_url, timeout_seconds=timeout_seconds, api_key=ORACLE_API_KEY
            )
    return _TRANSPORT_CACHE[key]
