import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from parley.errors import RetrievalError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Snippet:
    text: str
    source: str | None = None
    score: float | None = None


class Retriever(Protocol):
    async def lookup(self, query: str) -> list[Snippet]: ...


def _entries(container: dict) -> list[dict]:
    entries = container.get("results") or []
    if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
        raise RetrievalError(f"Malformed retrieval results: {entries!r}")
    return entries


def parse_query_response(payload: Any) -> list[Snippet]:
    """Flatten a retrieval-plugin ``/query`` response, keeping service order."""
    if not isinstance(payload, dict):
        raise RetrievalError("Retrieval response is not a JSON object")
    snippets: list[Snippet] = []
    for result in _entries(payload):
        for item in _entries(result):
            text = item.get("text") or ""
            if not isinstance(text, str):
                raise RetrievalError(f"Retrieval result text is not a string: {text!r}")
            text = text.strip()
            if not text:
                continue
            metadata = item.get("metadata")
            if not isinstance(metadata, dict):
                metadata = {}
            snippets.append(
                Snippet(
                    text=text,
                    source=metadata.get("url") or metadata.get("source_id") or item.get("id"),
                    score=item.get("score"),
                )
            )
    return snippets


class PluginRetriever:
    def __init__(
        self,
        url: str,
        *,
        bearer: str | None = None,
        top_k: int = 3,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.bearer = bearer
        self.top_k = top_k
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.bearer:
            headers["Authorization"] = f"Bearer {self.bearer}"
        return headers

    async def lookup(self, query: str) -> list[Snippet]:
        body = {"queries": [{"query": query, "top_k": self.top_k}]}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.url}/query", json=body, headers=self._headers())
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            raise RetrievalError(
                f"Retrieval service returned {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise RetrievalError(f"Retrieval request failed: {e}") from e

        snippets = parse_query_response(payload)
        logger.debug(f"Retrieved {len(snippets)} snippets for query {query!r}")
        return snippets
