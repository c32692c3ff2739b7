"""Optional LLM cleanup of extracted rows through a local Ollama server.

The adapter normalises descriptions, dates and categories. It is strictly
optional: any failure (server down, timeout, malformed answer, row count
mismatch) returns the input rows untouched instead of raising.
"""

import json
import logging
import re
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from ..config import CleanupSettings
from .models import ExtractedRow

logger = logging.getLogger(__name__)

_JSON_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)

CLEANUP_PROMPT = """You clean up bank transactions scraped from a web page.

For each transaction in the JSON array below return an object with:
- date: the transaction date formatted as YYYY-MM-DD
- description: the merchant or payee name without status words ("pending", "posted") or UI text ("Opens popup", "help text")
- amount: the amount as a plain number string, negative for debits when the sign is known
- balance: the running balance as a plain number string, or null
- category: an explicit category from the data, otherwise a spending category inferred from the merchant, otherwise ""

Return ONLY a JSON array with exactly {count} objects in the same order. No prose.

Transactions:
{rows}
"""


class CleanupAdapter(Protocol):
    async def clean(self, rows: list[ExtractedRow]) -> list[ExtractedRow]: ...


class NullCleanupAdapter:
    """Identity adapter used when cleanup is disabled."""

    async def clean(self, rows: list[ExtractedRow]) -> list[ExtractedRow]:
        return rows


class CleanupFailed(Exception):
    """Internal signal that a batch could not be cleaned."""


class OllamaCleanupAdapter:
    """Cleans rows in batches with an Ollama model."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2",
        batch_size: int = 20,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.batch_size = max(1, batch_size)
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: CleanupSettings) -> "OllamaCleanupAdapter":
        return cls(base_url=settings.base_url, model=settings.model, batch_size=settings.batch_size, timeout=settings.timeout)

    async def clean(self, rows: list[ExtractedRow]) -> list[ExtractedRow]:
        """Clean rows; on any failure return ``rows`` unchanged.

        Args:
            rows: Rows from the pattern extractor

        Returns:
            Cleaned rows, or the original list if cleanup failed
        """
        if not rows:
            return rows

        try:
            if self._client is not None:
                return await self._clean_all(self._client, rows)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await self._clean_all(client, rows)
        except Exception as e:
            logger.warning(f"Cleanup skipped, keeping {len(rows)} extracted rows as-is: {e}")
            return rows

    async def _clean_all(self, client: httpx.AsyncClient, rows: list[ExtractedRow]) -> list[ExtractedRow]:
        cleaned: list[ExtractedRow] = []
        for start in range(0, len(rows), self.batch_size):
            batch = rows[start : start + self.batch_size]
            cleaned.extend(await self._clean_batch(client, batch))
            logger.debug(f"Cleaned rows {start + 1}-{start + len(batch)} of {len(rows)}")
        return cleaned

    async def _clean_batch(self, client: httpx.AsyncClient, batch: list[ExtractedRow]) -> list[ExtractedRow]:
        payload_rows = [row.model_dump(exclude={"confidence_score"}) for row in batch]
        prompt = CLEANUP_PROMPT.replace("{count}", str(len(batch))).replace("{rows}", json.dumps(payload_rows, indent=2))
        response = await client.post(
            f"{self.base_url}/api/generate",
            json={
                "model": self.model,
                "prompt": prompt,
                "stream": False,
                "options": {"temperature": 0.1},
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        answer = response.json().get("response", "")
        return self._parse_answer(answer, batch)

    def _parse_answer(self, answer: str, batch: list[ExtractedRow]) -> list[ExtractedRow]:
        match = _JSON_ARRAY_RE.search(answer or "")
        if not match:
            raise CleanupFailed("model answer contains no JSON array")
        try:
            items: list[Any] = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise CleanupFailed(f"model answer is not valid JSON: {e}") from e
        if not isinstance(items, list) or len(items) != len(batch):
            raise CleanupFailed(f"expected {len(batch)} rows, got {len(items) if isinstance(items, list) else 'none'}")

        cleaned = []
        for original, item in zip(batch, items):
            if not isinstance(item, dict):
                raise CleanupFailed("model returned a non-object row")
            merged = original.model_dump()
            for key in ("date", "description", "amount", "balance", "category"):
                if key in item and item[key] is not None:
                    merged[key] = str(item[key]).strip()
            try:
                cleaned.append(ExtractedRow.model_validate(merged))
            except ValidationError as e:
                raise CleanupFailed(f"invalid cleaned row: {e}") from e
        return cleaned


def build_cleanup_adapter(settings: CleanupSettings, enabled: bool | None = None) -> CleanupAdapter:
    """Return the Ollama adapter when cleanup is enabled, else the identity adapter."""
    if enabled is None:
        enabled = settings.enabled
    if enabled:
        return OllamaCleanupAdapter.from_settings(settings)
    return NullCleanupAdapter()
