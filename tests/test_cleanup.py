"""Tests for the optional LLM cleanup adapter."""

import json

import httpx
import pytest

from browser_bank_recipes.config import CleanupSettings
from browser_bank_recipes.recipes.cleanup import (
    NullCleanupAdapter,
    OllamaCleanupAdapter,
    build_cleanup_adapter,
)
from browser_bank_recipes.recipes.models import ExtractedRow


def _rows(count: int) -> list[ExtractedRow]:
    return [ExtractedRow(date="01/15/2024", description=f"POS PURCHASE {i} pending", amount="-4.50") for i in range(count)]


def _answer_for(prompt: str) -> list[dict]:
    rows = json.loads(prompt[prompt.index("Transactions:") + len("Transactions:") :])
    return [{"date": "2024-01-15", "description": row["description"].replace(" pending", "").title(), "amount": row["amount"], "category": "Dining"} for row in rows]


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestOllamaCleanup:
    async def test_cleans_rows(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            requests.append(body)
            return httpx.Response(200, json={"response": json.dumps(_answer_for(body["prompt"]))})

        async with _client(handler) as client:
            adapter = OllamaCleanupAdapter(base_url="http://ollama.test/", model="tiny", client=client)
            cleaned = await adapter.clean(_rows(2))

        assert [row.date for row in cleaned] == ["2024-01-15", "2024-01-15"]
        assert cleaned[0].description == "Pos Purchase 0"
        assert cleaned[0].category == "Dining"
        assert requests[0]["model"] == "tiny"
        assert requests[0]["stream"] is False

    async def test_batches_of_configured_size(self):
        sizes = []

        def handler(request: httpx.Request) -> httpx.Response:
            answer = _answer_for(json.loads(request.content)["prompt"])
            sizes.append(len(answer))
            return httpx.Response(200, json={"response": "Here you go:\n" + json.dumps(answer)})

        async with _client(handler) as client:
            cleaned = await OllamaCleanupAdapter(batch_size=20, client=client).clean(_rows(45))

        assert sizes == [20, 20, 5]
        assert len(cleaned) == 45

    async def test_server_error_returns_input_unchanged(self):
        rows = _rows(3)

        async with _client(lambda request: httpx.Response(500, text="boom")) as client:
            result = await OllamaCleanupAdapter(client=client).clean(rows)

        assert result == rows

    async def test_connection_error_returns_input_unchanged(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        rows = _rows(2)
        async with _client(handler) as client:
            assert await OllamaCleanupAdapter(client=client).clean(rows) == rows

    @pytest.mark.parametrize(
        "answer",
        [
            "I cannot help with that.",
            "[{\"date\": \"2024-01-15\"}]",
            "[not json]",
            "[1, 2]",
        ],
    )
    async def test_unusable_answer_returns_input_unchanged(self, answer):
        rows = _rows(2)

        async with _client(lambda request: httpx.Response(200, json={"response": answer})) as client:
            assert await OllamaCleanupAdapter(client=client).clean(rows) == rows

    async def test_one_bad_batch_discards_all_cleaning(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 2:
                return httpx.Response(200, json={"response": "[]"})
            return httpx.Response(200, json={"response": json.dumps(_answer_for(json.loads(request.content)["prompt"]))})

        rows = _rows(4)
        async with _client(handler) as client:
            result = await OllamaCleanupAdapter(batch_size=2, client=client).clean(rows)

        assert result == rows

    async def test_empty_input_skips_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        async with _client(handler) as client:
            assert await OllamaCleanupAdapter(client=client).clean([]) == []


class TestBuildAdapter:
    def test_disabled_by_default(self):
        assert isinstance(build_cleanup_adapter(CleanupSettings()), NullCleanupAdapter)

    def test_override_enables(self):
        adapter = build_cleanup_adapter(CleanupSettings(model="qwen2.5"), enabled=True)
        assert isinstance(adapter, OllamaCleanupAdapter)
        assert adapter.model == "qwen2.5"

    async def test_null_adapter_is_identity(self):
        rows = _rows(1)
        assert await NullCleanupAdapter().clean(rows) is rows
