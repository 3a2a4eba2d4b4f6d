"""
Memory tests - extraction parsing, storage, recall strategies, names, deletion.
"""

import pytest

from fakes import FakeBackend, FakeEmbedder
from relaydesk.services.backend import BackendError
from relaydesk.services.memory_extractor import ExtractedMemory, MemoryExtractor, parse_extraction
from relaydesk.services.memory_service import (
    MemoryQueryResult,
    MemoryService,
    Memory,
    is_location_query,
    is_preference_query,
)


class StubExtractor:
    def __init__(self, memories=None, error=None):
        self.memories = memories or []
        self.error = error

    async def extract(self, message):
        if self.error:
            raise self.error
        return self.memories


def memory_rows():
    return [
        {"id": "mem-1", "user_id": "c1", "message_id": "m1", "content": "Lives in the city of Lisbon",
         "memory_data": {"city": "Lisbon"}, "created_at": "2026-01-01T00:00:00"},
        {"id": "mem-2", "user_id": "c1", "message_id": "m2", "content": "Likes green tea",
         "memory_data": {"drink": "green tea"}, "created_at": "2026-02-01T00:00:00"},
        {"id": "mem-3", "user_id": "c2", "message_id": "m3", "content": "Lives in Oslo",
         "memory_data": {"city": "Oslo"}, "created_at": "2026-03-01T00:00:00"},
    ]


def make_service(backend, extractor=None, embedder=None):
    return MemoryService(
        backend,
        embedder=embedder or FakeEmbedder(),
        extractor=extractor or StubExtractor(),
        match_threshold=0.3,
    )


class TestParseExtraction:
    def test_json_array_inside_prose(self):
        text = 'Sure! Here you go:\n[{"content": "Prefers email", "memory_data": {"channel": "email"}}]\nDone.'
        assert parse_extraction(text) == [ExtractedMemory("Prefers email", {"channel": "email"})]

    def test_incomplete_items_dropped(self):
        text = '[{"content": "x"}, {"memory_data": {"a": 1}}, {"content": "Age", "memory_data": 41}]'
        assert parse_extraction(text) == [ExtractedMemory("Age", {"value": 41})]

    def test_no_array(self):
        assert parse_extraction("nothing to remember") == []
        assert parse_extraction("[not json") == []

    @pytest.mark.asyncio
    async def test_extractor_skips_blank_message(self):
        class NeverCalled:
            async def generate(self, *args, **kwargs):
                raise AssertionError("should not be called")

        assert await MemoryExtractor(llm=NeverCalled()).extract("   ") == []


class TestQueryClassification:
    def test_preference(self):
        assert is_preference_query("What do I like?")
        assert not is_preference_query("Which city?")

    def test_location(self):
        assert is_location_query("Which city?")
        assert not is_location_query("hello")


class TestStore:
    @pytest.mark.asyncio
    async def test_store_skips_failed_candidates(self):
        backend = FakeBackend()
        extractor = StubExtractor([
            ExtractedMemory("Name is Ada", {"name": "Ada"}),
            ExtractedMemory("Broken embedding", {"x": 1}),
        ])
        service = make_service(backend, extractor, FakeEmbedder(fail_on="Broken"))
        assert await service.store("I'm Ada", "c1", "m1") == 1
        rows = backend.tables["memory"]
        assert len(rows) == 1
        assert rows[0]["user_id"] == "c1"
        assert rows[0]["message_id"] == "m1"
        assert rows[0]["vector"] == [0.1, 0.2, 0.3]

    @pytest.mark.asyncio
    async def test_near_duplicate_candidates_stored_once(self):
        backend = FakeBackend()
        extractor = StubExtractor([
            ExtractedMemory("Likes green tea", {"drink": "green tea"}),
            ExtractedMemory("Enjoys green tea", {"drink": "green tea"}),
            ExtractedMemory("Lives in Lisbon", {"city": "Lisbon"}),
        ])
        embedder = FakeEmbedder(vectors={
            "Likes": [1.0, 0.0, 0.0],
            "Enjoys": [0.99, 0.01, 0.0],
            "Lives": [0.0, 1.0, 0.0],
        })
        service = make_service(backend, extractor, embedder)
        assert await service.store("I like green tea, I'm in Lisbon", "c1", "m1") == 2
        assert [r["content"] for r in backend.tables["memory"]] == ["Likes green tea", "Lives in Lisbon"]

    @pytest.mark.asyncio
    async def test_extraction_failure_stores_nothing(self):
        backend = FakeBackend()
        service = make_service(backend, StubExtractor(error=RuntimeError("model down")))
        assert await service.store("hello", "c1", "m1") == 0
        assert "memory" not in backend.tables


class TestRetrieve:
    @pytest.mark.asyncio
    async def test_vector_results_filtered_to_subject(self):
        backend = FakeBackend({"memory": memory_rows(), "contacts": [
            {"id": "c1", "name": "Ada Lovelace", "contact_info": "111"},
        ]})
        backend.rpc_results["match_memory"] = [
            dict(memory_rows()[1], similarity=0.9),
            dict(memory_rows()[2], similarity=0.8),
        ]
        result = await make_service(backend).retrieve("c1", "tea please")
        assert result.strategy == "vector"
        assert [m.id for m in result.memories] == ["mem-2"]
        assert result.subject_name == "Ada Lovelace"
        assert result.subject_info == "111"

    @pytest.mark.asyncio
    async def test_preference_fallback_checked_before_location(self):
        backend = FakeBackend({"memory": memory_rows()})
        result = await make_service(backend).retrieve("c1", "Where would I like to live?")
        assert result.strategy == "preference_fallback"
        # most recent first
        assert [m.id for m in result.memories] == ["mem-2", "mem-1"]

    @pytest.mark.asyncio
    async def test_location_fallback_uses_text_search(self):
        backend = FakeBackend({"memory": memory_rows()})
        result = await make_service(backend).retrieve("c1", "Which city?")
        assert result.strategy == "location_fallback"
        assert [m.id for m in result.memories] == ["mem-1"]

    @pytest.mark.asyncio
    async def test_rpc_failure_treated_as_no_results(self):
        backend = FakeBackend({"memory": memory_rows()})
        backend.failures[("rpc", "match_memory")] = BackendError("function not found", 404)
        result = await make_service(backend).retrieve("c1", "Which city?")
        assert result.strategy == "location_fallback"

    @pytest.mark.asyncio
    async def test_nothing_matches(self):
        backend = FakeBackend({"memory": memory_rows()})
        result = await make_service(backend).retrieve("c1", "hello")
        assert result.strategy == "none"
        assert result.memories == []


class TestNames:
    @pytest.mark.asyncio
    async def test_name_from_memory_data(self):
        backend = FakeBackend({"memory": [
            {"user_id": "c1", "content": "User name noted", "memory_data": {"first_name": "Grace"}},
        ]})
        assert await make_service(backend).resolve_subject_name("c1") == "Grace"

    @pytest.mark.asyncio
    async def test_name_from_phrase(self):
        backend = FakeBackend({"memory": [
            {"user_id": "c1", "content": "Said my name is Linus", "memory_data": {}},
        ]})
        assert await make_service(backend).resolve_subject_name("c1") == "Linus"

    @pytest.mark.asyncio
    async def test_name_falls_back_to_contact_first_name(self):
        backend = FakeBackend({"memory": [], "contacts": [{"id": "c1", "name": "Ada Lovelace"}]})
        assert await make_service(backend).resolve_subject_name("c1") == "Ada"

    @pytest.mark.asyncio
    async def test_no_name(self):
        assert await make_service(FakeBackend()).resolve_subject_name("c1") is None


class TestFormatAndDelete:
    def test_format_context(self):
        result = MemoryQueryResult(memories=[Memory(content="Likes tea", memory_data={"drink": "tea"})])
        text = MemoryService.format_context(result)
        assert text.startswith("User information based on previous conversations:")
        assert "1. Likes tea" in text
        assert 'Details: {"drink": "tea"}' in text

    def test_format_empty(self):
        assert MemoryService.format_context(MemoryQueryResult()) == ""

    @pytest.mark.asyncio
    async def test_delete_by_message_ids(self):
        backend = FakeBackend({"memory": memory_rows()})
        assert await make_service(backend).delete_by_message_ids(["m1", "m3"])
        assert [r["id"] for r in backend.tables["memory"]] == ["mem-2"]

    @pytest.mark.asyncio
    async def test_delete_failure_returns_false(self):
        backend = FakeBackend({"memory": memory_rows()})
        backend.failures[("delete", "memory")] = BackendError("permission denied", 403)
        assert not await make_service(backend).delete_by_message_ids(["m1"])
