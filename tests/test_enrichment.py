"""Tests for embedding and knowledge-base enrichment."""

import pytest
import requests

from factories import no_wait_policy
from practice_migrate.errors import EnrichmentFailed, TargetUnavailable
from practice_migrate.loaders.memory_loader import MemoryLoader
from practice_migrate.models.migration import BatchStatus, EnrichmentConfig
from practice_migrate.models.record import IssueKind, TargetEntityDraft
from practice_migrate.models.schema import EntityType
from practice_migrate.services.enrichment import (
    EmbeddingClient,
    Enricher,
    KnowledgeBaseClient,
    document_text,
)


class FakeResponse:

    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        return self.payload


class FakeSession:
    """Records requests and answers them with ``handler``."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def post(self, url, json=None, timeout=None):
        self.requests.append((url, json))
        return self.handler(url, json)


def embeddings_for(url, payload):
    # Answer out of order; the client must restore input order.
    data = [{"index": i, "embedding": [float(i), float(len(text))]} for i, text in enumerate(payload["input"])]
    return FakeResponse({"data": list(reversed(data))})


def case_draft(id, description="Upper arch aligners"):
    return TargetEntityDraft(
        entity_type=EntityType.CASE,
        natural_key=f"case:dispatch_instruction:{id}",
        fields={"case_number": f"C{id:06d}", "title": f"Case {id}", "description": description},
    )


@pytest.fixture
def loader():
    loader = MemoryLoader(concurrency=1, retry_policy=no_wait_policy())
    loader.set_integrity_checks(False)
    loader.load_batch(EntityType.CASE, [case_draft(i) for i in range(1, 6)], 1)
    return loader


class TestEmbeddingClient:

    def test_embeddings_come_back_in_input_order(self):
        session = FakeSession(embeddings_for)
        client = EmbeddingClient("http://embeddings.local/v1/", "text-embedding-3-small", session=session)

        vectors = client.embed(["a", "bbb"])

        assert vectors == [[0.0, 1.0], [1.0, 3.0]]
        url, body = session.requests[0]
        assert url == "http://embeddings.local/v1/embeddings"
        assert body == {"model": "text-embedding-3-small", "input": ["a", "bbb"]}

    def test_no_texts_no_request(self):
        session = FakeSession(embeddings_for)

        assert EmbeddingClient("http://embeddings.local", "m", session=session).embed([]) == []
        assert session.requests == []

    def test_http_error(self):
        session = FakeSession(lambda url, payload: FakeResponse({}, status_code=503))

        with pytest.raises(EnrichmentFailed):
            EmbeddingClient("http://embeddings.local", "m", session=session).embed(["a"])

    def test_malformed_response(self):
        session = FakeSession(lambda url, payload: FakeResponse({"object": "list"}))

        with pytest.raises(EnrichmentFailed):
            EmbeddingClient("http://embeddings.local", "m", session=session).embed(["a"])

    def test_wrong_number_of_vectors(self):
        session = FakeSession(lambda url, payload: FakeResponse({"data": [{"index": 0, "embedding": [1.0]}]}))

        with pytest.raises(EnrichmentFailed):
            EmbeddingClient("http://embeddings.local", "m", session=session).embed(["a", "b"])


class TestKnowledgeBaseClient:

    def test_ingest_creates_a_document(self):
        session = FakeSession(lambda url, payload: FakeResponse({"document": {"id": "doc-1"}}))
        client = KnowledgeBaseClient("http://kb.local/v1", "dataset-9", session=session)

        document_id = client.ingest({"name": "case:dispatch_instruction:1", "text": "Upper arch"})

        assert document_id == "doc-1"
        url, body = session.requests[0]
        assert url == "http://kb.local/v1/datasets/dataset-9/document/create_by_text"
        assert body["name"] == "case:dispatch_instruction:1"
        assert body["text"] == "Upper arch"

    def test_transport_error(self):
        def refuse(url, payload):
            raise requests.ConnectionError("connection refused")

        client = KnowledgeBaseClient("http://kb.local/v1", "dataset-9", session=FakeSession(refuse))

        with pytest.raises(EnrichmentFailed):
            client.ingest({"name": "x", "text": "y"})


def test_document_text_joins_populated_fields():
    row = {"case_number": "C000001", "title": "Case 1", "description": None, "notes": "Rush"}

    assert document_text(EntityType.CASE, row) == "C000001\nCase 1\nRush"
    assert document_text(EntityType.PRACTICE, {"name": "Office"}) == ""


class TestEnricher:

    def test_embeds_and_ingests_loaded_rows(self, loader, checkpoint_store):
        config = EnrichmentConfig(enabled=True, batch_size=2)
        kb_session = FakeSession(lambda url, payload: FakeResponse({"document": {"id": payload["name"]}}))
        enricher = Enricher(
            config,
            embedding_client=EmbeddingClient("http://embeddings.local", "m", session=FakeSession(embeddings_for)),
            knowledge_base=KnowledgeBaseClient("http://kb.local", "ds", session=kb_session),
        )

        result = enricher.enrich("run-1", [EntityType.CASE], loader, checkpoint_store)

        assert result.succeeded
        assert (result.embedded, result.ingested) == (5, 5)
        assert sorted(loader.embeddings) == [f"case:dispatch_instruction:{i}" for i in range(1, 6)]
        assert loader.embeddings["case:dispatch_instruction:1"][0] == "m"
        batches = checkpoint_store.list_checkpoints("run-1", "enrich.case")
        assert [c.status for c in batches] == [BatchStatus.DONE] * 3

    def test_follow_up_run_skips_enriched_batches(self, loader, checkpoint_store):
        config = EnrichmentConfig(enabled=True, batch_size=2)
        session = FakeSession(embeddings_for)
        enricher = Enricher(config, embedding_client=EmbeddingClient("http://embeddings.local", "m", session=session))
        enricher.enrich("run-1", [EntityType.CASE], loader, checkpoint_store)
        session.requests.clear()

        result = enricher.enrich("run-1", [EntityType.CASE], loader, checkpoint_store)

        assert result.embedded == 0
        assert session.requests == []

    def test_deferred_failure_is_recorded_and_resumed_later(self, loader, checkpoint_store):
        config = EnrichmentConfig(enabled=True, batch_size=2, failure_policy="defer")
        calls = {"count": 0}

        def fail_second_batch(url, payload):
            calls["count"] += 1
            if calls["count"] == 2:
                return FakeResponse({}, status_code=500)
            return embeddings_for(url, payload)

        session = FakeSession(fail_second_batch)
        enricher = Enricher(config, embedding_client=EmbeddingClient("http://embeddings.local", "m", session=session))

        result = enricher.enrich("run-1", [EntityType.CASE], loader, checkpoint_store)

        assert not result.succeeded
        assert result.embedded == 2
        assert [i.kind for i in result.issues] == [IssueKind.ENRICHMENT_FAILED]
        assert result.issues[0].reference == "enrich.case:2"
        assert calls["count"] == 2

        retried = enricher.enrich("run-1", [EntityType.CASE], loader, checkpoint_store)

        assert retried.succeeded
        assert retried.embedded == 3
        assert len(loader.embeddings) == 5

    def test_retry_policy_retries_failed_calls(self, loader, checkpoint_store):
        config = EnrichmentConfig(enabled=True, batch_size=10, failure_policy="retry")
        calls = {"count": 0}

        def flaky(url, payload):
            calls["count"] += 1
            if calls["count"] == 1:
                raise requests.ConnectionError("connection reset")
            return embeddings_for(url, payload)

        enricher = Enricher(
            config,
            embedding_client=EmbeddingClient("http://embeddings.local", "m", session=FakeSession(flaky)),
            retry_policy=no_wait_policy(),
        )

        result = enricher.enrich("run-1", [EntityType.CASE], loader, checkpoint_store)

        assert result.succeeded
        assert calls["count"] == 2

    def test_unreachable_target_leaves_no_batch_in_progress(self, loader, checkpoint_store):
        enricher = Enricher(
            EnrichmentConfig(enabled=True, batch_size=2),
            embedding_client=EmbeddingClient("http://embeddings.local", "m", session=FakeSession(embeddings_for)),
        )
        loader.available = False

        with pytest.raises(TargetUnavailable):
            enricher.enrich("run-1", [EntityType.CASE], loader, checkpoint_store)

        assert checkpoint_store.list_checkpoints("run-1", "enrich.case") == []

    def test_target_lost_while_saving_fails_the_batch(self, loader, checkpoint_store, monkeypatch):
        enricher = Enricher(
            EnrichmentConfig(enabled=True, batch_size=2),
            embedding_client=EmbeddingClient("http://embeddings.local", "m", session=FakeSession(embeddings_for)),
        )
        save_embeddings = loader.save_embeddings

        def lose_target(entity_type, rows):
            raise TargetUnavailable("server closed the connection unexpectedly")

        monkeypatch.setattr(loader, "save_embeddings", lose_target)

        with pytest.raises(TargetUnavailable):
            enricher.enrich("run-1", [EntityType.CASE], loader, checkpoint_store)

        batches = checkpoint_store.list_checkpoints("run-1", "enrich.case")
        assert [c.status for c in batches] == [BatchStatus.FAILED]

        monkeypatch.setattr(loader, "save_embeddings", save_embeddings)
        result = enricher.enrich("run-1", [EntityType.CASE], loader, checkpoint_store)

        assert result.succeeded
        assert result.embedded == 5
        batches = checkpoint_store.list_checkpoints("run-1", "enrich.case")
        assert [c.status for c in batches] == [BatchStatus.DONE] * 3
        assert batches[0].attempts == 2

    def test_stops_when_asked(self, loader, checkpoint_store):
        enricher = Enricher(
            EnrichmentConfig(enabled=True),
            embedding_client=EmbeddingClient("http://embeddings.local", "m", session=FakeSession(embeddings_for)),
        )

        result = enricher.enrich("run-1", [EntityType.CASE], loader, checkpoint_store, should_stop=lambda: True)

        assert result.embedded == 0
        assert loader.embeddings == {}

    def test_not_configured_without_clients(self):
        assert not Enricher(EnrichmentConfig(enabled=True)).configured
        assert not Enricher.from_config(EnrichmentConfig(enabled=True)).configured
        assert Enricher.from_config(EnrichmentConfig(embedding_url="http://embeddings.local")).configured
