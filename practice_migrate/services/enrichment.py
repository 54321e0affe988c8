"""Post-load enrichment: vector embeddings and knowledge-base ingestion."""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .checkpoint import CheckpointStore
from .retry import RetryPolicy
from ..errors import EnrichmentFailed, MigrationError
from ..models.migration import EnrichmentConfig
from ..models.record import DataQualityIssue, IssueKind
from ..models.schema import EntityType

logger = logging.getLogger(__name__)

# Which loaded columns make up the text of a document, per entity type.
DOCUMENT_FIELDS: Dict[EntityType, List[str]] = {
    EntityType.CASE: ["case_number", "title", "description", "notes"],
    EntityType.CASE_MESSAGE: ["subject", "content"],
    EntityType.ORDER_TYPE: ["name", "description", "category"],
    EntityType.PATIENT: ["patient_number", "medical_notes"],
}


def _create_session(api_key: Optional[str], max_retries: int = 3, backoff_factor: float = 2.0) -> requests.Session:
    """Create a requests session with authentication and retry logic."""
    session = requests.Session()
    if api_key:
        session.headers["Authorization"] = f"Bearer {api_key}"
    session.headers["Content-Type"] = "application/json"

    retries = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=None,
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class EmbeddingClient:
    """OpenAI-compatible embeddings endpoint."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._session = session or _create_session(api_key)

    def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Embed a list of texts.

        Returns:
            One vector per input text, in input order

        Raises:
            EnrichmentFailed: On transport errors or a malformed response
        """
        if not texts:
            return []
        try:
            response = self._session.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model, "input": texts},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()["data"]
        except requests.RequestException as e:
            raise EnrichmentFailed(f"Embedding request failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise EnrichmentFailed(f"Malformed embedding response: {e}") from e

        vectors = [item["embedding"] for item in sorted(data, key=lambda d: d.get("index", 0))]
        if len(vectors) != len(texts):
            raise EnrichmentFailed(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        return vectors


class KnowledgeBaseClient:
    """Dify-style dataset API for document ingestion."""

    def __init__(
        self,
        base_url: str,
        dataset_id: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.dataset_id = dataset_id
        self.timeout = timeout
        self._session = session or _create_session(api_key)

    def ingest(self, document: Dict[str, Any]) -> str:
        """
        Create a document from text.

        Args:
            document: ``{"name": ..., "text": ...}``

        Returns:
            The knowledge-base document id
        """
        try:
            response = self._session.post(
                f"{self.base_url}/datasets/{self.dataset_id}/document/create_by_text",
                json={
                    "name": document["name"],
                    "text": document["text"],
                    "indexing_technique": "high_quality",
                    "process_rule": {"mode": "automatic"},
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()["document"]["id"]
        except requests.RequestException as e:
            raise EnrichmentFailed(f"Knowledge-base ingestion failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise EnrichmentFailed(f"Malformed knowledge-base response: {e}") from e


def document_text(entity_type: EntityType, row: Dict[str, Any]) -> str:
    parts = [str(row[name]) for name in DOCUMENT_FIELDS.get(entity_type, []) if row.get(name)]
    return "\n".join(parts)


@dataclass
class EnrichmentResult:
    """Outcome of enriching loaded rows."""
    embedded: int = 0
    ingested: int = 0
    failed_batches: int = 0
    issues: List[DataQualityIssue] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.failed_batches == 0


class Enricher:
    """
    Embeds and ingests loaded rows, batch by batch.

    Runs only after a successful load and never touches loaded data:
    a failure is recorded and leaves the run ``completed_with_warnings``.
    Batches are checkpointed under the entity name ``enrich.<entity>`` so a
    follow-up run continues where the last one stopped.
    """

    def __init__(
        self,
        config: EnrichmentConfig,
        embedding_client: Optional[EmbeddingClient] = None,
        knowledge_base: Optional[KnowledgeBaseClient] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.config = config
        self.embedding_client = embedding_client
        self.knowledge_base = knowledge_base
        # With the defer policy each call is attempted once.
        if config.failure_policy == "retry":
            self.retry_policy = retry_policy or RetryPolicy()
        else:
            self.retry_policy = RetryPolicy(max_attempts=1)

    @classmethod
    def from_config(cls, config: EnrichmentConfig, retry_policy: Optional[RetryPolicy] = None) -> "Enricher":
        embedding_client = None
        if config.embedding_url:
            embedding_client = EmbeddingClient(
                config.embedding_url, config.embedding_model,
                api_key=config.embedding_api_key, timeout=config.timeout,
            )
        knowledge_base = None
        if config.knowledge_base_url and config.dataset_id:
            knowledge_base = KnowledgeBaseClient(
                config.knowledge_base_url, config.dataset_id,
                api_key=config.knowledge_base_api_key, timeout=config.timeout,
            )
        return cls(config, embedding_client, knowledge_base, retry_policy)

    @property
    def configured(self) -> bool:
        return self.embedding_client is not None or self.knowledge_base is not None

    def enrich(
        self,
        run_id: str,
        entity_types: List[EntityType],
        loader: Any,
        checkpoints: CheckpointStore,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> EnrichmentResult:
        """
        Enrich every loaded row of ``entity_types``.

        Args:
            run_id: Run the enrichment checkpoints belong to
            entity_types: Entity types to enrich
            loader: Loader exposing ``fetch_rows`` and ``save_embeddings``
            checkpoints: Checkpoint store for enrichment batches
            should_stop: Checked before each batch

        Returns:
            EnrichmentResult with counts and issues
        """
        result = EnrichmentResult()
        for entity_type in entity_types:
            if entity_type not in DOCUMENT_FIELDS:
                logger.warning(f"No document fields for {entity_type.value}, skipping enrichment")
                continue
            self._enrich_entity(run_id, entity_type, loader, checkpoints, result, should_stop)
        logger.info(
            f"Enrichment: {result.embedded} embedded, {result.ingested} ingested, "
            f"{result.failed_batches} failed batches"
        )
        return result

    def _enrich_entity(
        self,
        run_id: str,
        entity_type: EntityType,
        loader: Any,
        checkpoints: CheckpointStore,
        result: EnrichmentResult,
        should_stop: Optional[Callable[[], bool]]
    ) -> None:
        name = f"enrich.{entity_type.value}"
        cursor = checkpoints.get_resume_point(run_id, name)
        batch_number = checkpoints.next_batch_number(run_id, name)

        while True:
            if should_stop and should_stop():
                logger.info(f"Enrichment of {entity_type.value} stopped before batch {batch_number}")
                return
            rows = loader.fetch_rows(entity_type, cursor, self.config.batch_size)
            if not rows:
                return
            end_cursor = rows[-1]["legacy_key"]
            checkpoints.mark_batch_started(run_id, name, batch_number, cursor)
            try:
                embedded, ingested = self._enrich_batch(entity_type, rows, loader)
            except EnrichmentFailed as e:
                logger.warning(f"Enrichment batch {batch_number} of {entity_type.value} failed: {e}")
                checkpoints.mark_batch_failed(run_id, name, batch_number, str(e))
                result.failed_batches += 1
                result.issues.append(DataQualityIssue(
                    kind=IssueKind.ENRICHMENT_FAILED,
                    entity_type=entity_type.value,
                    reference=f"{name}:{batch_number}",
                    reason=str(e),
                    details={"start_cursor": cursor, "end_cursor": end_cursor},
                ))
                # The checkpoint prefix stops at the failed batch; later batches wait for a follow-up run.
                return
            except MigrationError as e:
                # Target store trouble is not an enrichment service failure: fail the batch and stop.
                logger.error(f"Enrichment batch {batch_number} of {entity_type.value} aborted: {e}")
                checkpoints.mark_batch_failed(run_id, name, batch_number, str(e))
                raise

            checkpoints.mark_batch_completed(
                run_id, name, batch_number, end_cursor,
                {"extracted": len(rows), "embedded": embedded, "ingested": ingested},
            )
            result.embedded += embedded
            result.ingested += ingested
            cursor = end_cursor
            batch_number += 1

    def _enrich_batch(self, entity_type: EntityType, rows: List[Dict[str, Any]], loader: Any):
        documents = [(row["legacy_key"], document_text(entity_type, row)) for row in rows]
        documents = [(key, text) for key, text in documents if text]
        embedded = ingested = 0

        if self.embedding_client is not None and documents:
            vectors = self.retry_policy.call(
                self.embedding_client.embed, [text for _, text in documents],
                description=f"embed {entity_type.value}",
            )
            loader.save_embeddings(
                entity_type,
                [(key, self.embedding_client.model, vector) for (key, _), vector in zip(documents, vectors)],
            )
            embedded = len(vectors)

        if self.knowledge_base is not None:
            for key, text in documents:
                self.retry_policy.call(
                    self.knowledge_base.ingest, {"name": key, "text": text},
                    description=f"ingest {key}",
                )
                ingested += 1

        return embedded, ingested
