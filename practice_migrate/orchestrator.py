"""Migration orchestrator - coordinates the complete migration process."""

import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from .errors import DependencyUnmet, MigrationCancelled, MigrationError
from .extractors.base import BaseExtractor, Page
from .extractors.json_extractor import JSONExtractor
from .extractors.postgres_extractor import PostgresExtractor
from .loaders.base import BaseLoader
from .loaders.memory_loader import MemoryLoader
from .loaders.postgres_loader import PostgresLoader
from .models.legacy import LegacyRecord
from .models.migration import (
    ISSUE_PHASE,
    PIPELINE_PHASES,
    MigrationConfig,
    MigrationRun,
    Phase,
    PhaseStatus,
    RunStatus,
)
from .models.record import (
    DataQualityIssue,
    IssueKind,
    Quarantined,
    RelatedRecords,
    Skip,
    TargetEntityDraft,
    utcnow,
)
from .models.schema import (
    ENTITY_PLANS,
    LOAD_ORDER,
    PATIENT_BEARING,
    EntityPlan,
    EntityType,
    load_waves,
)
from .services.checkpoint import CheckpointStore, FileCheckpointStore
from .services.deduplicator import PatientDeduplicator
from .services.enrichment import Enricher
from .services.pg_checkpoint import PostgresCheckpointStore
from .services.report import MigrationReport
from .services.retry import RetryPolicy
from .services.transformer import TransformEngine
from .services.validator import DraftValidator, RecordValidator

logger = logging.getLogger(__name__)

# Stages every batch passes through, in order.
BATCH_PHASES = [Phase.EXTRACT, Phase.TRANSFORM, Phase.DEDUP, Phase.VALIDATE, Phase.LOAD]

_SUCCEEDED = (PhaseStatus.COMPLETED, PhaseStatus.COMPLETED_WITH_WARNINGS)


@dataclass
class BatchOutcome:
    """Counters and issues of one completed batch."""
    stats: Dict[str, int] = field(default_factory=dict)
    issues: List[DataQualityIssue] = field(default_factory=list)

    def count(self, name: str, value: int = 1) -> None:
        self.stats[name] = self.stats.get(name, 0) + value


class MigrationOrchestrator:
    """
    Orchestrates the complete migration process.

    Handles:
    - Dependency-ordered, batch-by-batch extraction and loading
    - Record validation, transformation, patient deduplication
    - Checkpointing and resume of interrupted runs
    - Post-load enrichment
    - Progress tracking and reporting

    Entity types run wave by wave (see :func:`load_waves`); a wave starts
    only after every entity type of the previous wave finished. Each batch
    is checkpointed before and after it is processed, and a run can be
    resumed from the checkpoint store at any batch boundary.
    """

    def __init__(
        self,
        config: MigrationConfig,
        reader: BaseExtractor,
        loader: BaseLoader,
        checkpoints: CheckpointStore,
        enricher: Optional[Enricher] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Migration configuration
            reader: Legacy reader
            loader: Target loader (already configured for dry-run if requested)
            checkpoints: Checkpoint store holding run and batch progress
            enricher: Optional enrichment collaborator
            cancel_event: Set to stop the run at the next batch boundary
        """
        self.config = config
        self.reader = reader
        self.loader = loader
        self.checkpoints = checkpoints
        self.enricher = enricher
        self.cancel_event = cancel_event or threading.Event()

        self.record_validator = RecordValidator(
            quarantine_threshold=config.quarantine_threshold,
            min_batch=config.quarantine_min_batch,
        )
        self.draft_validator = DraftValidator()
        self.transformer = TransformEngine(
            source_timezone=config.source_timezone,
            default_currency=config.default_currency,
        )
        self.deduplicator = PatientDeduplicator(config.dedup)

        # Runtime state
        self.run: Optional[MigrationRun] = None
        self._lock = threading.RLock()
        self._executor: Optional[Executor] = None
        self._aborted = False
        self._cancelled = False
        self._enrich_only = False

    @classmethod
    def from_config(
        cls,
        config: MigrationConfig,
        cancel_event: Optional[threading.Event] = None
    ) -> "MigrationOrchestrator":
        """Build reader, loader, checkpoint store and enricher from configuration."""
        retry_policy = RetryPolicy.from_config(config.retry)

        if config.source_dir:
            reader: BaseExtractor = JSONExtractor(config.source_dir, retry_policy=retry_policy)
        else:
            reader = PostgresExtractor(config.legacy, retry_policy=retry_policy)

        if config.dry_run and not config.target.dsn:
            loader: BaseLoader = MemoryLoader(
                dry_run=True, concurrency=config.load_concurrency, retry_policy=retry_policy
            )
        else:
            loader = PostgresLoader(
                config.target,
                dry_run=config.dry_run,
                concurrency=config.load_concurrency,
                retry_policy=retry_policy,
            )

        if config.checkpoint_backend == "postgres":
            checkpoints: CheckpointStore = PostgresCheckpointStore(config.target)
            checkpoints.ensure_schema()
        elif config.checkpoint_backend == "file":
            checkpoints = FileCheckpointStore(config.checkpoint_dir)
        else:
            raise ValueError(f"Unknown checkpoint backend: {config.checkpoint_backend}")

        enricher = None
        if config.enrichment.enabled:
            enricher = Enricher.from_config(config.enrichment, retry_policy)

        return cls(config, reader, loader, checkpoints, enricher=enricher, cancel_event=cancel_event)

    def cancel(self) -> None:
        """Request a stop at the next batch boundary."""
        logger.warning("Cancellation requested; stopping after the current batch")
        self.cancel_event.set()

    def close(self) -> None:
        self.reader.close()
        self.loader.close()
        self.checkpoints.close()

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def run_migration(self, resume_run_id: Optional[str] = None) -> MigrationRun:
        """
        Run the complete migration, or resume an earlier run.

        Args:
            resume_run_id: Run to continue from its checkpoints

        Returns:
            MigrationRun with results and statistics
        """
        self._enrich_only = False
        self.run = self._start_run(resume_run_id)
        run = self.run
        self._aborted = False
        self._cancelled = False
        integrity_relaxed = False

        workers = self.config.transform_workers
        self._executor = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None

        try:
            if self._enrich_only:
                # Every entity loaded in the earlier attempt; only deferred enrichment batches remain.
                self._run_enrichment()
                return run

            logger.info("=== PHASE: PREPARE ===")
            self._enter_phase(Phase.PREPARE)
            self._prepare(resuming=resume_run_id is not None)
            if self.config.relax_integrity and not self.config.dry_run:
                self.loader.set_integrity_checks(False)
                integrity_relaxed = True
            self._finish_phase(Phase.PREPARE, PhaseStatus.COMPLETED)

            logger.info("=== PHASES: EXTRACT / TRANSFORM / DEDUP / VALIDATE / LOAD ===")
            self._run_entities()

            if not self._cancelled and not self._aborted:
                self._run_enrichment()

        except MigrationCancelled as e:
            logger.warning(str(e))
            self._cancelled = True

        except Exception as e:
            logger.error(f"Migration failed in {run.current_phase.value}: {e}")
            self._aborted = True
            with self._lock:
                run.add_error(run.current_phase, e)
                if run.phase_statuses.get(run.current_phase.value) == PhaseStatus.RUNNING:
                    run.phase_statuses[run.current_phase.value] = PhaseStatus.FAILED

        finally:
            if integrity_relaxed:
                try:
                    self.loader.set_integrity_checks(True)
                except MigrationError as e:
                    logger.error(f"Could not restore integrity checks: {e}")
                    run.add_error(Phase.LOAD, e)
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None
            self._finalize()

        return run

    def validate_only(self) -> MigrationRun:
        """
        Extract, validate and transform every entity type without writing.

        Returns:
            MigrationRun describing what a real run would quarantine and skip
        """
        skip = set(self.config.skip_phases) | {Phase.LOAD.value, Phase.ENRICH.value}
        self.config = replace(self.config, dry_run=True, skip_phases=sorted(skip))
        return self.run_migration()

    def _start_run(self, resume_run_id: Optional[str]) -> MigrationRun:
        if resume_run_id is None:
            run = MigrationRun(name=self.config.name, dry_run=self.config.dry_run)
            logger.info(f"Starting migration run {run.run_id} ({run.name})"
                        + (" [DRY RUN]" if run.dry_run else ""))
            return run

        run = self.checkpoints.load_run(resume_run_id)
        if run is None:
            raise ValueError(f"No migration run {resume_run_id} in the checkpoint store")
        if run.dry_run != self.config.dry_run:
            # Staged batches are checkpointed done without having been written.
            raise ValueError(
                f"Run {resume_run_id} was a {'dry' if run.dry_run else 'real'} run; "
                f"resume it {'with' if run.dry_run else 'without'} --dry-run"
            )
        if not run.resumable:
            raise ValueError(f"Run {resume_run_id} finished with status {run.status.value}; nothing to resume")

        previous = run.status
        run.status = RunStatus.RUNNING
        run.current_phase = Phase.INIT
        run.completed_at = None

        if run.enrichment_pending:
            logger.info(f"Resuming enrichment of migration run {run.run_id}")
            self._enrich_only = True
            run.phase_statuses[Phase.ENRICH.value] = PhaseStatus.PENDING
            run.phase_statuses[Phase.REPORT.value] = PhaseStatus.PENDING
            return run

        logger.info(f"Resuming migration run {run.run_id} (was {previous.value})")
        run.phase_statuses = {p.value: PhaseStatus.PENDING for p in PIPELINE_PHASES}
        run.entity_statuses = {}
        run.errors = []
        return run

    def _prepare(self, resuming: bool) -> None:
        """Check legacy schemas, count source rows and restore resume state."""
        run = self.run
        selected = self._selected_entities()

        tables = []
        for entity_type in selected:
            plan = ENTITY_PLANS[entity_type]
            for table in [plan.source_table] + [j.table for j in plan.joins]:
                if table not in tables:
                    tables.append(table)
        for table in tables:
            self.reader.check_schema(table)

        for entity_type in selected:
            count = self.reader.count(ENTITY_PLANS[entity_type].source_table)
            run.source_counts[entity_type.value] = count
            logger.info(f"{entity_type.value}: {count} source rows in {ENTITY_PLANS[entity_type].source_table}")

        for entity_type in LOAD_ORDER:
            run.entity_statuses[entity_type.value] = (
                PhaseStatus.PENDING if entity_type in selected else PhaseStatus.SKIPPED
            )

        if resuming:
            self.checkpoints.reset_interrupted(run.run_id)
            self.deduplicator.restore(self.checkpoints.load_identities(run.run_id))
            run.totals_by_entity = {
                e.value: self.checkpoints.completed_totals(run.run_id, e.value) for e in LOAD_ORDER
            }

        self.checkpoints.save_run(run)

    def _selected_entities(self) -> List[EntityType]:
        only = set(self.config.only_entities)
        skip = set(self.config.skip_entities)
        for name in only | skip:
            EntityType(name)
        return [
            e for e in LOAD_ORDER
            if (not only or e.value in only) and e.value not in skip
        ]

    # ------------------------------------------------------------------
    # Phase bookkeeping
    # ------------------------------------------------------------------

    def _enter_phase(self, phase: Phase) -> None:
        with self._lock:
            self.run.current_phase = phase
            self.run.phase_statuses[phase.value] = PhaseStatus.RUNNING

    def _finish_phase(self, phase: Phase, status: PhaseStatus) -> None:
        with self._lock:
            self.run.phase_statuses[phase.value] = status

    def _batch_phase_enabled(self, phase: Phase) -> bool:
        if not self.config.phase_enabled(phase):
            return False
        if phase == Phase.DEDUP:
            return self.config.dedup.enabled
        return True

    def _aggregate_batch_phases(self) -> None:
        """Derive batch phase statuses from errors and issues of all entity types."""
        run = self.run
        failed_phases = {e["phase"] for e in run.errors if e.get("entity_type")}
        warned_phases = {ISSUE_PHASE[i.kind].value for i in run.issues}
        for phase in BATCH_PHASES:
            if not self._batch_phase_enabled(phase):
                status = PhaseStatus.SKIPPED
            elif phase.value in failed_phases:
                status = PhaseStatus.FAILED
            elif phase.value in warned_phases:
                status = PhaseStatus.COMPLETED_WITH_WARNINGS
            else:
                status = PhaseStatus.COMPLETED
            run.phase_statuses[phase.value] = status

    # ------------------------------------------------------------------
    # Entity pipeline
    # ------------------------------------------------------------------

    def _run_entities(self) -> None:
        for phase in BATCH_PHASES:
            if self._batch_phase_enabled(phase):
                self.run.phase_statuses[phase.value] = PhaseStatus.RUNNING

        try:
            for wave in load_waves(self._selected_entities()):
                if self._cancelled or self._aborted:
                    break
                logger.info(f"--- Wave: {', '.join(e.value for e in wave)} ---")
                concurrency = min(self.config.entity_concurrency, len(wave))
                if concurrency > 1:
                    with ThreadPoolExecutor(max_workers=concurrency) as pool:
                        list(pool.map(self._run_entity_guarded, wave))
                else:
                    for entity_type in wave:
                        self._run_entity_guarded(entity_type)
        finally:
            with self._lock:
                self._aggregate_batch_phases()
                self.checkpoints.save_run(self.run)

        if self._cancelled:
            raise MigrationCancelled(f"Run {self.run.run_id} cancelled; resume with --resume {self.run.run_id}")

    def _run_entity_guarded(self, entity_type: EntityType) -> None:
        """Run one entity type, containing its failure to the entity."""
        name = entity_type.value
        try:
            self._run_entity(entity_type)
        except MigrationCancelled as e:
            logger.warning(f"{name}: {e}")
            with self._lock:
                self._cancelled = True
                self.run.entity_statuses[name] = PhaseStatus.PENDING
        except Exception as e:
            phase = self._phase_of(e)
            logger.error(f"Entity {name} failed during {phase.value}: {e}")
            with self._lock:
                self.run.add_error(phase, e, name)
                self.run.entity_statuses[name] = PhaseStatus.FAILED
                if isinstance(e, DependencyUnmet):
                    return
                if getattr(e, "fatal", False) or not self.config.continue_on_error:
                    logger.error("Stopping the run")
                    self._aborted = True

    def _phase_of(self, error: Exception) -> Phase:
        if isinstance(error, MigrationError) and "phase" in error.details:
            return Phase(error.details["phase"])
        return Phase.LOAD if isinstance(error, DependencyUnmet) else Phase.EXTRACT

    def _check_dependencies(self, entity_type: EntityType) -> None:
        """Every selected dependency must have completed before this entity type starts."""
        missing = []
        for dependency in ENTITY_PLANS[entity_type].depends_on:
            status = self.run.entity_statuses.get(dependency.value)
            if status == PhaseStatus.SKIPPED:
                # Deselected by configuration: references resolve against what the target already holds.
                continue
            if status not in _SUCCEEDED:
                missing.append(dependency.value)
        if missing:
            raise DependencyUnmet(entity_type.value, missing)

    def _run_entity(self, entity_type: EntityType) -> None:
        """Drive one entity type batch by batch from its resume point."""
        run = self.run
        name = entity_type.value
        plan = ENTITY_PLANS[entity_type]

        self._check_dependencies(entity_type)
        with self._lock:
            run.entity_statuses[name] = PhaseStatus.RUNNING

        cursor = self.checkpoints.get_resume_point(run.run_id, name)
        batch_number = self.checkpoints.next_batch_number(run.run_id, name)
        if cursor is not None:
            logger.info(f"{name}: resuming after cursor {cursor} at batch {batch_number}")
        else:
            logger.info(f"{name}: starting from the beginning of {plan.source_table}")

        while True:
            if self.cancel_event.is_set():
                raise MigrationCancelled(f"Cancelled before {name} batch {batch_number}")
            if self._aborted:
                with self._lock:
                    run.entity_statuses[name] = PhaseStatus.PENDING
                return

            page = self._run_batch_with_retries(entity_type, plan, cursor, batch_number)
            if page is None or not page.has_more:
                break
            cursor = page.next_cursor
            batch_number += 1

        with self._lock:
            has_issues = any(i.entity_type == name for i in run.issues)
            run.entity_statuses[name] = (
                PhaseStatus.COMPLETED_WITH_WARNINGS if has_issues else PhaseStatus.COMPLETED
            )
            totals = run.totals(name)
        logger.info(
            f"{name}: done - {totals.extracted} extracted, {totals.migrated} migrated, "
            f"{totals.staged} staged, {totals.quarantined} quarantined, {totals.skipped} skipped, "
            f"{totals.merged} merged, {totals.failed} failed"
        )

    def _run_batch_with_retries(
        self,
        entity_type: EntityType,
        plan: EntityPlan,
        cursor: Optional[int],
        batch_number: int
    ) -> Optional[Page]:
        """
        Read and process one batch, retrying retryable batch failures.

        Returns:
            The page that was processed, or None when the table is exhausted
        """
        run_id = self.run.run_id
        name = entity_type.value
        attempt = 0

        while True:
            attempt += 1
            started = False
            try:
                page = self.reader.read_page(plan.source_table, cursor, self.config.batch_size)
                if not page.rows:
                    return None
                self.checkpoints.mark_batch_started(run_id, name, batch_number, cursor)
                started = True

                outcome = self._process_batch(entity_type, plan, page, batch_number)

                self.checkpoints.mark_batch_completed(
                    run_id, name, batch_number, page.next_cursor, outcome.stats
                )
                with self._lock:
                    self.run.totals(name).add(outcome.stats)
                    self.run.issues.extend(outcome.issues)
                    self.checkpoints.save_run(self.run)
                return page

            except MigrationError as e:
                if started:
                    self.checkpoints.mark_batch_failed(run_id, name, batch_number, str(e))
                if e.fatal or not e.retryable or attempt > self.config.batch_retries:
                    raise
                logger.warning(
                    f"{name} batch {batch_number} failed (attempt {attempt}/{self.config.batch_retries + 1}): "
                    f"{e}; retrying from cursor {cursor}"
                )

    def _process_batch(
        self,
        entity_type: EntityType,
        plan: EntityPlan,
        page: Page,
        batch_number: int
    ) -> BatchOutcome:
        """Run one page through validate -> transform -> dedup -> validate -> load."""
        name = entity_type.value
        outcome = BatchOutcome()
        outcome.count("batches")
        outcome.count("extracted", len(page.rows))
        stage = Phase.EXTRACT

        try:
            self.run.current_phase = stage
            validated = self.record_validator.validate_batch(plan.source_table, page.rows, self._executor)
            for quarantined in validated.quarantined:
                outcome.issues.append(DataQualityIssue(
                    kind=IssueKind.QUARANTINED,
                    entity_type=name,
                    reference=quarantined.reference,
                    reason="; ".join(quarantined.reasons),
                ))
            outcome.count("quarantined", len(validated.quarantined))
            related = self._resolve_joins(plan, validated.valid)

            stage = Phase.TRANSFORM
            self.run.current_phase = stage
            drafts = self._transform(entity_type, related, outcome)

            if entity_type in PATIENT_BEARING and self._batch_phase_enabled(Phase.DEDUP):
                stage = Phase.DEDUP
                self.run.current_phase = stage
                drafts = self._deduplicate(entity_type, drafts, outcome)

            if self._batch_phase_enabled(Phase.VALIDATE):
                stage = Phase.VALIDATE
                self.run.current_phase = stage
                drafts = self._validate_drafts(drafts, outcome)

            if self.config.phase_enabled(Phase.LOAD):
                stage = Phase.LOAD
                self.run.current_phase = stage
                result = self.loader.load_batch(entity_type, drafts, batch_number)
                for key, value in result.stats().items():
                    outcome.count(key, value)
                outcome.issues.extend(result.issues)

        except MigrationError as e:
            e.details.setdefault("phase", stage.value)
            raise
        except Exception as e:
            raise MigrationError(
                f"Unexpected error in {stage.value} of {name} batch {batch_number}: {e}",
                {"phase": stage.value},
            ) from e

        logger.info(
            f"{name} batch {batch_number}: {outcome.stats.get('extracted', 0)} read, "
            f"{outcome.stats.get('quarantined', 0)} quarantined, {outcome.stats.get('skipped', 0)} skipped, "
            f"{outcome.stats.get('failed', 0)} failed"
        )
        return outcome

    def _resolve_joins(self, plan: EntityPlan, records: List[LegacyRecord]) -> List[RelatedRecords]:
        """Attach join partners to each record; the lowest-id valid partner wins unless the join is many."""
        related = [RelatedRecords(primary=record) for record in records]
        for join in plan.joins:
            values = [
                record.id if join.local_field == "source_id" else getattr(record, join.local_field)
                for record in records
            ]
            partners: Dict[Any, List[LegacyRecord]] = {}
            for row in self.reader.fetch_related(join.table, join.remote_column, values):
                key = row.data.get(join.remote_column)
                if key in partners and not join.many:
                    continue
                partner = self.record_validator.validate(row)
                if not isinstance(partner, Quarantined):
                    partners.setdefault(key, []).append(partner)
            for item, value in zip(related, values):
                matches = partners.get(value, [])
                if join.many:
                    item.joined[join.name] = matches
                else:
                    item.joined[join.name] = matches[0] if matches else None
        return related

    def _transform(
        self,
        entity_type: EntityType,
        related: List[RelatedRecords],
        outcome: BatchOutcome
    ) -> List[TargetEntityDraft]:
        def transform_one(item: RelatedRecords):
            return self.transformer.transform(entity_type, item)

        if self._executor is not None:
            results = list(self._executor.map(transform_one, related))
        else:
            results = [transform_one(item) for item in related]

        drafts = []
        for item, result in zip(related, results):
            if isinstance(result, Skip):
                outcome.count("skipped")
                outcome.issues.append(DataQualityIssue(
                    kind=IssueKind.TRANSFORM_SKIP,
                    entity_type=entity_type.value,
                    reference=item.primary.ref,
                    reason=result.reason,
                    details={"provenance": list(result.provenance)},
                ))
                logger.warning(f"Skipped {item.primary.ref}: {result.reason}")
            else:
                drafts.append(result)
        return drafts

    def _deduplicate(
        self,
        entity_type: EntityType,
        drafts: List[TargetEntityDraft],
        outcome: BatchOutcome
    ) -> List[TargetEntityDraft]:
        if entity_type != EntityType.PATIENT:
            return [self.deduplicator.rewrite(d) for d in drafts]

        result = self.deduplicator.deduplicate(drafts)
        outcome.count("merged", len(result.merged))
        outcome.issues.extend(result.issues)
        self.checkpoints.save_identities(self.run.run_id, self.deduplicator.drain_changed())
        return result.drafts

    def _validate_drafts(self, drafts: List[TargetEntityDraft], outcome: BatchOutcome) -> List[TargetEntityDraft]:
        valid = []
        for draft in drafts:
            quarantined = self.draft_validator.check(draft)
            if quarantined is None:
                valid.append(draft)
                continue
            outcome.count("invalid")
            outcome.issues.append(DataQualityIssue(
                kind=IssueKind.INVALID_DRAFT,
                entity_type=draft.entity_type.value,
                reference=draft.natural_key,
                reason="; ".join(quarantined.reasons),
            ))
        return valid

    # ------------------------------------------------------------------
    # Enrichment and finalization
    # ------------------------------------------------------------------

    def _run_enrichment(self) -> None:
        run = self.run
        if (
            not self.config.phase_enabled(Phase.ENRICH)
            or not self.config.enrichment.enabled
            or self.enricher is None
            or not self.enricher.configured
            or self.config.dry_run
            or not self.config.phase_enabled(Phase.LOAD)
        ):
            self._finish_phase(Phase.ENRICH, PhaseStatus.SKIPPED)
            return

        logger.info("=== PHASE: ENRICH ===")
        self._enter_phase(Phase.ENRICH)
        with self._lock:
            # Failures of an earlier attempt are re-reported by this one if they recur.
            run.issues = [i for i in run.issues if i.kind != IssueKind.ENRICHMENT_FAILED]
            run.errors = [e for e in run.errors if e.get("phase") != Phase.ENRICH.value]
        entity_types = []
        for name in self.config.enrichment.entities:
            if run.entity_statuses.get(name) in _SUCCEEDED:
                entity_types.append(EntityType(name))
            else:
                logger.info(f"Not enriching {name}: load did not complete")

        try:
            result = self.enricher.enrich(
                run.run_id, entity_types, self.loader, self.checkpoints,
                should_stop=self.cancel_event.is_set,
            )
        except MigrationError as e:
            # Loaded data stays; the run only degrades to warnings.
            logger.error(f"Enrichment failed: {e}")
            with self._lock:
                run.add_error(Phase.ENRICH, e)
                run.issues.append(DataQualityIssue(
                    kind=IssueKind.ENRICHMENT_FAILED,
                    entity_type="",
                    reference=f"enrich:{run.run_id}",
                    reason=str(e),
                ))
            self._finish_phase(Phase.ENRICH, PhaseStatus.COMPLETED_WITH_WARNINGS)
            return

        with self._lock:
            run.issues.extend(result.issues)
        self._finish_phase(
            Phase.ENRICH,
            PhaseStatus.COMPLETED if result.succeeded else PhaseStatus.COMPLETED_WITH_WARNINGS,
        )

    def _final_status(self) -> RunStatus:
        run = self.run
        if self._cancelled:
            return RunStatus.CANCELLED
        if self._aborted:
            return RunStatus.FAILED
        if any(s == PhaseStatus.FAILED for s in run.entity_statuses.values()):
            return RunStatus.PARTIAL
        warned = any(s == PhaseStatus.COMPLETED_WITH_WARNINGS for s in run.phase_statuses.values())
        if run.issues or warned:
            return RunStatus.COMPLETED_WITH_WARNINGS
        return RunStatus.COMPLETED

    def _finalize(self) -> None:
        run = self.run
        with self._lock:
            for phase in PIPELINE_PHASES:
                if phase != Phase.REPORT and run.phase_statuses.get(phase.value) == PhaseStatus.PENDING:
                    if phase == Phase.ENRICH or not (self._aborted or self._cancelled):
                        run.phase_statuses[phase.value] = PhaseStatus.SKIPPED
            run.status = self._final_status()
            run.current_phase = Phase.REPORT
            run.completed_at = utcnow()

        logger.info("=== PHASE: REPORT ===")
        try:
            report = MigrationReport.from_run(run)
            for entity in report.unreconciled():
                logger.warning(
                    f"{entity.entity_type}: {entity.source_count} source rows but {entity.accounted} accounted for"
                )
            run.phase_statuses[Phase.REPORT.value] = PhaseStatus.COMPLETED
            report.save(self.config.output_dir)
        except OSError as e:
            logger.error(f"Could not save the migration report: {e}")
            run.phase_statuses[Phase.REPORT.value] = PhaseStatus.FAILED
            run.add_error(Phase.REPORT, e)

        run.current_phase = Phase.FAILED if run.status == RunStatus.FAILED else Phase.DONE
        try:
            self.checkpoints.save_run(run)
        except MigrationError as e:
            logger.error(f"Could not persist the final run state: {e}")

        logger.info(f"=== MIGRATION {run.status.value.upper()} ===")
