"""Durable per-batch progress tracking."""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..errors import CheckpointConflict
from ..models.migration import (
    BATCH_TRANSITIONS,
    BatchStatus,
    Checkpoint,
    EntityTotals,
    MigrationRun,
)
from ..models.record import CanonicalIdentity, utcnow

logger = logging.getLogger(__name__)


class CheckpointStore(ABC):
    """
    Single source of truth for what a run has already done.

    Batch state machine::

        pending -> in_progress -> done
                               -> failed -> pending (retry)

    A ``done`` batch is never reprocessed, a ``failed`` batch is retried from
    its start cursor, and only one batch per entity type may be
    ``in_progress`` at a time.

    Subclasses provide persistence; the transitions live here.
    """

    def __init__(self):
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Persistence primitives
    # ------------------------------------------------------------------

    @abstractmethod
    def _get_checkpoint(self, run_id: str, entity_type: str, batch_number: int) -> Optional[Checkpoint]:
        pass

    @abstractmethod
    def _put_checkpoint(self, checkpoint: Checkpoint) -> None:
        pass

    @abstractmethod
    def list_checkpoints(self, run_id: str, entity_type: Optional[str] = None) -> List[Checkpoint]:
        """Checkpoints of a run ordered by entity type and batch number."""

    @abstractmethod
    def save_run(self, run: MigrationRun) -> None:
        pass

    @abstractmethod
    def load_run(self, run_id: str) -> Optional[MigrationRun]:
        pass

    @abstractmethod
    def list_runs(self) -> List[MigrationRun]:
        pass

    @abstractmethod
    def save_identities(self, run_id: str, identities: List[CanonicalIdentity]) -> None:
        """Upsert identities by patient key; callers pass only the ones that changed."""

    @abstractmethod
    def load_identities(self, run_id: str) -> List[CanonicalIdentity]:
        pass

    def close(self) -> None:
        """Release resources held by the store."""

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, checkpoint: Checkpoint, new_status: BatchStatus) -> None:
        if new_status not in BATCH_TRANSITIONS[checkpoint.status]:
            raise CheckpointConflict(
                f"Illegal transition {checkpoint.status.value} -> {new_status.value} for "
                f"{checkpoint.entity_type} batch {checkpoint.batch_number}"
            )
        checkpoint.status = new_status

    def mark_batch_started(
        self,
        run_id: str,
        entity_type: str,
        batch_number: int,
        start_cursor: Optional[Any] = None
    ) -> Checkpoint:
        """
        Move a batch to ``in_progress``.

        A previously failed batch goes back through ``pending`` first.

        Raises:
            CheckpointConflict: If the batch is already done or another batch
                of the same entity type is in progress
        """
        with self._lock:
            for other in self.list_checkpoints(run_id, entity_type):
                if other.status == BatchStatus.IN_PROGRESS and other.batch_number != batch_number:
                    raise CheckpointConflict(
                        f"{entity_type} batch {other.batch_number} is still in progress"
                    )

            checkpoint = self._get_checkpoint(run_id, entity_type, batch_number)
            if checkpoint is None:
                checkpoint = Checkpoint(run_id=run_id, entity_type=entity_type, batch_number=batch_number)
            elif checkpoint.status == BatchStatus.FAILED:
                self._transition(checkpoint, BatchStatus.PENDING)
                logger.info(f"Retrying {entity_type} batch {batch_number} (attempt {checkpoint.attempts + 1})")

            self._transition(checkpoint, BatchStatus.IN_PROGRESS)
            checkpoint.start_cursor = start_cursor
            checkpoint.end_cursor = None
            checkpoint.attempts += 1
            checkpoint.last_attempt_at = utcnow()
            checkpoint.error_summary = None
            self._put_checkpoint(checkpoint)
            return checkpoint

    def mark_batch_completed(
        self,
        run_id: str,
        entity_type: str,
        batch_number: int,
        end_cursor: Optional[Any],
        stats: Optional[Dict[str, int]] = None
    ) -> Checkpoint:
        """Move an in-progress batch to ``done`` and record its stats."""
        with self._lock:
            checkpoint = self._require(run_id, entity_type, batch_number)
            self._transition(checkpoint, BatchStatus.DONE)
            stats = dict(stats or {})
            checkpoint.end_cursor = end_cursor
            checkpoint.stats = stats
            checkpoint.records_processed = stats.get("extracted", 0)
            checkpoint.records_failed = stats.get("failed", 0) + stats.get("quarantined", 0)
            checkpoint.last_attempt_at = utcnow()
            self._put_checkpoint(checkpoint)
            return checkpoint

    def mark_batch_failed(
        self,
        run_id: str,
        entity_type: str,
        batch_number: int,
        error: Optional[str] = None,
        stats: Optional[Dict[str, int]] = None
    ) -> Checkpoint:
        """Move an in-progress batch to ``failed``."""
        with self._lock:
            checkpoint = self._require(run_id, entity_type, batch_number)
            self._transition(checkpoint, BatchStatus.FAILED)
            checkpoint.error_summary = (error or "")[:1000]
            checkpoint.stats = dict(stats or {})
            checkpoint.last_attempt_at = utcnow()
            self._put_checkpoint(checkpoint)
            return checkpoint

    def _require(self, run_id: str, entity_type: str, batch_number: int) -> Checkpoint:
        checkpoint = self._get_checkpoint(run_id, entity_type, batch_number)
        if checkpoint is None:
            raise CheckpointConflict(f"No checkpoint for {entity_type} batch {batch_number} in run {run_id}")
        return checkpoint

    # ------------------------------------------------------------------
    # Resume queries
    # ------------------------------------------------------------------

    def _done_prefix(self, run_id: str, entity_type: str) -> List[Checkpoint]:
        done = []
        expected = 1
        for checkpoint in self.list_checkpoints(run_id, entity_type):
            if checkpoint.batch_number != expected or checkpoint.status != BatchStatus.DONE:
                break
            done.append(checkpoint)
            expected += 1
        return done

    def get_resume_point(self, run_id: str, entity_type: str) -> Optional[Any]:
        """End cursor of the last contiguous done batch, or None to start over."""
        with self._lock:
            done = self._done_prefix(run_id, entity_type)
            return done[-1].end_cursor if done else None

    def next_batch_number(self, run_id: str, entity_type: str) -> int:
        with self._lock:
            return len(self._done_prefix(run_id, entity_type)) + 1

    def completed_totals(self, run_id: str, entity_type: str) -> EntityTotals:
        """Counters of every done batch, used to rebuild totals on resume."""
        totals = EntityTotals()
        for checkpoint in self._done_prefix(run_id, entity_type):
            totals.add(checkpoint.stats)
        return totals

    def reset_interrupted(self, run_id: str) -> int:
        """
        Mark batches left ``in_progress`` by a dead process as ``failed``.

        Returns:
            Number of batches reset
        """
        reset = 0
        with self._lock:
            for checkpoint in self.list_checkpoints(run_id):
                if checkpoint.status == BatchStatus.IN_PROGRESS:
                    self._transition(checkpoint, BatchStatus.FAILED)
                    checkpoint.error_summary = "interrupted before completion"
                    self._put_checkpoint(checkpoint)
                    reset += 1
        if reset:
            logger.warning(f"Reset {reset} interrupted batches of run {run_id} to failed")
        return reset

    def latest_resumable_run(self, name: Optional[str] = None, dry_run: bool = False) -> Optional[MigrationRun]:
        """
        Most recent run that did not finish, or still has enrichment to do.

        Dry runs and real runs never resume each other: a staged batch is
        checkpointed ``done`` without having been written.
        """
        runs = [
            r for r in self.list_runs()
            if r.resumable and r.dry_run == dry_run and (name is None or r.name == name)
        ]
        if not runs:
            return None
        return max(runs, key=lambda r: r.started_at)


class FileCheckpointStore(CheckpointStore):
    """
    Checkpoint store on the local filesystem.

    Layout under ``directory``::

        run_<id>.json                     run aggregate
        run_<id>/<entity>/<batch>.json    one document per batch checkpoint
        identities_<id>.jsonl             canonical identities, appended on change

    Documents are replaced atomically, so a crash leaves either the previous
    or the new state on disk, never a torn file. A checkpoint write touches
    only that batch's document.
    """

    def __init__(self, directory: str):
        super().__init__()
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._checkpoints: Dict[str, Dict[str, Dict[int, Checkpoint]]] = {}

    def _run_path(self, run_id: str) -> Path:
        return self.directory / f"run_{run_id}.json"

    def _checkpoint_path(self, run_id: str, entity_type: str, batch_number: int) -> Path:
        return self.directory / f"run_{run_id}" / entity_type / f"{batch_number}.json"

    def _identities_path(self, run_id: str) -> Path:
        return self.directory / f"identities_{run_id}.jsonl"

    def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _run_checkpoints(self, run_id: str) -> Dict[str, Dict[int, Checkpoint]]:
        if run_id not in self._checkpoints:
            loaded: Dict[str, Dict[int, Checkpoint]] = {}
            for path in (self.directory / f"run_{run_id}").glob("*/*.json"):
                with open(path) as f:
                    checkpoint = Checkpoint.from_dict(json.load(f))
                loaded.setdefault(checkpoint.entity_type, {})[checkpoint.batch_number] = checkpoint
            self._checkpoints[run_id] = loaded
        return self._checkpoints[run_id]

    def _get_checkpoint(self, run_id: str, entity_type: str, batch_number: int) -> Optional[Checkpoint]:
        with self._lock:
            checkpoint = self._run_checkpoints(run_id).get(entity_type, {}).get(batch_number)
            return replace(checkpoint) if checkpoint else None

    def _put_checkpoint(self, checkpoint: Checkpoint) -> None:
        with self._lock:
            path = self._checkpoint_path(checkpoint.run_id, checkpoint.entity_type, checkpoint.batch_number)
            self._write_json(path, checkpoint.to_dict())
            batches = self._run_checkpoints(checkpoint.run_id).setdefault(checkpoint.entity_type, {})
            batches[checkpoint.batch_number] = replace(checkpoint)

    def list_checkpoints(self, run_id: str, entity_type: Optional[str] = None) -> List[Checkpoint]:
        with self._lock:
            checkpoints = self._run_checkpoints(run_id)
            entities = [entity_type] if entity_type else sorted(checkpoints)
            result = []
            for entity in entities:
                batches = checkpoints.get(entity, {})
                for number in sorted(batches):
                    result.append(replace(batches[number]))
            return result

    def save_run(self, run: MigrationRun) -> None:
        with self._lock:
            self._write_json(self._run_path(run.run_id), run.to_dict())

    def load_run(self, run_id: str) -> Optional[MigrationRun]:
        path = self._run_path(run_id)
        with self._lock:
            if not path.exists():
                return None
            with open(path) as f:
                return MigrationRun.from_dict(json.load(f))

    def list_runs(self) -> List[MigrationRun]:
        runs = []
        for path in sorted(self.directory.glob("run_*.json")):
            run = self.load_run(path.stem[len("run_"):])
            if run is not None:
                runs.append(run)
        return runs

    def save_identities(self, run_id: str, identities: List[CanonicalIdentity]) -> None:
        if not identities:
            return
        with self._lock:
            with open(self._identities_path(run_id), "a") as f:
                for identity in identities:
                    f.write(json.dumps(identity.to_dict(), default=str) + "\n")
                f.flush()
                os.fsync(f.fileno())

    def load_identities(self, run_id: str) -> List[CanonicalIdentity]:
        path = self._identities_path(run_id)
        latest: Dict[str, CanonicalIdentity] = {}
        with self._lock:
            if not path.exists():
                return []
            with open(path) as f:
                lines = f.read().splitlines()
        for number, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except ValueError:
                if number == len(lines):
                    logger.warning(f"Ignoring torn last identity record of run {run_id}")
                    break
                raise
            identity = CanonicalIdentity.from_dict(data)
            latest[identity.patient_key] = identity
        return list(latest.values())
