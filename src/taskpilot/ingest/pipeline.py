from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
import logging

from taskpilot.ingest.classifier import TaskClassifier, normalize_classification
from taskpilot.ingest.dedup import AlreadySeen, IngestionDeduplicator
from taskpilot.ingest.types import MessageKey
from taskpilot.models import IngestionRecord, IngestionStatus
from taskpilot.orchestrator import ScheduleOutcome, SchedulingOrchestrator
from taskpilot.repository import SqlTaskRepository
from taskpilot.task_service import build_task

logger = logging.getLogger(__name__)


class IngestionOutcomeStatus(StrEnum):
    TASK_CREATED = "task_created"
    NO_TASK = "no_task"
    DECLINED = "declined"
    IN_PROGRESS = "in_progress"


_OUTCOME_BY_RECORD_STATUS: dict[IngestionStatus, IngestionOutcomeStatus] = {
    IngestionStatus.PROCESSING: IngestionOutcomeStatus.IN_PROGRESS,
    IngestionStatus.TASK_CREATED: IngestionOutcomeStatus.TASK_CREATED,
    IngestionStatus.NO_TASK: IngestionOutcomeStatus.NO_TASK,
    IngestionStatus.DECLINED: IngestionOutcomeStatus.DECLINED,
}


@dataclass(frozen=True)
class IngestionOutcome:
    status: IngestionOutcomeStatus
    duplicate: bool = False
    task_id: int | None = None
    schedule: ScheduleOutcome | None = None

    @classmethod
    def from_record(cls, record: IngestionRecord, *, duplicate: bool) -> IngestionOutcome:
        return cls(
            status=_OUTCOME_BY_RECORD_STATUS[IngestionStatus(record.status)],
            duplicate=duplicate,
            task_id=record.task_id,
        )


class TaskIngestionPipeline:
    """Turns inbound chat messages into scheduled tasks, at most once per message."""

    def __init__(
        self,
        *,
        owner_id: int,
        ledger: IngestionDeduplicator,
        classifier: TaskClassifier,
        repository: SqlTaskRepository,
        orchestrator: SchedulingOrchestrator,
    ) -> None:
        self.owner_id = owner_id
        self.ledger = ledger
        self.classifier = classifier
        self.repository = repository
        self.orchestrator = orchestrator

    def ingest_message(
        self,
        source_message_id: str,
        source_channel_id: str,
        workspace_id: str,
        message_text: str,
    ) -> IngestionOutcome:
        key = MessageKey(
            source_message_id=source_message_id,
            source_channel_id=source_channel_id,
            workspace_id=workspace_id,
        )
        claim = self.ledger.claim(key)
        if isinstance(claim, AlreadySeen):
            return IngestionOutcome.from_record(claim.record, duplicate=True)

        recovered = False
        try:
            # An earlier delivery may have created the task without recording it.
            task = self.repository.find_by_source(
                source_message_id=key.source_message_id,
                source_channel_id=key.source_channel_id,
                workspace_id=key.workspace_id,
            )
            if task is not None:
                recovered = True
                logger.warning(
                    "ingestion_task_recovered key=%s task_id=%s took_over=%s",
                    key,
                    task.id,
                    claim.took_over,
                )
            else:
                result = normalize_classification(self.classifier.classify(message_text), message_text)
                if not result.is_task or not result.title:
                    self.ledger.complete(key, IngestionStatus.NO_TASK)
                    return IngestionOutcome(status=IngestionOutcomeStatus.NO_TASK)

                task = self.repository.create(
                    build_task(
                        owner_id=self.owner_id,
                        title=result.title,
                        description=result.description,
                        required_min=result.estimated_min,
                        priority=result.priority,
                        due_date=result.due_date,
                        due_time=result.due_time,
                        source_message_id=key.source_message_id,
                        source_channel_id=key.source_channel_id,
                        workspace_id=key.workspace_id,
                    )
                )
            self.ledger.complete(key, IngestionStatus.TASK_CREATED, task_id=task.id)
        except Exception:
            # The task row, if any, is found by its source key on redelivery.
            logger.warning("ingestion_failed key=%s", key)
            self.ledger.release(key)
            raise

        schedule = None
        if not task.completed:
            schedule = self.orchestrator.schedule_task(task)
            logger.info(
                "ingestion_task_scheduled key=%s task_id=%s schedule_status=%s",
                key,
                task.id,
                schedule.status,
            )
        return IngestionOutcome(
            status=IngestionOutcomeStatus.TASK_CREATED,
            duplicate=recovered,
            task_id=task.id,
            schedule=schedule,
        )
