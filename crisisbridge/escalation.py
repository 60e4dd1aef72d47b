"""
Escalation Orchestrator -- executes a selected protocol for one assessment.

Each escalation is an explicit state machine owned by its own asyncio task:

    INITIATED -> IN_PROGRESS -> ESCALATED
                             -> FAILED      (orchestration crashed)
    INITIATED / IN_PROGRESS / ESCALATED -> RESOLVED   (human resolution)

Steps run strictly in order.  Each step action is bounded by
``asyncio.wait_for(step.timeout_seconds)``; a timeout or an exception is a
failed step, recorded with its error, after which the step's fallback (if
any) runs before the next primary step.  Emergency protocols stop after
the first successful primary step.

Escalations for different users run concurrently.  A record is only
mutated by its own task until it finishes; ``resolve()`` cancels the task
before taking over.  The only shared resource touched by steps is
responder workload, which the repository reserves atomically.

Every transition and step outcome is written to the hash-chained audit log.

DISCLAIMER: The orchestrator routes cases to human responders.  It does not
make clinical decisions.
"""

from __future__ import annotations

import asyncio
import enum
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from crisisbridge.audit import AuditEventType, AuditLog
from crisisbridge.channels import CommunicationSession, SecureChannelService
from crisisbridge.models import Assessment, ProtocolPriority, Severity, UserLocation
from crisisbridge.notifications import (
    LoggingNotificationGateway,
    Notification,
    NotificationGateway,
    resources_for,
)
from crisisbridge.professionals import (
    ProfessionalMatcher,
    crisis_type_from_indicators,
    criteria_from_assessment,
)
from crisisbridge.protocols import EscalationProtocol, EscalationStep, ProtocolMatcher, StepAction
from crisisbridge.repository import CapacityExceededError, InMemoryRepository, ProfessionalRepository

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class EscalationStatus(str, enum.Enum):
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    FAILED = "failed"


_VALID_TRANSITIONS: dict[EscalationStatus, set[EscalationStatus]] = {
    EscalationStatus.INITIATED: {
        EscalationStatus.IN_PROGRESS,
        EscalationStatus.RESOLVED,
        EscalationStatus.FAILED,
    },
    EscalationStatus.IN_PROGRESS: {
        EscalationStatus.ESCALATED,
        EscalationStatus.RESOLVED,
        EscalationStatus.FAILED,
    },
    EscalationStatus.ESCALATED: {EscalationStatus.RESOLVED},
    EscalationStatus.RESOLVED: set(),  # terminal state
    EscalationStatus.FAILED: set(),  # terminal state
}

OPEN_STATUSES = {EscalationStatus.INITIATED, EscalationStatus.IN_PROGRESS}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepExecution(BaseModel):
    step_id: str
    executed_at: datetime = Field(default_factory=_utcnow)
    success: bool = False
    is_fallback: bool = False
    response: Optional[str] = None
    error: Optional[str] = None
    duration_ms: float = 0.0
    metadata: dict = Field(default_factory=dict)


class ComplianceRecord(BaseModel):
    hipaa_compliant: bool = True
    audit_logged: bool = True
    data_encrypted: bool = True
    retention_policy: str = "7_years_crisis_data"
    access_logged: bool = True


class EscalationRecord(BaseModel):
    """Lifecycle of one escalation.

    ``steps`` is append-only and in execution order, fallbacks directly
    after the primary step they replace.
    """

    escalation_id: str = Field(default_factory=lambda: f"escalation-{uuid.uuid4().hex[:16]}")
    user_id: str
    session_id: str
    assessment_id: str
    protocol_id: str
    severity: Severity
    crisis_type: str = "general_crisis"
    status: EscalationStatus = EscalationStatus.INITIATED
    priority: ProtocolPriority
    started_at: datetime = Field(default_factory=_utcnow)
    resolved_at: Optional[datetime] = None
    steps: list[StepExecution] = Field(default_factory=list)
    outcome: str = "pending"
    compliance: ComplianceRecord = Field(default_factory=ComplianceRecord)
    professional_id: Optional[str] = None
    channel_id: Optional[str] = None
    estimated_response_time: Optional[int] = Field(default=None, description="Minutes.")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class InvalidTransitionError(Exception):
    """Raised when a status transition is not permitted."""
    pass


class EscalationNotFoundError(KeyError):
    """Raised when an escalation id is unknown."""
    pass


class StepFailedError(Exception):
    """Raised by a step action that could not complete."""
    pass


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class EscalationOrchestrator:
    """Selects protocols, runs them as tasks and tracks escalation records.

    ``listener`` is called with every audited lifecycle event after it is
    written, e.g. so the safety monitor can follow assignments.
    """

    def __init__(
        self,
        protocol_matcher: ProtocolMatcher,
        professional_matcher: ProfessionalMatcher,
        professionals: ProfessionalRepository,
        channels: SecureChannelService,
        audit_log: AuditLog,
        gateway: NotificationGateway | None = None,
        repository: InMemoryRepository[EscalationRecord] | None = None,
        retention_policy: str = "7_years_crisis_data",
        listener: Callable[[AuditEventType, EscalationRecord], None] | None = None,
    ) -> None:
        self._protocol_matcher = protocol_matcher
        self._professional_matcher = professional_matcher
        self._professionals = professionals
        self._channels = channels
        self._audit_log = audit_log
        self._gateway = gateway or LoggingNotificationGateway()
        self.repository = repository or InMemoryRepository(
            lambda r: r.escalation_id, entity_name="escalation"
        )
        self._retention_policy = retention_policy
        self._listener = listener
        self._tasks: dict[str, asyncio.Task] = {}
        self._held_slots: dict[str, str] = {}
        self._release_tasks: set[asyncio.Task] = set()
        channels.add_session_listener(self._on_session_ended)

    # -- helpers --

    def _validate_transition(self, record: EscalationRecord, target: EscalationStatus) -> None:
        """Raise InvalidTransitionError if the transition is not allowed."""
        allowed = _VALID_TRANSITIONS.get(record.status, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {record.status.value} to {target.value}. "
                f"Allowed transitions: {[s.value for s in allowed]}"
            )

    def _transition(self, record: EscalationRecord, target: EscalationStatus) -> None:
        self._validate_transition(record, target)
        record.status = target

    def _emit_audit(
        self,
        event_type: AuditEventType,
        record: EscalationRecord,
        actor_id: str = "SYSTEM",
        actor_role: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> None:
        self._audit_log.record(
            event_type,
            actor_id=actor_id,
            actor_role=actor_role,
            subject_id=record.user_id,
            target_entity=record.escalation_id,
            metadata=metadata or {},
        )
        if self._listener is not None:
            self._listener(event_type, record)

    def _on_session_ended(self, session: CommunicationSession) -> None:
        professional_id = self._held_slots.pop(session.channel_id, None)
        if professional_id is None:
            return
        logger.info(
            "case_slot_released",
            channel_id=session.channel_id,
            professional_id=professional_id,
            reason=session.end_reason,
        )
        task = asyncio.get_running_loop().create_task(self._professionals.release(professional_id))
        self._release_tasks.add(task)
        task.add_done_callback(self._release_tasks.discard)

    def _require(self, escalation_id: str) -> EscalationRecord:
        record = self.repository.find_by_id(escalation_id)
        if record is None:
            raise EscalationNotFoundError(f"No escalation with id '{escalation_id}'")
        return record

    # -- lifecycle --

    async def initiate(
        self,
        assessment: Assessment,
        user_location: UserLocation | None = None,
        languages: list[str] | None = None,
    ) -> Optional[EscalationRecord]:
        """Select a protocol and start executing it in the background.

        Returns:
            The new record (status ``initiated``), or None when no protocol
            matches the assessment.
        """
        protocol = self._protocol_matcher.select(assessment)
        if protocol is None:
            logger.info(
                "no_escalation_protocol_triggered",
                user_id=assessment.user_id,
                session_id=assessment.session_id,
                assessment_id=assessment.assessment_id,
                confidence=round(assessment.confidence, 4),
                severity=assessment.severity.value,
            )
            return None

        record = EscalationRecord(
            user_id=assessment.user_id,
            session_id=assessment.session_id,
            assessment_id=assessment.assessment_id,
            protocol_id=protocol.protocol_id,
            severity=assessment.severity,
            crisis_type=crisis_type_from_indicators(assessment.indicators),
            priority=protocol.priority,
            compliance=ComplianceRecord(retention_policy=self._retention_policy),
        )
        self.repository.save(record)

        self._emit_audit(
            AuditEventType.ESCALATION_INITIATED,
            record,
            metadata={
                "assessment_id": assessment.assessment_id,
                "protocol_id": protocol.protocol_id,
                "priority": protocol.priority.value,
                "severity": assessment.severity.value,
                "confidence": assessment.confidence,
                "compliance_requirements": list(protocol.compliance_requirements),
            },
        )
        logger.info(
            "crisis_escalation_initiated",
            escalation_id=record.escalation_id,
            user_id=record.user_id,
            session_id=record.session_id,
            protocol_id=protocol.protocol_id,
            priority=protocol.priority.value,
        )

        task = asyncio.create_task(
            self._run(record, protocol, assessment, user_location, languages),
            name=f"escalation:{record.escalation_id}",
        )
        self._tasks[record.escalation_id] = task
        task.add_done_callback(lambda _t, eid=record.escalation_id: self._tasks.pop(eid, None))
        return record

    async def _run(
        self,
        record: EscalationRecord,
        protocol: EscalationProtocol,
        assessment: Assessment,
        user_location: UserLocation | None,
        languages: list[str] | None,
    ) -> None:
        try:
            self._transition(record, EscalationStatus.IN_PROGRESS)

            for step in protocol.escalation_path:
                execution = await self._execute_step(step, record, assessment, user_location, languages)

                if not execution.success and step.fallback is not None:
                    await self._execute_step(
                        step.fallback, record, assessment, user_location, languages, is_fallback=True
                    )

                if protocol.priority == ProtocolPriority.EMERGENCY and execution.success:
                    break

            self._transition(record, EscalationStatus.ESCALATED)
            record.resolved_at = _utcnow()
            record.outcome = "protocol_executed"

            self._emit_audit(
                AuditEventType.ESCALATION_COMPLETED,
                record,
                metadata={
                    "steps_executed": len(record.steps),
                    "successful_steps": sum(1 for s in record.steps if s.success),
                    "professional_id": record.professional_id,
                    "channel_id": record.channel_id,
                },
            )
            logger.info(
                "escalation_protocol_completed",
                escalation_id=record.escalation_id,
                steps_executed=len(record.steps),
                outcome=record.outcome,
            )

        except asyncio.CancelledError:
            logger.info("escalation_task_cancelled", escalation_id=record.escalation_id)
            raise

        except Exception as exc:
            if record.status in OPEN_STATUSES:
                record.status = EscalationStatus.FAILED
                record.resolved_at = _utcnow()
                record.outcome = "orchestration_error"
            logger.error(
                "escalation_execution_failed",
                escalation_id=record.escalation_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._emit_audit(
                AuditEventType.ESCALATION_FAILED,
                record,
                metadata={"error": str(exc)},
            )

    async def _execute_step(
        self,
        step: EscalationStep,
        record: EscalationRecord,
        assessment: Assessment,
        user_location: UserLocation | None,
        languages: list[str] | None,
        is_fallback: bool = False,
    ) -> StepExecution:
        execution = StepExecution(
            step_id=step.step_id,
            is_fallback=is_fallback,
            metadata=dict(step.metadata),
        )
        started = time.perf_counter()

        try:
            execution.response = await asyncio.wait_for(
                self._dispatch(step, record, assessment, user_location, languages),
                timeout=step.timeout_seconds,
            )
            execution.success = True
        except asyncio.TimeoutError:
            execution.error = f"Step timed out after {step.timeout_seconds}s"
        except Exception as exc:
            execution.error = str(exc) or type(exc).__name__

        execution.duration_ms = round((time.perf_counter() - started) * 1000, 2)
        record.steps.append(execution)

        log = logger.info if execution.success else logger.warning
        log(
            "escalation_step_executed",
            escalation_id=record.escalation_id,
            step_id=step.step_id,
            action=step.action.value,
            success=execution.success,
            is_fallback=is_fallback,
            error=execution.error,
        )
        self._emit_audit(
            AuditEventType.ESCALATION_STEP_EXECUTED,
            record,
            metadata={
                "step_id": step.step_id,
                "action": step.action.value,
                "target": step.target.value,
                "success": execution.success,
                "is_fallback": is_fallback,
                "error": execution.error,
            },
        )
        return execution

    # -- step actions --

    async def _dispatch(
        self,
        step: EscalationStep,
        record: EscalationRecord,
        assessment: Assessment,
        user_location: UserLocation | None,
        languages: list[str] | None,
    ) -> str:
        if step.action == StepAction.ASSIGN:
            return await self._assign_professional(step, record, assessment, user_location, languages)
        return await self._notify(step, record, languages)

    async def _notify(
        self,
        step: EscalationStep,
        record: EscalationRecord,
        languages: list[str] | None,
    ) -> str:
        """alert / notify / escalate / intervene all go through the gateway."""
        language = languages[0] if languages else None
        notification = Notification(
            escalation_id=record.escalation_id,
            user_id=record.user_id,
            action=step.action.value,
            target=step.target.value,
            method=step.method.value,
            priority=record.priority.value,
            resources=resources_for(record.crisis_type, language),
            metadata={
                **step.metadata,
                "severity": record.severity.value,
                "crisis_type": record.crisis_type,
                "session_id": record.session_id,
            },
        )
        result = await self._gateway.send(notification)
        if not result.delivered:
            raise StepFailedError(result.message)
        return result.message

    async def _assign_professional(
        self,
        step: EscalationStep,
        record: EscalationRecord,
        assessment: Assessment,
        user_location: UserLocation | None,
        languages: list[str] | None,
    ) -> str:
        criteria = criteria_from_assessment(
            assessment, user_location, languages, settings=self._professional_matcher.settings,
        )
        matches = await self._professional_matcher.find_best_match(criteria)
        if not matches:
            logger.error(
                "no_professionals_available",
                escalation_id=record.escalation_id,
                step_id=step.step_id,
            )
            raise StepFailedError("No professionals available for assignment")

        for match in matches:
            professional_id = match.professional.professional_id
            try:
                await self._professionals.reserve(professional_id)
            except CapacityExceededError:
                logger.info(
                    "professional_reservation_lost",
                    escalation_id=record.escalation_id,
                    professional_id=professional_id,
                )
                continue

            record.professional_id = professional_id
            record.estimated_response_time = match.estimated_response_time
            try:
                channel = self._channels.create_channel(
                    professional_id,
                    record.user_id,
                    escalation_id=record.escalation_id,
                    assessment_id=record.assessment_id,
                )
            except Exception:
                record.professional_id = None
                record.estimated_response_time = None
                await self._professionals.release(professional_id)
                raise
            record.channel_id = channel.channel_id
            self._held_slots[channel.channel_id] = professional_id

            self._emit_audit(
                AuditEventType.PROFESSIONAL_ASSIGNED,
                record,
                metadata={
                    "professional_id": professional_id,
                    "channel_id": channel.channel_id,
                    "score": match.score,
                    "estimated_response_time": match.estimated_response_time,
                    "assignment_type": step.metadata.get("assignment_type"),
                },
            )
            logger.info(
                "professional_assigned",
                escalation_id=record.escalation_id,
                step_id=step.step_id,
                professional_id=professional_id,
                channel_id=channel.channel_id,
                estimated_response_time=match.estimated_response_time,
            )
            return f"Assigned {professional_id} on channel {channel.channel_id}"

        raise StepFailedError("All matched professionals reached capacity")

    # -- human operations --

    async def resolve(
        self,
        escalation_id: str,
        outcome: str,
        actor_id: str = "SYSTEM",
        actor_role: str = "SYSTEM",
    ) -> EscalationRecord:
        """Close an escalation, cancelling its task if still running.

        The assigned responder's case slot is released and the channel
        session ended.  A slot already given back because the
        session ended earlier is not released twice.

        Raises:
            EscalationNotFoundError: Unknown id.
            InvalidTransitionError: Already resolved or failed.
            ValueError: Empty outcome.
        """
        if not outcome.strip():
            raise ValueError("An outcome is required to resolve an escalation.")

        record = self._require(escalation_id)
        self._validate_transition(record, EscalationStatus.RESOLVED)

        task = self._tasks.get(escalation_id)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._validate_transition(record, EscalationStatus.RESOLVED)
        record.status = EscalationStatus.RESOLVED
        record.resolved_at = _utcnow()
        record.outcome = outcome

        if record.channel_id is not None:
            professional_id = self._held_slots.pop(record.channel_id, None)
            if professional_id is not None:
                await self._professionals.release(professional_id)
            session = self._channels.session_for_channel(record.channel_id)
            if session is not None:
                self._channels.end_session(session.session_id, f"escalation_resolved:{outcome}")

        self._emit_audit(
            AuditEventType.ESCALATION_RESOLVED,
            record,
            actor_id=actor_id,
            actor_role=actor_role,
            metadata={"outcome": outcome},
        )
        logger.info("escalation_resolved", escalation_id=escalation_id, outcome=outcome)
        return record

    async def wait(self, escalation_id: str, timeout: float | None = None) -> EscalationRecord:
        """Wait for the escalation's task to finish and return the record."""
        record = self._require(escalation_id)
        task = self._tasks.get(escalation_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return record

    async def shutdown(self) -> None:
        """Cancel every running escalation task."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._release_tasks:
            await asyncio.gather(*list(self._release_tasks))

    def purge_closed(self, before: datetime) -> list[str]:
        """Forget closed escalations whose ``resolved_at`` is older than ``before``.

        An ``escalated`` record counts as closed once its responder slot has
        been given back.  The audit log keeps the permanent trail.
        """
        purged: list[str] = []
        for record in self.repository.list():
            if record.status in OPEN_STATUSES or record.resolved_at is None:
                continue
            if record.resolved_at >= before or self.is_running(record.escalation_id):
                continue
            if record.channel_id is not None and record.channel_id in self._held_slots:
                continue
            self.repository.delete(record.escalation_id)
            purged.append(record.escalation_id)

        if purged:
            logger.info("closed_escalations_purged", count=len(purged))
        return purged

    # -- queries --

    def get(self, escalation_id: str) -> EscalationRecord:
        return self._require(escalation_id)

    def is_running(self, escalation_id: str) -> bool:
        task = self._tasks.get(escalation_id)
        return task is not None and not task.done()

    def active(self) -> list[EscalationRecord]:
        return self.repository.list(lambda r: r.status in OPEN_STATUSES)

    def all(self) -> list[EscalationRecord]:
        return self.repository.list()
