"""
CrisisBridge composition root.

``CrisisBridge`` wires the detector, protocol catalog, professional
directory, channel service, escalation orchestrator and safety monitor
around one shared audit log, and exposes:

* ``process_message()`` -- detect, record the safety event and, when a
  protocol fires, start the escalation in the background;
* role-checked administrative operations, each audited;
* ``start()`` / ``stop()`` for the monitoring loop and running escalations.

Nothing here is a module-level singleton; tests build as many independent
instances as they need.

DISCLAIMER: This subsystem routes people in distress to trained humans.  It
does not replace emergency services.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog

from crisisbridge.audit import AuditEntry, AuditEventType, AuditLog
from crisisbridge.channels import CommunicationChannel, SecureChannelService
from crisisbridge.config import CrisisBridgeConfig
from crisisbridge.detector import CrisisDetector
from crisisbridge.encryption import KeyRing
from crisisbridge.escalation import EscalationOrchestrator, EscalationRecord
from crisisbridge.knowledge import KnowledgeBase
from crisisbridge.models import (
    AnalysisContext,
    Assessment,
    Professional,
    Role,
    UserLocation,
)
from crisisbridge.monitoring import SafetyAlert, SafetyEventType, SafetyMonitor
from crisisbridge.notifications import NotificationGateway
from crisisbridge.professionals import ProfessionalMatcher
from crisisbridge.protocols import EscalationProtocol, ProtocolCatalog, ProtocolMatcher
from crisisbridge.rbac import PermissionDeniedError, require_permission
from crisisbridge.repository import ProfessionalRepository
from crisisbridge.transparency_report import TransparencyReport, generate_transparency_report

logger = structlog.get_logger(__name__)


class ProcessingResult:
    """Outcome of processing one inbound message."""

    def __init__(
        self,
        assessment: Optional[Assessment],
        escalation: Optional[EscalationRecord] = None,
    ) -> None:
        self.assessment = assessment
        self.escalation = escalation

    @property
    def escalated(self) -> bool:
        return self.escalation is not None

    def __repr__(self) -> str:
        assessment_id = self.assessment.assessment_id if self.assessment else None
        escalation_id = self.escalation.escalation_id if self.escalation else None
        return f"ProcessingResult(assessment={assessment_id}, escalation={escalation_id})"


class CrisisBridge:
    """The assembled subsystem."""

    def __init__(
        self,
        config: CrisisBridgeConfig | None = None,
        knowledge_base: KnowledgeBase | None = None,
        gateway: NotificationGateway | None = None,
        professionals: list[Professional] | None = None,
        protocols: list[EscalationProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or CrisisBridgeConfig()
        clock = clock or (lambda: datetime.now(timezone.utc))

        self.audit_log = AuditLog()
        self.detector = CrisisDetector(self.config.detection, knowledge_base, self.audit_log)
        self.catalog = ProtocolCatalog(protocols, audit_log=self.audit_log)
        self.professionals = ProfessionalRepository(professionals)
        self.professional_matcher = ProfessionalMatcher(self.professionals, self.config.matching, clock)
        self.channels = SecureChannelService(
            KeyRing(self.config.channels, clock=clock),
            settings=self.config.channels,
            audit_log=self.audit_log,
            clock=clock,
        )
        self.orchestrator = EscalationOrchestrator(
            ProtocolMatcher(self.catalog),
            self.professional_matcher,
            self.professionals,
            self.channels,
            self.audit_log,
            gateway=gateway,
            retention_policy=self.config.retention_policy,
            listener=self._on_escalation_event,
        )
        self.monitor = SafetyMonitor(
            self.config.monitoring,
            escalations=self.orchestrator.repository,
            audit_log=self.audit_log,
            clock=clock,
        )
        self._assessments: dict[str, Assessment] = {}
        self.monitor.add_cleanup_hook(self._purge_closed)

    # -- lifecycle --

    def start(self) -> None:
        """Start the monitoring loop.  Must be called inside a running event loop."""
        self.monitor.start()
        logger.info(
            "crisisbridge_started",
            protocols=len(self.catalog),
            professionals=len(self.professionals),
        )

    async def stop(self) -> None:
        await self.monitor.stop()
        await self.orchestrator.shutdown()
        logger.info("crisisbridge_stopped")

    def _purge_closed(self, now: datetime) -> dict[str, int]:
        """Monitor cleanup hook: sweep expired channels, then drop closed work past retention."""
        cutoff = now - timedelta(hours=self.config.closed_record_retention_hours)
        self.channels.expire_channels()
        channels = self.channels.purge_closed(cutoff)
        escalations = self.orchestrator.purge_closed(cutoff)
        for escalation_id in escalations:
            self._assessments.pop(escalation_id, None)
        keys = self.channels.key_ring.purge_expired()
        return {
            "purged_channels": len(channels),
            "purged_escalations": len(escalations),
            "purged_keys": len(keys),
        }

    # -- message path --

    async def process_message(
        self,
        user_id: str,
        session_id: str,
        message: str,
        context: AnalysisContext | None = None,
        user_location: UserLocation | None = None,
        languages: list[str] | None = None,
    ) -> ProcessingResult:
        """Assess one message and escalate when a protocol matches.

        The user's safety profile stands in for ``user_history`` when the
        caller does not supply one.
        """
        context = context.model_copy() if context is not None else AnalysisContext()
        if context.user_history is None:
            context.user_history = self.monitor.get_profile(user_id)

        assessment = await self.detector.analyze(user_id, session_id, message, context)
        if assessment is None:
            return ProcessingResult(None)
        if "analysis_error" in assessment.risk_factors:
            return ProcessingResult(assessment)

        self.monitor.record_event(
            user_id,
            SafetyEventType.CRISIS_DETECTED,
            assessment.severity,
            {
                "assessment_id": assessment.assessment_id,
                "confidence": assessment.confidence,
                "indicators": assessment.indicators.active_flags(),
            },
        )

        record = await self.orchestrator.initiate(assessment, user_location, languages)
        if record is not None:
            self._assessments[record.escalation_id] = assessment
            self.monitor.record_event(
                user_id,
                SafetyEventType.ESCALATION_INITIATED,
                assessment.severity,
                {"escalation_id": record.escalation_id, "protocol_id": record.protocol_id},
            )
        return ProcessingResult(assessment, record)

    def _on_escalation_event(self, event_type: AuditEventType, record: EscalationRecord) -> None:
        if event_type == AuditEventType.PROFESSIONAL_ASSIGNED:
            self.monitor.record_event(
                record.user_id,
                SafetyEventType.PROFESSIONAL_ASSIGNED,
                record.severity,
                {"escalation_id": record.escalation_id, "professional_id": record.professional_id},
            )
        elif event_type == AuditEventType.ESCALATION_RESOLVED:
            self.monitor.record_event(
                record.user_id,
                SafetyEventType.INTERVENTION_COMPLETED,
                record.severity,
                {"escalation_id": record.escalation_id, "outcome": record.outcome},
            )

    # -- admin operations --

    def _authorize(self, actor_id: str, role: Role, action: str) -> None:
        try:
            require_permission(role, action)
        except PermissionDeniedError:
            logger.warning("permission_denied", actor_id=actor_id, role=role.value, action=action)
            raise

    def update_protocol(self, protocol: EscalationProtocol, actor_id: str, role: Role) -> None:
        self._authorize(actor_id, role, "update_protocol")
        self.catalog.update(protocol, actor_id=actor_id, actor_role=role.value)

    def acknowledge_alert(self, alert_id: str, actor_id: str, role: Role) -> SafetyAlert:
        self._authorize(actor_id, role, "acknowledge_alert")
        return self.monitor.acknowledge_alert(alert_id, actor_id, actor_role=role.value)

    def resolve_alert(self, alert_id: str, resolution_details: str, actor_id: str, role: Role) -> SafetyAlert:
        self._authorize(actor_id, role, "resolve_alert")
        return self.monitor.resolve_alert(alert_id, actor_id, resolution_details, actor_role=role.value)

    def rotate_keys(self, actor_id: str, role: Role) -> str:
        self._authorize(actor_id, role, "rotate_keys")
        return self.channels.rotate_keys(actor_id=actor_id, actor_role=role.value)

    def compromise_key(self, key_id: str, actor_id: str, role: Role) -> str:
        self._authorize(actor_id, role, "compromise_key")
        return self.channels.compromise_key(key_id, actor_id=actor_id, actor_role=role.value)

    def grant_emergency_access(self, channel_id: str, reason: str, actor_id: str, role: Role) -> CommunicationChannel:
        self._authorize(actor_id, role, "grant_emergency_access")
        return self.channels.emergency_access(channel_id, actor_id, reason)

    def _audit_professional_change(self, professional: Professional, actor_id: str, role: Role, change: str, **details: Any) -> None:
        self.audit_log.record(
            AuditEventType.PROFESSIONAL_UPDATED,
            actor_id=actor_id,
            actor_role=role.value,
            target_entity=professional.professional_id,
            metadata={"change": change, **details},
        )

    def add_professional(self, professional: Professional, actor_id: str, role: Role) -> Professional:
        self._authorize(actor_id, role, "update_professional")
        added = self.professionals.add(professional)
        self._audit_professional_change(added, actor_id, role, "added", specialties=added.specialties)
        return added

    async def update_professional_availability(
        self,
        professional_id: str,
        actor_id: str,
        role: Role,
        **changes: Any,
    ) -> Professional:
        """Forward ``current_status``, ``schedule``, ``override_until`` or ``emergency_contact``."""
        self._authorize(actor_id, role, "update_professional")
        updated = await self.professionals.update_availability(professional_id, **changes)
        self._audit_professional_change(
            updated, actor_id, role, "availability",
            current_status=updated.availability.current_status.value,
            fields=sorted(changes),
        )
        return updated

    async def update_professional_workload(
        self,
        professional_id: str,
        max_cases: int,
        actor_id: str,
        role: Role,
    ) -> Professional:
        self._authorize(actor_id, role, "update_professional")
        updated = await self.professionals.update_workload(professional_id, max_cases)
        self._audit_professional_change(updated, actor_id, role, "workload", max_cases=max_cases)
        return updated

    async def resolve_escalation(self, escalation_id: str, outcome: str, actor_id: str, role: Role) -> EscalationRecord:
        self._authorize(actor_id, role, "resolve_escalation")
        return await self.orchestrator.resolve(escalation_id, outcome, actor_id=actor_id, actor_role=role.value)

    def query_audit(self, actor_id: str, role: Role, **filters: Any) -> list[AuditEntry]:
        self._authorize(actor_id, role, "query_audit")
        return self.audit_log.query(**filters)

    def export_audit(self, subject_id: str, actor_id: str, role: Role) -> dict[str, Any]:
        self._authorize(actor_id, role, "export_audit")
        export = self.audit_log.export_for_review(subject_id)
        self.audit_log.record(
            AuditEventType.AUDIT_EXPORTED,
            actor_id=actor_id,
            actor_role=role.value,
            subject_id=subject_id,
            metadata={"entry_count": export["export_metadata"]["entry_count"]},
        )
        return export

    def transparency_report(self, escalation_id: str, actor_id: str, role: Role) -> TransparencyReport:
        self._authorize(actor_id, role, "query_audit")
        record = self.orchestrator.get(escalation_id)
        return generate_transparency_report(record, self._assessments.get(escalation_id))
