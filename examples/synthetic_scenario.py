"""
Synthetic Scenario: Crisis Detection and Escalation Walkthrough
===============================================================

This script demonstrates the full CrisisBridge workflow using entirely
synthetic data.  No real user data, PHI, or PII is used.

The scenario simulates a peer-support chat platform with two on-call
responders.  One user describes a panic attack; another makes a direct
suicidal statement; a third talks about their therapy session.

Steps demonstrated:
  1. Configure logging and assemble the subsystem
  2. Register synthetic responders
  3. Process a therapy-discussion message (suppressed)
  4. Process a panic attack message (responder assigned, secure channel)
  5. Process a direct suicidal statement (emergency protocol)
  6. Exchange encrypted messages and resolve the escalation
  7. Review safety metrics and alerts
  8. Generate an Escalation Transparency Report
  9. Export the audit log for compliance review

DISCLAIMER: This is a synthetic demonstration.  This software is not a
medical device and does not replace emergency services.

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from crisisbridge.knowledge import InMemoryKnowledgeBase
from crisisbridge.logging_config import configure_logging
from crisisbridge.models import (
    AnalysisContext,
    AvailabilitySlot,
    Location,
    Professional,
    ProfessionalAvailability,
    Rating,
    Role,
    SessionMetadata,
    UserLocation,
)
from crisisbridge.system import CrisisBridge


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _responder(professional_id: str, name: str, specialties: list[str]) -> Professional:
    return Professional(
        professional_id=professional_id,
        name=name,
        specialties=specialties,
        languages=["English", "Spanish"],
        location=Location(country="US", state="CA", city="Oakland"),
        timezone="America/Los_Angeles",
        availability=ProfessionalAvailability(
            schedule=[
                AvailabilitySlot(day_of_week=day, start_time="00:00", end_time="23:59")
                for day in range(7)
            ],
            emergency_contact=True,
        ),
        rating=Rating(overall=4.7, crisis_response=4.8, total_cases=120),
    )


async def run() -> None:
    _banner("CrisisBridge Synthetic Scenario")
    print("DISCLAIMER: All data in this demo is entirely synthetic.")
    print("This software is not a medical device.\n")

    # ------------------------------------------------------------------
    # Step 1: Assemble
    # ------------------------------------------------------------------
    _banner("Step 1: Assemble the Subsystem")

    configure_logging("WARNING", json_output=False)

    knowledge_base = InMemoryKnowledgeBase()
    knowledge_base.add("Grounding techniques during a panic attack crisis")
    knowledge_base.add("Breathing exercises for an anxiety emergency: slow breathe in, slow breathe out")

    bridge = CrisisBridge(knowledge_base=knowledge_base)
    bridge.start()
    print(f"Protocols loaded: {bridge.catalog.list_protocols()}")
    print(f"Key ring self test: {bridge.channels.key_ring.self_test()}")

    # ------------------------------------------------------------------
    # Step 2: Responders
    # ------------------------------------------------------------------
    _banner("Step 2: Register Synthetic Responders")

    for responder in (
        _responder("prof_synthetic_001", "Responder A (synthetic)", ["anxiety", "crisis_intervention"]),
        _responder("prof_synthetic_002", "Responder B (synthetic)", ["suicide_prevention", "self_harm"]),
    ):
        bridge.add_professional(responder, "sup_synthetic_001", Role.SUPERVISOR)
        print(f"Registered {responder.name}: {responder.specialties}")

    location = UserLocation(country="US", state="CA", timezone="America/Los_Angeles")

    # ------------------------------------------------------------------
    # Step 3: Suppressed message
    # ------------------------------------------------------------------
    _banner("Step 3: Therapy Discussion (Suppressed)")

    result = await bridge.process_message(
        "user_synthetic_c", "session_c",
        "My therapist and I were discussing suicide prevention strategies",
    )
    print(f"Result: {result}")
    print(f"  Escalated: {result.escalated}")

    # ------------------------------------------------------------------
    # Step 4: Panic attack
    # ------------------------------------------------------------------
    _banner("Step 4: Panic Attack (Responder Assignment)")

    context = AnalysisContext(
        conversation_history=["I feel hopeless and worthless", "I'm terrified and hopeless"],
        session_metadata=SessionMetadata(messages_per_minute=6),
    )
    panic = await bridge.process_message(
        "user_synthetic_a", "session_a",
        "I'm having a panic attack, I can't breathe and I'm terrified",
        context,
        user_location=location,
    )
    assessment = panic.assessment
    print(f"Assessment: severity={assessment.severity.value}, confidence={assessment.confidence:.3f}")
    print(f"  Indicators: {assessment.indicators.active_flags()}")
    print(f"  Risk factors: {assessment.risk_factors}")

    panic_record = await bridge.orchestrator.wait(panic.escalation.escalation_id, timeout=5)
    print(f"\nEscalation {panic_record.escalation_id}")
    print(f"  Protocol: {panic_record.protocol_id}")
    print(f"  Status: {panic_record.status.value}")
    print(f"  Responder: {panic_record.professional_id}")
    print(f"  Estimated response: {panic_record.estimated_response_time} min")

    # ------------------------------------------------------------------
    # Step 5: Direct statement
    # ------------------------------------------------------------------
    _banner("Step 5: Direct Suicidal Statement (Emergency Protocol)")

    critical = await bridge.process_message(
        "user_synthetic_b", "session_b", "I want to kill myself", user_location=location,
    )
    print(f"Assessment: severity={critical.assessment.severity.value}, "
          f"immediate={critical.assessment.immediate}")
    critical_record = await bridge.orchestrator.wait(critical.escalation.escalation_id, timeout=5)
    for step in critical_record.steps:
        print(f"  Step {step.step_id}: success={step.success} ({step.duration_ms} ms)")
    print(f"  Status: {critical_record.status.value}")

    # ------------------------------------------------------------------
    # Step 6: Secure channel
    # ------------------------------------------------------------------
    _banner("Step 6: Secure Channel and Resolution")

    channel_id = panic_record.channel_id
    for sender, text in (
        (panic_record.professional_id, "Hi, I'm here with you. Let's slow our breathing together."),
        ("user_synthetic_a", "Okay. It's getting a little easier."),
    ):
        message = bridge.channels.send_message(channel_id, sender, text)
        print(f"[{message.sender_type.value}] sealed with {message.content.key_id}: "
              f"{bridge.channels.decrypt_message(message)}")

    resolved = await bridge.resolve_escalation(
        panic_record.escalation_id,
        "Synthetic resolution: grounding completed, follow-up scheduled.",
        panic_record.professional_id,
        Role.PROFESSIONAL,
    )
    print(f"\nEscalation resolved. Status: {resolved.status.value}")
    print(f"  Responder caseload: {bridge.professionals.get(resolved.professional_id).workload.current_cases}")

    # ------------------------------------------------------------------
    # Step 7: Monitoring
    # ------------------------------------------------------------------
    _banner("Step 7: Safety Metrics and Alerts")

    metrics = bridge.monitor.update_metrics()
    print(json.dumps(metrics.model_dump(mode="json"), indent=2))
    for alert in bridge.monitor.check_thresholds():
        print(f"ALERT [{alert.severity.value}] {alert.title}: {alert.description}")
        bridge.acknowledge_alert(alert.alert_id, "sup_synthetic_001", Role.SUPERVISOR)

    # ------------------------------------------------------------------
    # Step 8: Transparency report
    # ------------------------------------------------------------------
    _banner("Step 8: Escalation Transparency Report")

    report = bridge.transparency_report(critical_record.escalation_id, "sup_synthetic_001", Role.SUPERVISOR)
    print(json.dumps(report.to_dict(), indent=2, default=str))

    # ------------------------------------------------------------------
    # Step 9: Audit export
    # ------------------------------------------------------------------
    _banner("Step 9: Audit Log Export (Compliance Review)")

    export = bridge.export_audit("user_synthetic_b", "auditor_synthetic_001", Role.AUDITOR)
    print(json.dumps(export["export_metadata"], indent=2))

    valid, broken_at = bridge.audit_log.verify_chain()
    print(f"\nFull chain verification: valid={valid}, broken_at={broken_at}")

    await bridge.stop()

    _banner("Scenario Complete")
    print("This demo exercised:")
    print("  - Multi-signal crisis detection with false-positive suppression")
    print("  - Protocol selection and escalation with step timeouts")
    print("  - Responder matching and capacity reservation")
    print("  - AES-256-GCM secure channels")
    print("  - Safety monitoring, transparency reporting and audit export")
    print()
    print("All data was synthetic. No real users, PHI, or PII.")


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
