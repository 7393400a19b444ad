"""
End-to-end walkthrough of the clinical risk engine.

This script exercises:
1. Configuration loading
2. Assessment scoring, update and score trends
3. Patient risk aggregation
4. Care-plan goals, interventions and analytics
5. Resilience: rate limiting and service status

Everything runs in-process against the memory adapters. AI insights are
added when OPENAI_API_KEY is set.

Run with: uv run python demo.py
"""

import asyncio
from datetime import timedelta

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.memory import InMemoryRepository, LocalEventPublisher
from risk_engine.config import AppConfig, RateLimitConfig, ResilienceConfig, get_config, print_config_summary
from risk_engine.domain.models import Assessment, ProgressRecord, utc_now
from risk_engine.logging_setup import configure_logging
from risk_engine.services.facade import ClinicalEngineService, ServiceResponse
from risk_engine.services.insights import build_insight_generator
from risk_engine.services.ports import DomainEvent

console = Console()

NURSE = "nurse-ada"
PATIENT = "patient-1001"


class DemoClock:
    """Wall clock that the walkthrough can move forward."""

    def __init__(self) -> None:
        self.now = utc_now() - timedelta(weeks=4)

    def __call__(self):
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def build_service(config: AppConfig, clock: DemoClock, events: LocalEventPublisher) -> ClinicalEngineService:
    return ClinicalEngineService(
        assessments=InMemoryRepository[Assessment]("assessments"),
        progress_records=InMemoryRepository[ProgressRecord]("progress_records"),
        config=config,
        insight_generator=build_insight_generator(config.ai_provider),
        event_publisher=events,
        clock=clock,
    )


def show_failure(response: ServiceResponse) -> None:
    assert response.error is not None
    console.print(f"❌ {response.error.code}: {response.error.message}", style="red")


async def check_configuration() -> bool:
    console.print(Panel("🔧 Configuration", style="blue"))
    config = get_config()
    if not config.ai_provider.enabled:
        console.print("⚠️  OPENAI_API_KEY not set: AI insights disabled", style="yellow")
    print_config_summary(config)
    return True


async def check_assessments(service: ClinicalEngineService, clock: DemoClock) -> bool:
    console.print(Panel("📋 Assessments", style="blue"))

    weekly_morse = [
        {"history_of_falls": 25, "secondary_diagnosis": 15, "ambulatory_aid": 30, "iv_therapy": 20, "gait": 20, "mental_status": 15},
        {"history_of_falls": 25, "secondary_diagnosis": 15, "ambulatory_aid": 15, "iv_therapy": 20, "gait": 10, "mental_status": 15},
        {"history_of_falls": 25, "secondary_diagnosis": 15, "ambulatory_aid": 15, "iv_therapy": 0, "gait": 10, "mental_status": 0},
        {"history_of_falls": 25, "secondary_diagnosis": 0, "ambulatory_aid": 0, "iv_therapy": 0, "gait": 10, "mental_status": 0},
    ]

    table = Table(title="Morse Fall Scale")
    table.add_column("Week", style="cyan")
    table.add_column("Total", style="white")
    table.add_column("Level", style="magenta")

    last_id = ""
    for week, categories in enumerate(weekly_morse, start=1):
        response = await service.create_assessment(
            {"patient_id": PATIENT, "tool_type": "morse", "categories": categories}, NURSE
        )
        if not response.success:
            show_failure(response)
            return False
        assessment = response.data
        last_id = assessment.id
        table.add_row(str(week), str(assessment.total_score), assessment.risk_level)
        clock.advance(weeks=1)
    console.print(table)

    updated = await service.update_assessment(last_id, {"categories": {"gait": 0}}, NURSE, expected_version=1)
    if not updated.success:
        show_failure(updated)
        return False
    console.print(f"Updated latest assessment to {updated.data.total_score} (v{updated.data.version})")

    stale = await service.update_assessment(last_id, {"categories": {"gait": 10}}, NURSE, expected_version=1)
    console.print(f"Stale write rejected: {stale.error.code if stale.error else 'no'}", style="yellow")

    trend = await service.assessment_score_trend(PATIENT, "morse", NURSE, period="week")
    if not trend.success:
        show_failure(trend)
        return False
    report = trend.data.trend
    console.print(
        f"Trend: {report.direction.value} (slope {report.slope:.1f}/week, "
        f"r={report.correlation:.2f}, {report.confidence.value} confidence)",
        style="green",
    )
    return True


async def check_risk_aggregation(service: ClinicalEngineService) -> bool:
    console.print(Panel("🩺 Patient Risk", style="blue"))

    response = await service.assess_patient_risk(
        {
            "patient_id": PATIENT,
            "include_assessments": True,
            "profile": {
                "patient_id": PATIENT,
                "age": 82,
                "conditions": ["Heart failure", "Type 2 diabetes"],
                "medications": ["warfarin", "insulin", "furosemide", "metoprolol", "lisinopril", "atorvastatin"],
                "functional_status": "uses walker, needs assistance with transfers",
                "social_history": "lives alone",
                "vitals": {"respiratory_rate": 24, "systolic_bp": 96, "temperature_f": 101.2},
            },
        },
        NURSE,
    )
    if not response.success:
        show_failure(response)
        return False

    aggregate = response.data.aggregate
    table = Table(title=f"Overall risk: {aggregate.overall_level.value.upper()}")
    table.add_column("Risk", style="cyan")
    table.add_column("Value", style="white")
    table.add_column("Level", style="magenta")
    table.add_column("Source", style="dim")
    for risk_type, score in aggregate.scores.items():
        table.add_row(risk_type, f"{score.value:.0f}", score.level.value, response.data.sources[risk_type])
    console.print(table)

    for alert in aggregate.alerts:
        console.print(f"🚨 {alert.message}: {alert.recommended_action}", style="red")
    for recommendation in aggregate.recommendations[:5]:
        console.print(f"  [{recommendation.priority.value}] {recommendation.text}")
    if response.data.insights:
        console.print(f"\n🤖 {response.data.insights.narrative}", style="green")
    return True


async def check_progress(service: ClinicalEngineService, clock: DemoClock) -> bool:
    console.print(Panel("🎯 Care Plan Progress", style="blue"))

    created = await service.create_progress_record(
        {
            "patient_id": PATIENT,
            "goals": [
                {
                    "description": "Walk 200 meters with walker",
                    "category": "mobility",
                    "priority": "high",
                    "target_value": 200,
                    "unit": "meters",
                    "time_bound": clock.now + timedelta(weeks=4),
                    "milestones": [
                        {"description": "Halfway", "threshold": 50},
                        {"description": "Three quarters", "threshold": 75},
                    ],
                }
            ],
        },
        NURSE,
    )
    if not created.success:
        show_failure(created)
        return False
    record = created.data
    goal_id = record.goals[0].id

    for meters in (40, 70, 110):
        clock.advance(days=3)
        response = await service.update_goal_progress(record.id, goal_id, meters, NURSE)
        if not response.success:
            show_failure(response)
            return False
        for milestone in response.data.update.reached_milestones:
            console.print(f"🏁 Milestone reached: {milestone.description}", style="green")

    clock.advance(days=1)
    intervention = await service.record_intervention(
        record.id,
        {"type": "physical_therapy", "description": "Gait training session", "goal_updates": {goal_id: 160}},
        NURSE,
    )
    if not intervention.success:
        show_failure(intervention)
        return False
    recorded = intervention.data.outcome.intervention
    console.print(
        f"Intervention {recorded.id}: effectiveness {recorded.effectiveness} ({recorded.effectiveness_impact.value})"
    )

    prediction = await service.predict_goal(record.id, goal_id, NURSE)
    if prediction.success:
        p = prediction.data
        console.print(
            f"Prediction: {p.probability:.0%} likely, ~{p.estimated_periods} more updates "
            f"(confidence {p.confidence:.2f})",
            style="green",
        )

    analytics = await service.progress_analytics(record.id, NURSE)
    if not analytics.success:
        show_failure(analytics)
        return False
    overview = analytics.data.overview
    console.print(
        f"Overall progress {overview['overall_progress']}%, "
        f"{overview['completed_goals']} completed, trend {analytics.data.overall_trend.value}"
    )
    return True


async def check_resilience(config: AppConfig) -> bool:
    console.print(Panel("🛡️ Resilience", style="blue"))

    strict = config.model_copy(
        update={"resilience": ResilienceConfig(rate_limit=RateLimitConfig(max_requests=3, window_seconds=60))}
    )
    service = build_service(strict, DemoClock(), LocalEventPublisher())
    codes = []
    for _ in range(5):
        response = await service.get_assessment("missing", "busy-user")
        codes.append(response.error.code if response.error else "OK")
    console.print(f"Responses: {', '.join(codes)}")

    status = service.health_check()
    console.print(f"Status: {status['status']}, requests: {status['requests']['total']}")
    return codes[-1] == "RATE_LIMIT_EXCEEDED"


async def run_demo() -> None:
    config = get_config()
    configure_logging(config.logging)
    console.print(Panel("🏥 Clinical Risk Engine - Walkthrough", style="bold blue"))

    clock = DemoClock()
    events = LocalEventPublisher()
    seen: list[str] = []

    def on_event(event: DomainEvent) -> None:
        seen.append(event.event_type)

    events.subscribe("*", on_event)
    service = build_service(config, clock, events)

    steps = [
        ("Configuration", check_configuration()),
        ("Assessments", check_assessments(service, clock)),
        ("Risk Aggregation", check_risk_aggregation(service)),
        ("Progress", check_progress(service, clock)),
        ("Resilience", check_resilience(config)),
    ]

    results = []
    for name, step in steps:
        console.print(f"\n{'=' * 60}")
        try:
            results.append((name, await step))
        except Exception as e:
            console.print(f"❌ {name} failed with exception: {e}", style="red")
            results.append((name, False))

    await service.drain_events()

    console.print(f"\n{'=' * 60}")
    summary = Table(title="Summary")
    summary.add_column("Step", style="cyan")
    summary.add_column("Result", style="white")
    for name, ok in results:
        summary.add_row(name, "✅ PASSED" if ok else "❌ FAILED")
    console.print(summary)
    console.print(f"Events published: {len(seen)} ({', '.join(sorted(set(seen)))})")


if __name__ == "__main__":
    asyncio.run(run_demo())
