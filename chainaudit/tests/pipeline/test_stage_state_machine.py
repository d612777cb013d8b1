import asyncio

import anyio
import pytest

from chainaudit.app.errors import PipelineStoppedError, StageExecutionError
from chainaudit.app.events import AuditEventType
from chainaudit.app.pipeline.state_machine import CANCELLED_BY_USER, StageStateMachine
from chainaudit.app.schemas.job_status import JobState, StageState
from chainaudit.app.schemas.stages import PIPELINE_STAGES, PipelineStage
from chainaudit.tests.helpers import (
    FailingEventEmitter,
    ListEventEmitter,
    StubAnalyzer,
    make_finding,
    make_request,
)


def _machine(analyzer: StubAnalyzer, **kwargs) -> StageStateMachine:
    return StageStateMachine(
        job_id="job-0001",
        network="solana",
        analyzer=analyzer,
        total_files=1,
        **kwargs,
    )


# ----------------------------------------------------------------------
# Ordering and progress
# ----------------------------------------------------------------------

def test_stages_run_in_fixed_order_with_monotonic_progress():
    """
    Guarantees:
    - every stage runs exactly once, in the fixed order
    - each stage emits STARTED, PROGRESS, COMPLETED, PROGRESS
    - progress never decreases and ends at 100
    """

    async def _run():
        analyzer = StubAnalyzer(static_findings=[make_finding("S-1")])
        machine = _machine(analyzer)
        emitter = ListEventEmitter()

        report = await machine.run(make_request(), emitter=emitter)

        assert analyzer.calls == [
            "preprocess",
            "parse",
            "static_analysis",
            "semantic_analysis",
            "ai_analysis",
            "external_tools_analysis",
            "aggregate_results",
        ]
        assert report.summary.total_issues == 1

        status = machine.status
        assert status.status == JobState.COMPLETED
        assert status.progress == 100
        assert status.current_stage is None
        assert status.completed_at is not None
        for stage in PIPELINE_STAGES:
            assert status.stages[stage].status == StageState.COMPLETED
            assert status.stages[stage].duration_ms is not None

        expected = []
        for stage in PIPELINE_STAGES:
            expected += [
                (AuditEventType.STAGE_STARTED, stage.value),
                (AuditEventType.PROGRESS, stage.value),
                (AuditEventType.STAGE_COMPLETED, stage.value),
                (AuditEventType.PROGRESS, stage.value),
            ]
        assert [(e.event_type, e.details["stage"]) for e in emitter.events] == expected

        progress = [
            e.details["progress"] for e in emitter.of_type(AuditEventType.PROGRESS)
        ]
        assert progress == sorted(progress)
        assert progress[-1] == 100

    anyio.run(_run)


def test_disabled_optional_stages_are_skipped():
    async def _run():
        analyzer = StubAnalyzer()
        machine = _machine(analyzer)
        emitter = ListEventEmitter()

        await machine.run(make_request(enabled_stages=[]), emitter=emitter)

        assert analyzer.calls == [
            "preprocess",
            "parse",
            "static_analysis",
            "aggregate_results",
        ]
        for stage in (
            PipelineStage.SEMANTIC_ANALYSIS,
            PipelineStage.AI_ANALYSIS,
            PipelineStage.EXTERNAL_TOOLS,
        ):
            assert machine.status.stages[stage].status == StageState.SKIPPED

        skipped = [e.details["stage"] for e in emitter.of_type(AuditEventType.STAGE_SKIPPED)]
        assert skipped == ["semantic-analysis", "ai-analysis", "external-tools"]
        assert machine.status.status == JobState.COMPLETED
        assert machine.status.progress == 100

    anyio.run(_run)


def test_ai_flag_skips_only_ai_stage():
    async def _run():
        analyzer = StubAnalyzer()
        machine = _machine(analyzer)

        await machine.run(make_request(ai_analysis_enabled=False))

        assert "ai_analysis" not in analyzer.calls
        assert "semantic_analysis" in analyzer.calls
        assert machine.status.stages[PipelineStage.AI_ANALYSIS].status == StageState.SKIPPED

    anyio.run(_run)


# ----------------------------------------------------------------------
# Failure handling
# ----------------------------------------------------------------------

def test_mandatory_stage_failure_fails_job_and_stops_pipeline():
    """
    Guarantees:
    - a raising mandatory stage fails the job with the stage name in the error
    - no later stage starts or gets a status entry
    """

    async def _run():
        analyzer = StubAnalyzer(fail_in=["static_analysis"])
        machine = _machine(analyzer)
        emitter = ListEventEmitter()

        with pytest.raises(StageExecutionError) as excinfo:
            await machine.run(make_request(), emitter=emitter)

        assert excinfo.value.stage == "static-analysis"
        assert analyzer.calls == ["preprocess", "parse", "static_analysis"]

        status = machine.status
        assert status.status == JobState.FAILED
        assert status.error.startswith("static-analysis:")
        assert "static_analysis exploded" in status.error
        assert status.stages[PipelineStage.STATIC_ANALYSIS].status == StageState.FAILED
        assert PipelineStage.SEMANTIC_ANALYSIS not in status.stages
        assert status.stage_state(PipelineStage.SEMANTIC_ANALYSIS) == StageState.PENDING
        assert status.progress == round(2 / 7 * 100)

        failed = emitter.of_type(AuditEventType.STAGE_FAILED)
        assert len(failed) == 1
        assert failed[0].details["stage"] == "static-analysis"
        assert emitter.of_type(AuditEventType.AUDIT_COMPLETED) == []

    anyio.run(_run)


def test_optional_stage_failure_degrades_to_input():
    async def _run():
        static = [make_finding("S-1"), make_finding("S-2", line=20)]
        analyzer = StubAnalyzer(static_findings=static, fail_in=["ai_analysis"])
        machine = _machine(analyzer)

        report = await machine.run(make_request())

        ai = machine.status.stages[PipelineStage.AI_ANALYSIS]
        assert ai.status == StageState.COMPLETED
        assert ai.degraded is True
        assert "ai_analysis exploded" in ai.error
        assert [f.id for f in analyzer.aggregated_input] == ["S-1", "S-2"]
        assert machine.status.status == JobState.COMPLETED
        assert report.summary.total_issues == 2

    anyio.run(_run)


def test_optional_stages_are_additive():
    """
    An optional stage that drops its input still cannot remove findings;
    only new ids are appended.
    """

    async def _run():
        analyzer = StubAnalyzer(
            static_findings=[make_finding("S-1")],
            extra={
                "semantic_analysis": [make_finding("SEM-1", line=30)],
                "external_tools_analysis": [
                    make_finding("S-1", line=99),
                    make_finding("EXT-1", line=40),
                ],
            },
            drop_inputs_in=["semantic_analysis"],
        )
        machine = _machine(analyzer)

        await machine.run(make_request())

        ids = [f.id for f in analyzer.aggregated_input]
        assert ids == ["S-1", "SEM-1", "EXT-1"]
        assert analyzer.aggregated_input[0].location.start_line == 10

    anyio.run(_run)


def test_job_deadline_fails_the_running_stage():
    async def _run():
        async def slow():
            await asyncio.sleep(1)

        analyzer = StubAnalyzer(hooks={"static_analysis": slow})
        machine = _machine(analyzer)

        with pytest.raises(StageExecutionError) as excinfo:
            await machine.run(make_request(timeout_ms=50))

        assert excinfo.value.stage == "static-analysis"
        assert isinstance(excinfo.value.cause, TimeoutError)
        assert "deadline" in machine.status.error
        assert machine.status.status == JobState.FAILED

    anyio.run(_run)


def test_emitter_failures_do_not_affect_execution():
    async def _run():
        machine = _machine(StubAnalyzer())

        await machine.run(make_request(), emitter=FailingEventEmitter())

        assert machine.status.status == JobState.COMPLETED

    anyio.run(_run)


# ----------------------------------------------------------------------
# Stop flag
# ----------------------------------------------------------------------

def test_stop_lets_running_stage_finish_and_blocks_the_next():
    async def _run():
        holder = {}

        async def request_stop():
            holder["machine"].stop()

        analyzer = StubAnalyzer(hooks={"parse": request_stop})
        machine = _machine(analyzer)
        holder["machine"] = machine
        emitter = ListEventEmitter()

        with pytest.raises(PipelineStoppedError) as excinfo:
            await machine.run(make_request(), emitter=emitter)

        assert excinfo.value.stage == "static-analysis"
        assert analyzer.calls == ["preprocess", "parse"]

        status = machine.status
        assert status.status == JobState.CANCELLED
        assert status.error == CANCELLED_BY_USER
        assert status.stages[PipelineStage.PARSER].status == StageState.COMPLETED
        assert PipelineStage.STATIC_ANALYSIS not in status.stages

        started = [e.details["stage"] for e in emitter.of_type(AuditEventType.STAGE_STARTED)]
        assert started == ["preprocess", "parser"]

    anyio.run(_run)


def test_terminal_state_is_never_left():
    async def _run():
        machine = _machine(StubAnalyzer())
        await machine.run(make_request())

        assert machine.stop() is False
        assert machine.fail("late failure") is False
        assert machine.status.status == JobState.COMPLETED
        assert machine.status.error is None

    anyio.run(_run)
