"""
Healing API endpoints.

Ingestion, run lifecycle, result reporting, human review and run reports.
Domain errors propagate to the handlers registered in ``errors.py``.
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header
from fastapi.responses import Response
from fastapi.security import HTTPAuthorizationCredentials

from ..core.models import HealingEvent, Project, TestRun
from ..services.healing_orchestrator import ReportAck, TestRunOrchestrator
from .auth import (
    ensure_project_access, extract_api_key, get_current_project, require_admin,
    resolve_project, security,
)
from .dependencies import get_orchestrator
from .schemas import (
    BeginRunRequest, EventListResponse, FailRunRequest, HealingEventResponse,
    IngestRequest, IngestResponse, ProjectCreateRequest, ProjectResponse,
    ReportAckResponse, ReportResultRequest, ReviewRequest, ReviewResponse,
    RunResponse, ScreenshotRequest, ScreenshotResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["healing"])


def run_response(run: TestRun) -> RunResponse:
    return RunResponse.model_validate(run.to_dict())


def event_response(event: HealingEvent) -> HealingEventResponse:
    return HealingEventResponse.model_validate(event.to_dict())


def ack_response(ack: ReportAck) -> ReportAckResponse:
    return ReportAckResponse.model_validate(ack.to_dict())


async def owned_run(orchestrator: TestRunOrchestrator, project: Project, run_id: str) -> TestRun:
    run = await orchestrator.get_run(run_id)
    ensure_project_access(project, run.project_id)
    return run


# =================== Ingestion ===================

@router.post("/ingest", response_model=IngestResponse)
async def ingest_failure(
    request: IngestRequest,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    """Report a single failed test from CI and return the healing decision."""
    api_key = extract_api_key(credentials, x_api_key) or request.api_key
    project = await resolve_project(orchestrator, api_key)

    ack = await orchestrator.ingest(
        project.id,
        test_name=request.test_name,
        failed_selector=request.failed_selector,
        error_message=request.error_message,
        dom_snapshot=request.dom_snapshot,
        branch=request.branch,
        commit_sha=request.commit_sha,
        test_file=request.test_file,
        changed_files=request.changed_files,
    )
    data = ack.to_dict()
    return IngestResponse(
        test_run_id=ack.run.id,
        status=data["status"],
        healed_selector=data["healed_selector"],
        confidence=data["confidence"],
        reason_code=data["reason_code"],
        event_id=data["event_id"],
        duplicate=ack.duplicate,
    )


# =================== Projects ===================

@router.post("/projects", response_model=ProjectResponse, status_code=201,
             dependencies=[Depends(require_admin)])
async def create_project(
    request: ProjectCreateRequest,
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    """Register a project and issue its API key. Operators only."""
    project = await orchestrator.register_project(request.name, request.api_key, request.owner_id)
    return ProjectResponse(
        id=project.id,
        name=project.name,
        api_key=project.api_key,
        owner_id=project.owner_id,
        created_at=project.created_at,
    )


@router.post("/projects/{project_id}/runs", response_model=RunResponse, status_code=201)
async def begin_run(
    project_id: str,
    request: Optional[BeginRunRequest] = None,
    project: Project = Depends(get_current_project),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    """Open a new test run."""
    ensure_project_access(project, project_id)
    request = request or BeginRunRequest()
    run = await orchestrator.begin_run(
        project_id,
        branch=request.branch,
        commit_sha=request.commit_sha,
        triggered_by=request.triggered_by,
        job_id=request.job_id,
    )
    return run_response(run)


# =================== Runs ===================

@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: str,
    project: Project = Depends(get_current_project),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    return run_response(await owned_run(orchestrator, project, run_id))


@router.post("/runs/{run_id}/results", response_model=ReportAckResponse)
async def report_result(
    run_id: str,
    request: ReportResultRequest,
    project: Project = Depends(get_current_project),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    """Report one test outcome; failures are healed before responding."""
    await owned_run(orchestrator, project, run_id)
    ack = await orchestrator.report_result(
        run_id,
        request.test_name,
        request.outcome,
        selector=request.selector,
        error_message=request.error_message,
        snapshot=request.dom_snapshot,
        test_file=request.test_file,
        changed_files=request.changed_files,
    )
    return ack_response(ack)


@router.post("/runs/{run_id}/complete", response_model=RunResponse)
async def complete_run(
    run_id: str,
    project: Project = Depends(get_current_project),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    await owned_run(orchestrator, project, run_id)
    return run_response(await orchestrator.complete_run(run_id))


@router.post("/runs/{run_id}/fail", response_model=RunResponse)
async def fail_run(
    run_id: str,
    request: Optional[FailRunRequest] = None,
    project: Project = Depends(get_current_project),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    await owned_run(orchestrator, project, run_id)
    reason = request.reason if request else None
    return run_response(await orchestrator.fail_run(run_id, reason))


@router.post("/runs/{run_id}/screenshots", response_model=ScreenshotResponse, status_code=201)
async def attach_screenshot(
    run_id: str,
    request: ScreenshotRequest,
    project: Project = Depends(get_current_project),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    await owned_run(orchestrator, project, run_id)
    screenshot = await orchestrator.attach_screenshot(
        run_id, request.path, test_name=request.test_name, kind=request.kind
    )
    return ScreenshotResponse.model_validate(screenshot.to_dict())


@router.get("/runs/{run_id}/events", response_model=EventListResponse)
async def list_run_events(
    run_id: str,
    project: Project = Depends(get_current_project),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    """Healing events of a run with summary counts."""
    await owned_run(orchestrator, project, run_id)
    events, summary = await orchestrator.list_events(run_id)
    return EventListResponse(
        run_id=run_id,
        events=[event_response(e) for e in events],
        summary=summary,
    )


# =================== Healing events ===================

@router.get("/healing-events/{event_id}", response_model=HealingEventResponse)
async def get_healing_event(
    event_id: str,
    project: Project = Depends(get_current_project),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    event = await orchestrator.get_event(event_id)
    await owned_run(orchestrator, project, event.run_id)
    return event_response(event)


@router.get("/healing-events/{event_id}/snapshot")
async def get_healing_event_snapshot(
    event_id: str,
    project: Project = Depends(get_current_project),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    """The DOM snapshot captured with the failure."""
    event = await orchestrator.get_event(event_id)
    await owned_run(orchestrator, project, event.run_id)
    content = await orchestrator.load_snapshot(event_id)
    if content is None:
        return Response(status_code=404, content=f"No snapshot stored for event {event_id}")
    return Response(content=content, media_type="text/html")


@router.patch("/healing-events/{event_id}", response_model=ReviewResponse)
async def review_healing_event(
    event_id: str,
    request: ReviewRequest,
    project: Project = Depends(get_current_project),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    """Resolve an event that is waiting for human review."""
    event = await orchestrator.get_event(event_id)
    await owned_run(orchestrator, project, event.run_id)

    reviewed, run = await orchestrator.resolve_review(
        event_id,
        request.action,
        selector=request.selector,
        candidate_index=request.candidate_index,
        applied_by=request.applied_by or project.owner_id,
    )
    return ReviewResponse(event=event_response(reviewed), run=run_response(run))
