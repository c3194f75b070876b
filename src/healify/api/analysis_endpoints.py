"""
Read-only analysis endpoints: fragility, selector robustness and change impact.
"""

from typing import List
from fastapi import APIRouter, Depends

from ..core.models import Project
from ..services.healing_orchestrator import TestRunOrchestrator
from .auth import ensure_project_access, get_current_project
from .dependencies import get_orchestrator
from .schemas import (
    AnalyzedSelectorResponse, FragilityItem, FragilityResponse,
    ImpactRequest, ImpactResponse, SelectorAnalyzeRequest,
)

router = APIRouter(tags=["analysis"])


@router.get("/projects/{project_id}/fragility", response_model=FragilityResponse)
async def get_fragility(
    project_id: str,
    project: Project = Depends(get_current_project),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    """Tests ranked by how often their selectors needed healing."""
    ensure_project_access(project, project_id)
    reports = await orchestrator.fragility(project_id)
    return FragilityResponse(
        project_id=project_id,
        window=orchestrator.fragility_analyzer.window,
        tests=[FragilityItem.model_validate(r.to_dict()) for r in reports],
    )


@router.get("/projects/{project_id}/selectors", response_model=List[AnalyzedSelectorResponse])
async def get_project_selectors(
    project_id: str,
    project: Project = Depends(get_current_project),
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    """Robustness of the selectors seen in the project's healing events, weakest first."""
    ensure_project_access(project, project_id)
    results = await orchestrator.analyze_project_selectors(project_id)
    return [AnalyzedSelectorResponse.model_validate(r.to_dict()) for r in results]


@router.post("/selectors/analyze", response_model=List[AnalyzedSelectorResponse])
async def analyze_selectors(
    request: SelectorAnalyzeRequest,
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    results = [orchestrator.selector_analyzer.analyze(s) for s in request.selectors]
    return [AnalyzedSelectorResponse.model_validate(r.to_dict()) for r in results]


@router.post("/impact", response_model=ImpactResponse)
async def analyze_impact(
    request: ImpactRequest,
    orchestrator: TestRunOrchestrator = Depends(get_orchestrator),
):
    """Risk that a set of changed files breaks UI selectors."""
    analyzer = orchestrator.impact_analyzer
    impact = analyzer.analyze(request.changed_files)
    return ImpactResponse(
        **impact.to_dict(),
        predicted_healing_need=analyzer.predict_healing_need(impact),
    )
