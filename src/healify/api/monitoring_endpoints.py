"""
API endpoints for service health, metrics and active configuration.
"""

from datetime import datetime
from typing import Any, Dict
from fastapi import APIRouter, Depends

from ..core.metrics import MetricsCollector
from ..services.healing_orchestrator import TestRunOrchestrator
from .dependencies import get_metrics, get_orchestrator
from .schemas import MetricsResponse


router = APIRouter(tags=["monitoring"])


@router.get("/health")
async def health() -> Dict[str, Any]:
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


@router.get("/api/v1/metrics", response_model=MetricsResponse)
async def get_metrics_snapshot(metrics: MetricsCollector = Depends(get_metrics)):
    """Counters and histograms recorded since start-up."""
    return MetricsResponse(timestamp=datetime.now(), metrics=metrics.get_snapshot())


@router.get("/api/v1/config")
async def get_active_config(orchestrator: TestRunOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    """Healing thresholds and weights in effect."""
    return orchestrator.config.to_dict()
