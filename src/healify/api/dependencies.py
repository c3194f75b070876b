"""Shared FastAPI dependencies."""

from fastapi import Request

from ..core.config import Settings
from ..core.metrics import MetricsCollector
from ..services.healing_orchestrator import TestRunOrchestrator


def get_orchestrator(request: Request) -> TestRunOrchestrator:
    """The orchestrator bound to the running application."""
    return request.app.state.orchestrator


def get_metrics(request: Request) -> MetricsCollector:
    return request.app.state.orchestrator.metrics


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
