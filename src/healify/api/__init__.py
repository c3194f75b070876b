"""
API module for the selector healing service.

This module contains:
- healing_endpoints.py: Ingestion, runs, results and human review
- analysis_endpoints.py: Fragility, selector robustness and change impact
- monitoring_endpoints.py: Health, metrics and active configuration
- auth.py: API key authentication
- errors.py: Healing error to HTTP status mapping
"""

__all__ = ["healing_endpoints", "analysis_endpoints", "monitoring_endpoints", "auth", "errors"]
