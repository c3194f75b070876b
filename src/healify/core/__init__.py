"""
Core module for the selector healing service.

This module contains:
- config.py: Application settings
- config_loader.py: Healing thresholds and weights
- logging_config.py: Logging configuration
- metrics.py: Metrics collection
- exceptions.py: Error taxonomy
"""

__all__ = ["config", "config_loader", "exceptions", "logging_config", "metrics"]
