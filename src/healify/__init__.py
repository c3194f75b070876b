"""Self-healing selector engine and test run orchestrator."""

__version__ = "0.1.0"
