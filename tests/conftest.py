"""
Pytest configuration and shared fixtures for the test suite.
"""

import pytest
import pytest_asyncio
import sys
from pathlib import Path

# Add the package source to Python path for testing
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from healify.core.metrics import MetricsCollector
from healify.core.models import HealingConfiguration
from healify.data_access import InMemoryHealingRepository, InMemorySnapshotStore
from healify.services.healing_engine import HealingEngine
from healify.services.healing_orchestrator import TestRunOrchestrator


LOGIN_PAGE = """
<html>
    <head><title>Shop</title></head>
    <body>
        <header class="site-header">
            <nav class="navigation">
                <a href="/home">Home</a>
                <a href="/cart" class="cart-link">Cart</a>
            </nav>
        </header>
        <main class="content">
            <form id="login-form" class="form">
                <input id="username" name="username" type="text" class="form-control">
                <input id="password" name="password" type="password" class="form-control">
                <button id="btn-login-new" data-testid="login-btn" type="submit" class="btn btn-primary">Login</button>
                <button type="button" class="btn btn-secondary">Cancel</button>
            </form>
        </main>
    </body>
</html>
"""


@pytest.fixture
def login_page():
    """DOM snapshot of a login page after a UI refactor."""
    return LOGIN_PAGE


@pytest.fixture
def healing_config():
    """Default healing configuration."""
    return HealingConfiguration()


@pytest.fixture
def repository():
    return InMemoryHealingRepository()


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest_asyncio.fixture
async def orchestrator(repository, healing_config, metrics):
    """Orchestrator over in-memory storage."""
    return TestRunOrchestrator(
        repository=repository,
        engine=HealingEngine(healing_config),
        snapshot_store=InMemorySnapshotStore(),
        metrics=metrics,
        config=healing_config,
    )


@pytest_asyncio.fixture
async def project(orchestrator):
    return await orchestrator.register_project("Storefront", api_key="test-api-key-0001")


@pytest.fixture(autouse=True)
def setup_test_logging():
    """Set up logging for tests."""
    import logging
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
