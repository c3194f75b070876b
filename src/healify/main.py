import logging
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.analysis_endpoints import router as analysis_router
from .api.errors import register_error_handlers
from .api.healing_endpoints import router as healing_router
from .api.monitoring_endpoints import router as monitoring_router
from .core.config import Settings, settings as default_settings
from .core.config_loader import HealingConfigLoader
from .core.logging_config import setup_healing_logging
from .core.metrics import MetricsCollector
from .core.models import HealingConfiguration
from .data_access import HealingRepository, SnapshotStore, create_repository, create_snapshot_store
from .services.healing_engine import HealingEngine
from .services.healing_orchestrator import TestRunOrchestrator


def create_app(repository: Optional[HealingRepository] = None,
               snapshot_store: Optional[SnapshotStore] = None,
               config: Optional[HealingConfiguration] = None,
               settings: Optional[Settings] = None,
               metrics: Optional[MetricsCollector] = None,
               configure_logging: bool = True) -> FastAPI:
    """Build the FastAPI application and its orchestrator."""
    settings = settings or default_settings
    config = config or HealingConfigLoader(settings.HEALING_CONFIG_PATH).load_config()

    orchestrator = TestRunOrchestrator(
        repository=repository or create_repository(settings.DATABASE_URL),
        engine=HealingEngine(config, settings.MAX_SNAPSHOT_BYTES),
        snapshot_store=snapshot_store or create_snapshot_store(settings.SNAPSHOT_DIR),
        metrics=metrics,
        config=config,
        settings=settings,
    )

    app = FastAPI(title="Healify - Self-Healing Selector Service")
    app.state.orchestrator = orchestrator
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(healing_router, prefix=settings.API_PREFIX)
    app.include_router(analysis_router, prefix=settings.API_PREFIX)
    app.include_router(monitoring_router)

    @app.on_event("startup")
    async def startup_event():
        if configure_logging:
            setup_healing_logging(settings.LOG_LEVEL, settings.LOG_DIR, settings.STRUCTURED_LOGGING)
        logging.info(f"Healing service started (storage: {settings.DATABASE_URL}, "
                     f"auto-heal at {config.auto_heal_threshold})")

    @app.on_event("shutdown")
    async def shutdown_event():
        logging.info("Application shutdown complete.")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=default_settings.APP_PORT)
