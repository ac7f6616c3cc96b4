"""FastAPI application entry point."""

from fastapi import FastAPI

from .config import AppConfig, load_config
from .dependencies import PipelineServices, build_services, include_routers
from .lifecycle import pipeline_lifespan
from .logging import configure_logging


def create_app(config: AppConfig | None = None, services: PipelineServices | None = None) -> FastAPI:
    """Build FastAPI instance with configured dependencies."""
    cfg = config or load_config()
    configure_logging(cfg.settings.log_level, json_output=cfg.settings.log_json)
    services = services or build_services(cfg)
    app = FastAPI(title="Booksphere Cataloging", lifespan=pipeline_lifespan(services))
    include_routers(app, cfg, services)
    return app


app = create_app()
