import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response

from api.health import router as health_router
from deploy.config import Settings, settings as default_settings
from deploy.gateway import DockerGateway
from deploy.history import DeploymentHistory
from deploy.logging_config import setup_logging
from deploy.metrics import metrics_payload
from deploy.processes import ProcessManager
from deploy.registry import ContainerRecord, ContainerRegistry

logger = logging.getLogger(__name__)


def create_app(gateway=None, settings: Settings = default_settings) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        logger.info(f"Status API ready (base dir {settings.BASE_DIR})")
        yield
        logger.info("Status API shutting down")

    app = FastAPI(title="berth status API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.gateway = gateway or DockerGateway(
        settings.DOCKER_BIN, settings.PLATFORM_NAME, settings.COMMAND_TIMEOUT
    )
    app.state.registry = ContainerRegistry(settings.apps_dir)
    app.state.history = DeploymentHistory(settings.apps_dir, limit=settings.HISTORY_LIMIT)
    app.include_router(health_router)

    @app.get("/apps/{app_name}/containers", response_model=list[ContainerRecord])
    def list_containers(app_name: str, request: Request):
        return request.app.state.registry.list_all(app_name)

    @app.get("/apps/{app_name}/ps")
    def process_status(app_name: str, request: Request):
        manager = ProcessManager(request.app.state.gateway, request.app.state.registry, settings)
        return manager.status(app_name)

    @app.get("/apps/{app_name}/history")
    def deployment_history(app_name: str, request: Request):
        return request.app.state.history.read(app_name)

    @app.get("/metrics")
    async def metrics():
        body, content_type = metrics_payload()
        return Response(content=body, media_type=content_type)

    return app


app = create_app()
