"""
rest_api.py - HTTP adapter for the projection engine
Exposes the two core entry points (execute a command, apply a change event)
plus a health check.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

from projection_engine.config import SyncConfig, get_config
from projection_engine.controller import SyncController
from projection_engine.errors import ProjectionEngineError, WriteStoreCommitFailure
from projection_engine.security import get_api_key
from projection_engine.types.events import ChangeEvent, Command

logger = logging.getLogger(__name__)


# Pydantic models for API requests/responses
class CommandRequest(BaseModel):
    """Pydantic model for a write-store command"""
    entity_type: str
    entity_id: str
    operation: str = "Upsert"
    payload: Dict[str, Any] = {}
    latency_critical: bool = False


class ChangeEventRequest(BaseModel):
    """Pydantic model for a change event delivered by an external CDC transport"""
    entity_type: str
    entity_id: str
    version: int
    operation: str
    payload: Dict[str, Any] = {}
    committed_at: Optional[str] = None


class APIResponse(BaseModel):
    """Base API response model"""
    status: str
    data: Optional[Any] = None
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ProjectionAPI:
    """REST API over a SyncController"""

    def __init__(self, controller: SyncController, run_background: bool = True):
        self.controller = controller
        self.run_background = run_background
        self.app = FastAPI(title="Projection Engine API", lifespan=self._lifespan)
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        if self.run_background:
            await self.controller.start()
        try:
            yield
        finally:
            if self.run_background:
                await self.controller.stop()

    def _setup_routes(self):
        """Setup all API routes"""

        @self.app.get("/health")
        async def health_check():
            status = await self.controller.get_status()
            return {
                "status": "healthy",
                "service": "projection-engine",
                "version": "1.0",
                "dead_letters": status["dead_letters"],
            }

        @self.app.post("/commands", dependencies=[Depends(get_api_key)])
        async def command_endpoint(request: CommandRequest):
            try:
                command = Command.from_dict(request.model_dump())
                committed = await self.controller.execute(command)
            except WriteStoreCommitFailure as e:
                raise HTTPException(status_code=409, detail=str(e))
            except ValueError as e:
                raise HTTPException(status_code=422, detail=str(e))
            except ProjectionEngineError as e:
                logger.error("Command %s failed: %s", request.entity_id, e)
                raise HTTPException(status_code=503, detail=str(e))

            return APIResponse(status="success", data=committed.to_dict())

        @self.app.post("/events", dependencies=[Depends(get_api_key)])
        async def event_endpoint(request: ChangeEventRequest):
            try:
                event = ChangeEvent.from_dict(request.model_dump())
                result = await self.controller.apply(event)
            except ValueError as e:
                raise HTTPException(status_code=422, detail=str(e))
            except ProjectionEngineError as e:
                logger.error("Event %s@%d failed: %s", request.entity_id, request.version, e)
                raise HTTPException(status_code=503, detail=str(e))

            return APIResponse(
                status="success",
                data=result.to_dict(),
                metadata={"attempts": result.attempts},
            )

    def get_app(self):
        """Get the FastAPI application instance"""
        return self.app


def create_api(config: Optional[SyncConfig] = None, **controller_options) -> ProjectionAPI:
    """Create an API with a controller built from configuration"""
    controller = SyncController(config or get_config(), **controller_options)
    return ProjectionAPI(controller)
