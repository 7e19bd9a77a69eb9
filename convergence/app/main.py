"""FastAPI status API over the shared artifact store."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from convergence import __version__
from convergence.app.config import settings
from convergence.app.models.agent import AgentDescriptor, load_descriptors
from convergence.errors import ArtifactError, ConfigurationError
from convergence.orchestrator.integration_aggregator import IntegrationAggregator
from convergence.store.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


def _load_default_descriptors() -> list[AgentDescriptor]:
    if not settings.agents_file.exists():
        logger.warning(f"No agent descriptor file at {settings.agents_file}")
        return []
    try:
        return load_descriptors(settings.agents_file)
    except ConfigurationError as e:
        logger.error(f"Ignoring invalid descriptor file: {e}")
        return []


def create_app(
    store: Optional[ArtifactStore] = None,
    descriptors: Optional[list[AgentDescriptor]] = None
) -> FastAPI:
    """
    Build the status API.

    Args:
        store: Artifact store to serve (default: settings.shared_dir)
        descriptors: Known agents (default: read from settings.agents_file)

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown."""
        logger.info("Starting convergence status API")
        app.state.store = store or ArtifactStore(settings.shared_dir)
        app.state.descriptors = (
            descriptors if descriptors is not None else _load_default_descriptors()
        )
        logger.info(
            f"Serving {app.state.store.root} for "
            f"{len(app.state.descriptors)} agents"
        )

        yield

        logger.info("Shutting down convergence status API")

    app = FastAPI(
        title="Convergence Orchestrator API",
        description="Status of agents converging toward their test pass-rate targets",
        version=__version__,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _aggregator(request: Request) -> IntegrationAggregator:
        return IntegrationAggregator(request.app.state.store, request.app.state.descriptors)

    def _known(request: Request, name: str) -> bool:
        if any(d.name == name for d in request.app.state.descriptors):
            return True
        return request.app.state.store.status_path(name).exists()

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Convergence Orchestrator API",
            "version": __version__,
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/agents")
    async def list_agents(request: Request):
        """Overview of every known agent."""
        store: ArtifactStore = request.app.state.store
        if request.app.state.descriptors:
            return [row.model_dump(mode="json") for row in _aggregator(request).overview()]
        return [record.model_dump(mode="json") for record in store.list_statuses()]

    @app.get("/agents/{name}")
    async def get_agent(name: str, request: Request):
        """Status record and cycle log of one agent."""
        store: ArtifactStore = request.app.state.store
        try:
            status = store.read_status(name)
            cycles = store.read_cycles(name)
        except ArtifactError as e:
            raise HTTPException(status_code=500, detail=str(e))
        if status is None:
            raise HTTPException(status_code=404, detail=f"Agent {name} has no status")
        return {
            "status": status.model_dump(mode="json"),
            "cycles": [c.model_dump(mode="json") for c in cycles],
        }

    @app.get("/agents/{name}/handoff")
    async def get_handoff(name: str, request: Request):
        """Published handoff of one agent."""
        try:
            handoff = request.app.state.store.read_handoff(name)
        except ArtifactError as e:
            raise HTTPException(status_code=500, detail=str(e))
        if handoff is None:
            raise HTTPException(status_code=404, detail=f"No handoff for {name}")
        return handoff.model_dump(mode="json")

    @app.post("/agents/{name}/cancel", status_code=202)
    async def cancel_agent(name: str, request: Request):
        """Ask an agent to stop at its next cycle boundary."""
        if not _known(request, name):
            raise HTTPException(status_code=404, detail=f"Unknown agent {name}")
        request.app.state.store.request_cancel(name)
        return {"agent": name, "cancel_requested": True}

    @app.get("/alerts")
    async def alerts(request: Request):
        """Stale or failed agents."""
        return [a.model_dump() for a in _aggregator(request).live_alerts()]

    @app.get("/integration")
    async def integration(request: Request):
        """Final integration report, once aggregated."""
        try:
            report = request.app.state.store.read_report()
        except ArtifactError as e:
            raise HTTPException(status_code=500, detail=str(e))
        if report is None:
            raise HTTPException(status_code=404, detail="Integration not aggregated yet")
        return report.model_dump(mode="json")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
