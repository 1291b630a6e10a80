"""FastAPI app serving one agent's query service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from nwpd.agent.runtime import Agent
from nwpd.api.routes import router

logger = logging.getLogger(__name__)


def create_app(agent: Agent) -> FastAPI:
    """Build the app; its lifespan starts the agent and shuts it down."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await agent.start()
        try:
            yield
        finally:
            logger.info("Query service stopping")
            await agent.shutdown()

    app = FastAPI(
        title="network-problem-detector agent",
        lifespan=lifespan,
    )
    app.state.agent = agent
    app.include_router(router)
    return app
