"""
Generation Relay - Main Entry Point

HTTP server that relays chat, artifact and media generation to free-tier
model providers, falling back across model pools when a provider is busy.

Usage:
    python -m genrelay.main

Environment Variables:
    GENRELAY_HOST       - Server host (default: 0.0.0.0)
    GENRELAY_PORT       - Server port (default: 8000)
    LOG_LEVEL           - Logging level (default: INFO)
    OPENROUTER_API_KEY  - Chat provider key
    HUGGINGFACE_API_KEY - Inference provider key
    MODEL_MAP           - role=model pairs, comma separated
    DEFAULT_ROLE        - Role used for unknown names (default: planner)
    CHAT_MODELS         - Chat fallback pool, comma separated
    HISTORY_PATH        - JSONL history file (default: in-memory)
"""

import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router as api_router
from .config import config
from .service import GenerationService

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""

    # Startup
    logger.info("=" * 60)
    logger.info("Generation Relay Starting")
    logger.info("=" * 60)

    if getattr(app.state, "service", None) is None:
        app.state.service = GenerationService(config)
    service = app.state.service

    if not config.openrouter_api_key:
        logger.warning("No OPENROUTER_API_KEY configured - chat requests will fail")
    if not config.huggingface_api_key:
        logger.warning("No HUGGINGFACE_API_KEY configured - media requests will fail")

    for name, pool in service.pools.items():
        logger.info(f"Pool '{name}': {len(pool)} models")
    logger.info(f"Roles: {', '.join(config.model_map) or 'none'} (default: {config.default_role})")

    logger.info("-" * 60)
    logger.info(f"Server ready at http://{config.host}:{config.port}")
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info("Shutting down...")
    await service.close()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Generation Relay",
    description=(
        "Relays chat, artifact and media generation to free-tier providers. "
        "Busy or warming-up models are retried across a pool, and chat "
        "replies can be streamed as Server-Sent Events."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(api_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    service = getattr(app.state, "service", None)
    pools = {name: len(pool) for name, pool in service.pools.items()} if service else {}
    return {
        "status": "healthy",
        "pools": pools,
        "default_role": config.default_role,
    }


def main():
    """Run the relay server."""
    uvicorn.run(
        "genrelay.main:app",
        host=config.host,
        port=config.port,
        reload=False,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
