# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""FastAPI application entry point for the storyloom service.

This module creates and configures the FastAPI application with:
- Route registration
- CORS middleware (for web client access)
- Lifespan management for the shared HTTP and OpenAI clients
- OpenAPI/Swagger documentation
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from httpx import AsyncClient
from openai import AsyncOpenAI
import logging

from storyloom.api.deps import get_image_cache, get_turn_engine
from storyloom.api.routes import router
from storyloom.config import get_settings
from storyloom.middleware import RequestCorrelationMiddleware
from storyloom.logging import configure_logging
from storyloom.metrics import init_metrics_collector, disable_metrics_collector
from storyloom.resilience import RetryConfig
from storyloom.services.illustration import IllustrationCascadeError, IllustrationPipeline, ImageCache
from storyloom.services.llm_client import NarrationGenerator
from storyloom.services.moderation import ModerationClient
from storyloom.services.turn_engine import TurnEngine
from storyloom.session_store import InMemorySessionStore

# Will be configured in lifespan
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup validates configuration, configures logging and metrics, and
    builds the shared clients, image cache, store and turn engine.
    Shutdown closes the HTTP client.

    Args:
        app: FastAPI application instance
    """
    logger.info("Starting storyloom service...")

    try:
        settings = get_settings()

        configure_logging(
            level=settings.log_level,
            json_format=settings.log_json_format,
            service_name=settings.service_name
        )

        logger.info("Configuration loaded successfully")
        logger.info(f"OpenAI model: {settings.openai_model}")
        logger.info(f"Stub mode: {settings.openai_stub_mode}")
        logger.info(f"Metrics enabled: {settings.enable_metrics}")

        if settings.enable_metrics:
            init_metrics_collector()
            logger.info("Metrics collector initialized")
        else:
            disable_metrics_collector()
            logger.info("Metrics collection disabled")
    except Exception as e:
        logger.error(f"Configuration validation failed: {e}")
        raise

    app.state.http_client = AsyncClient()
    openai_client = None
    if not settings.openai_stub_mode:
        openai_client = AsyncOpenAI(api_key=settings.openai_api_key, http_client=app.state.http_client)
    logger.info("HTTP client initialized")

    app.state.moderation = ModerationClient(
        api_key=settings.openai_api_key,
        timeout=settings.moderation_timeout,
        stub_mode=settings.openai_stub_mode,
        client=openai_client
    )

    app.state.narrator = NarrationGenerator(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        timeout=settings.narration_timeout,
        stub_mode=settings.openai_stub_mode,
        client=openai_client
    )
    logger.info(f"Narration generator initialized (model={settings.openai_model})")

    app.state.image_cache = ImageCache(
        ttl_seconds=settings.image_cache_ttl_seconds,
        max_entries=settings.image_cache_max_entries
    )
    app.state.illustrator = IllustrationPipeline(
        api_key=settings.openai_api_key,
        moderation=app.state.moderation,
        cache=app.state.image_cache,
        timeout=settings.image_timeout,
        retry_config=RetryConfig(
            max_retries=settings.image_max_retries,
            base_delay=settings.image_retry_base_delay,
            retryable_exceptions=(IllustrationCascadeError,)
        ),
        stub_mode=settings.openai_stub_mode,
        client=openai_client
    )
    logger.info(
        f"Illustration pipeline initialized (cache_ttl={settings.image_cache_ttl_seconds}s, "
        f"max_retries={settings.image_max_retries})"
    )

    app.state.store = InMemorySessionStore()
    app.state.turn_engine = TurnEngine(
        store=app.state.store,
        narrator=app.state.narrator,
        illustrator=app.state.illustrator,
        moderation=app.state.moderation,
        max_input_length=settings.max_input_length,
        max_turns_per_session=settings.max_turns_per_session,
        recent_turns_window=settings.recent_turns_window
    )
    logger.info("Turn engine initialized")

    yield

    logger.info("Shutting down storyloom service...")
    if hasattr(app.state, 'http_client'):
        await app.state.http_client.aclose()
        logger.info("HTTP client closed")


app = FastAPI(
    title="Storyloom API",
    description=(
        "Interactive narrative service. Turns player actions into narration, "
        "illustrations and world-state changes."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)


def _cors_origins():
    try:
        return get_settings().cors_allow_origins
    except ValueError:
        return ["*"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestCorrelationMiddleware)

app.include_router(router, tags=["game"])

logger.info("FastAPI application configured")


def get_turn_engine_override() -> TurnEngine:
    """Dependency override that provides the TurnEngine from app state.

    Raises:
        RuntimeError: If the turn engine is not initialized in app state
    """
    if not hasattr(app.state, 'turn_engine'):
        raise RuntimeError(
            "Turn engine not initialized. "
            "Ensure the application lifespan has started."
        )
    return app.state.turn_engine


def get_image_cache_override() -> ImageCache:
    """Dependency override that provides the ImageCache from app state.

    Raises:
        RuntimeError: If the image cache is not initialized in app state
    """
    if not hasattr(app.state, 'image_cache'):
        raise RuntimeError(
            "Image cache not initialized. "
            "Ensure the application lifespan has started."
        )
    return app.state.image_cache


app.dependency_overrides[get_turn_engine] = get_turn_engine_override
app.dependency_overrides[get_image_cache] = get_image_cache_override


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    logging.getLogger().setLevel(settings.log_level)

    uvicorn.run(
        "storyloom.main:app",
        host="0.0.0.0",
        port=8080,
        reload=True,
        log_level=settings.log_level.lower()
    )
