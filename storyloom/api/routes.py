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
"""API route handlers for the storyloom service.

Game endpoints (all under /api, caller identified by X-User-Id):
- POST /new-game, /new-custom-game, /new-prompt-game: Start a session
- POST /turn: Process a player turn
- GET /game/{session_id}: Full session view
- POST /save-game, GET /saved-games: Named save slots
- POST /validate-adventure: Check a custom adventure without starting it
- POST /adventures/{adventure_id}/template, GET /templates,
  POST /templates/{template_id}/new-game: Adventure templates

Service endpoints:
- GET /health: Service health check
- GET /metrics: Service metrics (requires ENABLE_METRICS=true)

Engine and provider errors are mapped to structured error responses by
raise_for_error; malformed provider output never reaches this layer.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from storyloom.api.deps import create_error_response, get_image_cache, get_turn_engine, get_user_id
from storyloom.config import Settings, get_settings
from storyloom.logging import StructuredLogger, redact_secrets, sanitize_for_log
from storyloom.metrics import get_metrics_collector
from storyloom.models import (
    AdventureValidationRequest,
    AdventureValidationResult,
    CustomAdventureRequest,
    GameStateResponse,
    HealthResponse,
    NewGameRequest,
    PrologueResponse,
    PromptAdventureRequest,
    SaveGameRequest,
    SaveGameResponse,
    SavedGameSummary,
    SavedGamesResponse,
    TemplateGameRequest,
    TemplateSaveRequest,
    TemplateSaveResponse,
    TemplateSummary,
    TemplatesResponse,
    TurnMetadata,
    TurnRequest,
    TurnResponse,
)
from storyloom.services.adventure_validator import validate_adventure_details
from storyloom.services.illustration import ImageCache
from storyloom.services.llm_client import (
    LLMConfigurationError,
    LLMInvalidRequestError,
    LLMRateLimitError,
)
from storyloom.services.turn_engine import (
    AdventureNotFoundError,
    ContentFlaggedError,
    DuplicateSaveError,
    InvalidAdventureError,
    InvalidPlayerInputError,
    InvalidSaveNameError,
    SessionNotFoundError,
    SessionStart,
    TurnEngine,
    TurnEngineError,
    TurnLimitReachedError,
)
from storyloom.session_store import SessionStoreError

logger = StructuredLogger(__name__)

router = APIRouter()
api_router = APIRouter(prefix="/api")

ENGINE_ERROR_STATUS = {
    InvalidPlayerInputError: status.HTTP_400_BAD_REQUEST,
    InvalidSaveNameError: status.HTTP_400_BAD_REQUEST,
    ContentFlaggedError: status.HTTP_400_BAD_REQUEST,
    TurnLimitReachedError: status.HTTP_400_BAD_REQUEST,
    InvalidAdventureError: status.HTTP_400_BAD_REQUEST,
    DuplicateSaveError: status.HTTP_409_CONFLICT,
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    AdventureNotFoundError: status.HTTP_404_NOT_FOUND,
}


def raise_for_error(e: Exception, operation: str) -> None:
    """Translate an engine, provider or storage error into an HTTPException.

    Args:
        e: The caught exception
        operation: Short operation name for logs

    Raises:
        HTTPException: Always
    """
    if isinstance(e, HTTPException):
        raise e

    if isinstance(e, TurnEngineError):
        status_code = ENGINE_ERROR_STATUS.get(type(e), status.HTTP_400_BAD_REQUEST)
        extra = None
        if isinstance(e, InvalidAdventureError):
            extra = {"validation": e.validation.model_dump(mode="json")}
        logger.info("Request rejected", operation=operation, error_type=e.error_type, error=str(e))
        _record_error(e.error_type)
        raise create_error_response(e.error_type, str(e), status_code, extra) from e

    if isinstance(e, LLMRateLimitError):
        logger.warning("Provider rate limit", operation=operation, error=redact_secrets(str(e)))
        _record_error("rate_limited")
        raise create_error_response(
            error_type="rate_limited",
            message="The story service is busy. Please try again shortly.",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS
        ) from e

    if isinstance(e, LLMInvalidRequestError):
        logger.warning("Provider rejected request", operation=operation, error=redact_secrets(str(e)))
        _record_error("invalid_request")
        raise create_error_response(
            error_type="invalid_request",
            message="The request could not be processed by the story service",
            status_code=status.HTTP_400_BAD_REQUEST
        ) from e

    if isinstance(e, LLMConfigurationError):
        logger.error("Provider configuration error", operation=operation, error=redact_secrets(str(e)))
        _record_error("configuration_error")
        raise create_error_response(
            error_type="configuration_error",
            message="The story service is misconfigured",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
        ) from e

    if isinstance(e, SessionStoreError):
        logger.error("Storage error", operation=operation, error=str(e))
        _record_error("storage_unavailable")
        raise create_error_response(
            error_type="storage_unavailable",
            message="Game storage is temporarily unavailable. Please try again.",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE
        ) from e

    logger.error(
        "Unexpected error",
        operation=operation,
        error=redact_secrets(str(e)),
        error_type=type(e).__name__,
        exc_info=True
    )
    _record_error("internal_error")
    raise create_error_response(
        error_type="internal_error",
        message="An unexpected error occurred",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
    ) from e


def _record_error(error_type: str) -> None:
    if (collector := get_metrics_collector()):
        collector.record_error(error_type)


def _prologue_response(start: SessionStart) -> PrologueResponse:
    prologue = start.prologue
    return PrologueResponse(
        session_id=start.session.session_id,
        adventure_id=start.adventure_id,
        narration=prologue.narration,
        image_url=prologue.image_url,
        image_error=prologue.image_error,
        quick_actions=prologue.quick_actions,
        world_state=start.session.world_state,
    )


@api_router.post(
    "/new-game",
    response_model=PrologueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a preset-genre game",
    responses={
        400: {"description": "Provider rejected the request"},
        429: {"description": "Provider rate limit"},
    }
)
async def new_game(
    request: NewGameRequest,
    user_id: str = Depends(get_user_id),
    engine: TurnEngine = Depends(get_turn_engine)
) -> PrologueResponse:
    """Create a session for one of the preset genres and narrate its prologue."""
    try:
        start = await engine.create_session(user_id, request)
    except Exception as e:
        raise_for_error(e, "new_game")
    return _prologue_response(start)


@api_router.post(
    "/new-custom-game",
    response_model=PrologueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a game from a player-authored adventure",
    responses={
        400: {"description": "Adventure failed validation; error.validation holds the report"},
    }
)
async def new_custom_game(
    request: CustomAdventureRequest,
    user_id: str = Depends(get_user_id),
    engine: TurnEngine = Depends(get_turn_engine)
) -> PrologueResponse:
    """Validate a custom adventure, store it and narrate its prologue."""
    try:
        start = await engine.create_custom_session(user_id, request)
    except Exception as e:
        raise_for_error(e, "new_custom_game")
    return _prologue_response(start)


@api_router.post(
    "/new-prompt-game",
    response_model=PrologueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a game from a free-text adventure prompt",
)
async def new_prompt_game(
    request: PromptAdventureRequest,
    user_id: str = Depends(get_user_id),
    engine: TurnEngine = Depends(get_turn_engine)
) -> PrologueResponse:
    """Generate an adventure from the prompt and start a session from it."""
    logger.info("Generating adventure from prompt", prompt_preview=sanitize_for_log(request.prompt, 80))
    try:
        start = await engine.create_session_from_prompt(user_id, request)
    except Exception as e:
        raise_for_error(e, "new_prompt_game")
    return _prologue_response(start)


@api_router.post(
    "/turn",
    response_model=TurnResponse,
    status_code=status.HTTP_200_OK,
    summary="Process a player turn",
    responses={
        400: {"description": "Invalid or flagged input, or turn limit reached"},
        404: {"description": "Session not found"},
        429: {"description": "Provider rate limit"},
        503: {"description": "Storage unavailable"},
    }
)
async def process_turn(
    request: TurnRequest,
    user_id: str = Depends(get_user_id),
    engine: TurnEngine = Depends(get_turn_engine)
) -> TurnResponse:
    """Process one player action and return narration, image and state changes."""
    logger.info(
        "Processing turn request",
        action_preview=sanitize_for_log(request.player_input, 50)
    )

    try:
        outcome = await engine.process_turn(request.session_id, user_id, request.player_input)
    except Exception as e:
        raise_for_error(e, "turn")

    turn = outcome.turn
    return TurnResponse(
        turn_id=turn.turn_id,
        narration=turn.narration,
        image_url=turn.image_url,
        image_error=turn.image_error,
        quick_actions=turn.quick_actions,
        world_state_changes=outcome.world_state_changes,
        metadata=TurnMetadata(
            turn_number=turn.turn_number,
            timestamp=turn.timestamp.isoformat(),
            processing_time_ms=outcome.processing_time_ms,
        ),
    )


@api_router.get(
    "/game/{session_id}",
    response_model=GameStateResponse,
    summary="Load a game session",
    responses={404: {"description": "Session not found"}}
)
async def get_game(
    session_id: str,
    user_id: str = Depends(get_user_id),
    engine: TurnEngine = Depends(get_turn_engine)
) -> GameStateResponse:
    try:
        session = await engine.load_game(session_id, user_id)
    except Exception as e:
        raise_for_error(e, "load_game")

    return GameStateResponse(
        session_id=session.session_id,
        adventure_type=session.adventure_type,
        world_state=session.world_state,
        turn_history=session.turn_history,
        metadata=session.metadata,
    )


@api_router.post(
    "/save-game",
    response_model=SaveGameResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Save a game under a name",
    responses={
        400: {"description": "Invalid save name"},
        404: {"description": "Session not found"},
        409: {"description": "A save with this name already exists"},
    }
)
async def save_game(
    request: SaveGameRequest,
    user_id: str = Depends(get_user_id),
    engine: TurnEngine = Depends(get_turn_engine)
) -> SaveGameResponse:
    try:
        saved = await engine.save_game(user_id, request.session_id, request.save_name)
    except Exception as e:
        raise_for_error(e, "save_game")
    return SaveGameResponse(save_id=saved.save_id, message="Game saved successfully")


@api_router.get(
    "/saved-games",
    response_model=SavedGamesResponse,
    summary="List the caller's saved games, newest first",
)
async def list_saved_games(
    user_id: str = Depends(get_user_id),
    engine: TurnEngine = Depends(get_turn_engine)
) -> SavedGamesResponse:
    try:
        saves = await engine.list_saved_games(user_id)
    except Exception as e:
        raise_for_error(e, "list_saved_games")

    return SavedGamesResponse(saves=[
        SavedGameSummary(
            save_id=save.save_id,
            save_name=save.save_name,
            session_id=save.session_id,
            created_at=save.created_at,
            turn_count=save.turn_count,
            preview_image=save.preview_image,
        )
        for save in saves
    ])


@api_router.post(
    "/validate-adventure",
    response_model=AdventureValidationResult,
    summary="Validate a custom adventure without starting a game",
)
async def validate_adventure(
    request: AdventureValidationRequest,
    user_id: str = Depends(get_user_id)
) -> AdventureValidationResult:
    """Return the full validation report; an invalid adventure is still a 200."""
    return validate_adventure_details(request.adventure_details)


@api_router.post(
    "/adventures/{adventure_id}/template",
    response_model=TemplateSaveResponse,
    summary="Save one of the caller's adventures as a template",
    responses={404: {"description": "Adventure not found"}}
)
async def save_adventure_template(
    adventure_id: str,
    request: TemplateSaveRequest,
    user_id: str = Depends(get_user_id),
    engine: TurnEngine = Depends(get_turn_engine)
) -> TemplateSaveResponse:
    try:
        template = await engine.save_adventure_as_template(
            user_id, adventure_id, is_public=request.is_public, tags=request.tags
        )
    except Exception as e:
        raise_for_error(e, "save_template")
    return TemplateSaveResponse(template_id=template.template_id, message="Adventure saved as template")


@api_router.get(
    "/templates",
    response_model=TemplatesResponse,
    summary="List public adventure templates, most used first",
)
async def list_templates(
    limit: int = Query(20, ge=1, le=50),
    engine: TurnEngine = Depends(get_turn_engine)
) -> TemplatesResponse:
    try:
        templates = await engine.list_templates(limit)
    except Exception as e:
        raise_for_error(e, "list_templates")

    return TemplatesResponse(templates=[
        TemplateSummary(
            template_id=template.template_id,
            title=template.title,
            description=template.description,
            usage_count=template.usage_count,
            created_at=template.created_at,
            tags=template.tags,
        )
        for template in templates
    ])


@api_router.post(
    "/templates/{template_id}/new-game",
    response_model=PrologueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a game from a template",
    responses={404: {"description": "Template not found"}}
)
async def new_game_from_template(
    template_id: str,
    request: TemplateGameRequest,
    user_id: str = Depends(get_user_id),
    engine: TurnEngine = Depends(get_turn_engine)
) -> PrologueResponse:
    try:
        start = await engine.create_session_from_template(user_id, template_id, request)
    except Exception as e:
        raise_for_error(e, "new_game_from_template")
    return _prologue_response(start)


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check endpoint",
)
async def health_check(
    image_cache: ImageCache = Depends(get_image_cache),
    settings: Settings = Depends(get_settings)
) -> HealthResponse:
    """Report service health, stub mode and image cache size.

    The service reports degraded when running in stub mode, since no
    provider calls are made.
    """
    logger.debug("Health check requested")

    return HealthResponse(
        status="degraded" if settings.openai_stub_mode else "healthy",
        service=settings.service_name,
        stub_mode=settings.openai_stub_mode,
        image_cache_entries=len(image_cache),
    )


@router.get(
    "/metrics",
    status_code=status.HTTP_200_OK,
    summary="Metrics endpoint",
    description=(
        "Get service metrics including request counts, error rates, latencies, "
        "parse kinds and image outcomes. Returns 404 if metrics are disabled."
    ),
    responses={404: {"description": "Metrics disabled"}}
)
async def get_metrics(settings: Settings = Depends(get_settings)):
    """Get service metrics.

    Raises:
        HTTPException: If metrics are disabled
    """
    if not settings.enable_metrics:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics endpoint is disabled. Set ENABLE_METRICS=true to enable."
        )

    collector = get_metrics_collector()
    if not collector:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics collector not initialized"
        )

    return collector.get_metrics()


router.include_router(api_router)
