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
"""Turn engine: session lifecycle and the per-turn state machine.

Each turn runs this fixed sequence:
1. Validate and sanitise the player's input
2. Load the session and enforce the turn ceiling
3. Moderate the input when the session's safety filter is on
4. Generate narration (never malformed; see NarrationGenerator)
5. Apply state deltas and diff against the previous snapshot
6. Obtain the illustration (never fatal)
7. Assemble the immutable Turn and hand it to storage

The turn is handed to storage only once it is fully assembled, so a
cancelled turn leaves the session untouched. Turns share no mutable state:
each reads the prior snapshot and produces a new one.
"""

import re
import time
import uuid
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional

from storyloom.logging import PhaseTimer, StructuredLogger, sanitize_for_log, set_session_id, set_turn_id
from storyloom.models import (
    AdaptiveElements,
    AdventureDetails,
    AdventureTemplate,
    AdventureValidationResult,
    BEGIN_ADVENTURE,
    CustomAdventure,
    CustomAdventureRequest,
    CustomAdventureState,
    GameContext,
    GameSession,
    GameSettings,
    InventoryChanges,
    NewGameRequest,
    ProcessingMetadata,
    PromptAdventureRequest,
    SavedGame,
    SessionMetadata,
    StateChanges,
    TemplateGameRequest,
    Turn,
    WorldState,
    WorldStateChanges,
    utc_now,
)
from storyloom.services.adventure_validator import (
    clone_as_template,
    sanitize_adventure,
    validate_adventure_details,
)
from storyloom.services.illustration import IllustrationPipeline
from storyloom.services.llm_client import FALLBACK_ADVENTURE, NarrationGenerator, NarrationResult
from storyloom.services.moderation import ModerationClient
from storyloom.services.schema_validator import validate_adventure
from storyloom.session_store import DuplicateKeyError, SessionStore

logger = StructuredLogger(__name__)

MAX_INPUT_LENGTH = 500
MAX_SAVE_NAME_LENGTH = 50
MAX_STARTING_ITEMS = 5
SAVED_GAMES_LIMIT = 50

STARTING_LOCATIONS = {
    "fantasy": "A misty crossroads where ancient stone paths meet beneath towering oak trees",
    "sci-fi": "A sterile white corridor aboard a massive space station",
    "horror": "A dimly lit Victorian mansion foyer with creaking floorboards",
    "modern": "A bustling city street corner during the evening rush hour",
    "custom": "The beginning of your custom adventure",
}

ROLE_KITS = (
    (("warrior", "fighter", "soldier"), ["sword", "leather armor"]),
    (("mage", "wizard", "sorcerer"), ["spellbook", "staff", "magic pouch"]),
    (("rogue", "thief", "assassin"), ["lockpicks", "daggers", "hood"]),
    (("ranger", "hunter", "scout"), ["bow", "arrows", "rope"]),
    (("cleric", "priest", "healer"), ["holy symbol", "healing herbs", "prayer beads"]),
    (("merchant", "trader"), ["coin purse", "trade goods", "ledger"]),
)

ENVIRONMENT_ITEMS = (
    (("cold", "winter", "snow"), "warm cloak"),
    (("desert", "hot"), "water flask"),
    (("underwater", "ship"), "waterproof pack"),
)

PROHIBITED_INPUT_PATTERNS = (
    re.compile(r'\b(hack|exploit|cheat)\b', re.IGNORECASE),
    re.compile(r'<script', re.IGNORECASE),
    re.compile(r'javascript:', re.IGNORECASE),
)

SAVE_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9\s\-_]+$')


class TurnEngineError(Exception):
    """Base exception for turn engine errors."""
    error_type = "turn_engine_error"


class InvalidPlayerInputError(TurnEngineError):
    """Raised when player input is empty, too long or prohibited."""
    error_type = "invalid_input"


class InvalidSaveNameError(TurnEngineError):
    """Raised when a save name breaks the naming rules."""
    error_type = "invalid_save_name"


class SessionNotFoundError(TurnEngineError):
    """Raised when a session does not exist for the calling user."""
    error_type = "session_not_found"


class TurnLimitReachedError(TurnEngineError):
    """Raised when a session has reached its turn ceiling."""
    error_type = "turn_limit_reached"


class ContentFlaggedError(TurnEngineError):
    """Raised when moderation flags the player's input."""
    error_type = "content_flagged"


class InvalidAdventureError(TurnEngineError):
    """Raised when a custom adventure fails validation.

    Attributes:
        validation: The full validation report
    """
    error_type = "invalid_adventure"

    def __init__(self, message: str, validation: AdventureValidationResult):
        super().__init__(message)
        self.validation = validation


class DuplicateSaveError(TurnEngineError):
    """Raised when a save with the same name already exists."""
    error_type = "duplicate_save"


class AdventureNotFoundError(TurnEngineError):
    """Raised when an adventure or template does not exist."""
    error_type = "adventure_not_found"


@dataclass
class TurnOutcome:
    """Result of process_turn."""
    turn: Turn
    world_state_changes: WorldStateChanges
    processing_time_ms: int


@dataclass
class SessionStart:
    """Result of creating a session: the stored session and its prologue."""
    session: GameSession
    prologue: Turn
    adventure_id: Optional[str] = None


def generate_session_id() -> str:
    return f"session_{uuid.uuid4().hex}"


def generate_turn_id() -> str:
    return f"turn_{uuid.uuid4().hex}"


def generate_adventure_id() -> str:
    return f"adv_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def validate_player_input(text: str, max_length: int = MAX_INPUT_LENGTH) -> None:
    """Reject empty, overlong or prohibited player input.

    Raises:
        InvalidPlayerInputError: With a player-facing message
    """
    if not text or not text.strip():
        raise InvalidPlayerInputError("Input cannot be empty")
    if len(text) > max_length:
        raise InvalidPlayerInputError(f"Input too long (max {max_length} characters)")
    for pattern in PROHIBITED_INPUT_PATTERNS:
        if pattern.search(text):
            raise InvalidPlayerInputError("Input contains prohibited content")


def sanitize_input(text: str, max_length: int = MAX_INPUT_LENGTH) -> str:
    """Trim, strip markup and script schemes, collapse whitespace and cap length."""
    cleaned = text.strip().replace("<", "").replace(">", "")
    cleaned = re.sub(r'javascript:', '', cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r'\s+', ' ', cleaned)
    return cleaned[:max_length]


def validate_save_name(name: str) -> None:
    """Raises InvalidSaveNameError unless name is 1-50 safe characters."""
    if not name or not name.strip():
        raise InvalidSaveNameError("Save name cannot be empty")
    if len(name) > MAX_SAVE_NAME_LENGTH:
        raise InvalidSaveNameError(f"Save name too long (max {MAX_SAVE_NAME_LENGTH} characters)")
    if not SAVE_NAME_PATTERN.match(name):
        raise InvalidSaveNameError(
            "Save name can only contain letters, numbers, spaces, hyphens, and underscores"
        )


def starting_location(genre: str) -> str:
    return STARTING_LOCATIONS.get(genre, STARTING_LOCATIONS["fantasy"])


def custom_starting_location(details: AdventureDetails) -> str:
    """Pick an opening location from the adventure's own locations or its setting."""
    setting = details.setting
    declared = [location for location in (setting.locations or []) if location.strip()]
    if declared:
        return declared[0]

    environment = setting.environment.lower()
    world = setting.world_description.lower()

    if "city" in environment or "urban" in world:
        return f"A bustling area in the heart of {setting.environment}"
    if "forest" in environment or "woods" in world:
        return f"A forest clearing in {setting.environment}"
    if "dungeon" in environment or "underground" in world:
        return f"The entrance to {setting.environment}"
    if "tavern" in environment or "inn" in environment:
        return f"Inside {setting.environment}"
    return f"At the beginning of your journey in {setting.environment}"


def custom_starting_inventory(details: AdventureDetails) -> List[str]:
    """Equip the player from role and environment keywords, at most five items."""
    role = details.characters.player_role.lower()
    environment = details.setting.environment.lower()
    inventory: List[str] = []

    for keywords, kit in ROLE_KITS:
        if any(keyword in role for keyword in keywords):
            inventory.extend(kit)
            break

    for keywords, item in ENVIRONMENT_ITEMS:
        if any(keyword in environment for keyword in keywords):
            inventory.append(item)
            break

    return inventory[:MAX_STARTING_ITEMS]


def apply_state_changes(state: WorldState, changes: StateChanges) -> WorldState:
    """Return a new WorldState with the deltas applied.

    Location is overwritten, inventory additions are appended and flags are
    merged shallowly. The input state is not modified.
    """
    updated = state.model_copy(deep=True)
    if changes.location:
        updated.location = changes.location
    if changes.inventory:
        updated.inventory = [*updated.inventory, *changes.inventory]
    if changes.flags:
        updated.flags = {**updated.flags, **changes.flags}
    return updated


def track_adventure_progress(adaptive: AdaptiveElements, changes: StateChanges) -> AdaptiveElements:
    """Record newly discovered locations and completed objectives."""
    updated = adaptive.model_copy(deep=True)
    if changes.location and changes.location not in updated.discovered_locations:
        updated.discovered_locations.append(changes.location)
    for key, value in changes.flags.items():
        if "objective" in key and value == "complete" and key not in updated.completed_objectives:
            updated.completed_objectives.append(key)
    return updated


def _multiset_difference(items: List[str], other: List[str]) -> List[str]:
    """Items not matched one-for-one in other, in their original order."""
    remaining = Counter(other)
    difference = []
    for item in items:
        if remaining[item] > 0:
            remaining[item] -= 1
        else:
            difference.append(item)
    return difference


def compute_world_state_changes(
    previous: Optional[WorldState],
    current: WorldState
) -> WorldStateChanges:
    """Diff two world-state snapshots.

    Inventory is compared as a multiset, so a duplicate pickup shows up as
    an addition. With no previous snapshot everything counts as new.
    """
    if previous is None:
        return WorldStateChanges(
            location=current.location,
            inventory_changes=InventoryChanges(added=list(current.inventory)),
            flags_updated=dict(current.flags),
        )

    return WorldStateChanges(
        location=current.location if current.location != previous.location else None,
        inventory_changes=InventoryChanges(
            added=_multiset_difference(current.inventory, previous.inventory),
            removed=_multiset_difference(previous.inventory, current.inventory),
        ),
        flags_updated={
            key: value
            for key, value in current.flags.items()
            if key not in previous.flags or previous.flags[key] != value
        },
    )


def _settings_from(request) -> GameSettings:
    return GameSettings(
        safety_filter=request.safety_filter,
        style_preference=request.style_preference,
        content_rating=request.content_rating,
    )


class TurnEngine:
    """Drives sessions from creation through each player turn.

    Collaborators are injected so that tests can replace the provider-backed
    services and storage.
    """

    def __init__(
        self,
        store: SessionStore,
        narrator: NarrationGenerator,
        illustrator: IllustrationPipeline,
        moderation: ModerationClient,
        max_input_length: int = MAX_INPUT_LENGTH,
        max_turns_per_session: int = 1000,
        recent_turns_window: int = 5
    ):
        """Initialize the turn engine.

        Args:
            store: Storage collaborator
            narrator: Narration generator
            illustrator: Illustration pipeline
            moderation: Moderation client used when a session's safety filter is on
            max_input_length: Maximum player input length in characters
            max_turns_per_session: Turn ceiling per session
            recent_turns_window: Number of recent turns handed to the prompt
        """
        self.store = store
        self.narrator = narrator
        self.illustrator = illustrator
        self.moderation = moderation
        self.max_input_length = max_input_length
        self.max_turns_per_session = max_turns_per_session
        self.recent_turns_window = recent_turns_window

    async def process_turn(self, session_id: str, user_id: str, player_input: str) -> TurnOutcome:
        """Run one player action through the pipeline.

        Raises:
            InvalidPlayerInputError, SessionNotFoundError, TurnLimitReachedError,
            ContentFlaggedError, provider errors from NarrationGenerator and
            SessionStoreError
        """
        start_time = time.time()

        validate_player_input(player_input, self.max_input_length)
        session = await self._load_session(session_id, user_id)

        if len(session.turn_history) >= self.max_turns_per_session:
            raise TurnLimitReachedError("Maximum turns reached for this session")

        clean_input = sanitize_input(player_input, self.max_input_length)

        if session.settings.safety_filter and await self.moderation.moderate(clean_input):
            logger.info("Player input flagged by moderation", input_preview=sanitize_for_log(clean_input, 80))
            raise ContentFlaggedError("Input contains inappropriate content")

        custom = session.custom_adventure if session.adventure_type == "custom" else None
        adventure = custom.original_details if custom else None

        context = GameContext(
            genre=session.metadata.genre,
            world_state=session.world_state,
            recent_history=session.turn_history[-self.recent_turns_window:],
            player_input=clean_input,
            session_id=session.session_id,
            adventure_details=adventure,
            adaptive_elements=custom.adaptive_elements if custom else None,
            style_preference=session.settings.style_preference,
            content_rating=session.settings.content_rating,
        )

        turn_id = generate_turn_id()
        set_turn_id(turn_id)

        with PhaseTimer("narration", logger) as narration_timer:
            result = await self.narrator.generate(context)

        changes = result.response.state_changes
        new_state = apply_state_changes(session.world_state, changes)
        previous_snapshot = session.turn_history[-1].world_state_snapshot if session.turn_history else None
        world_state_changes = compute_world_state_changes(previous_snapshot, new_state)

        turn, image_ms = await self._assemble_turn(
            turn_id=turn_id,
            turn_number=len(session.turn_history),
            player_input=clean_input,
            result=result,
            snapshot=new_state,
            image_style=session.metadata.image_style,
            adventure=adventure,
            narration_ms=narration_timer.duration_ms,
        )

        updated = session.model_copy(deep=True)
        updated.world_state = new_state
        updated.metadata.last_played = turn.timestamp
        if updated.custom_adventure is not None and custom is not None:
            updated.custom_adventure.adaptive_elements = track_adventure_progress(custom.adaptive_elements, changes)

        await self.store.save_turn(updated, turn)

        processing_time_ms = int((time.time() - start_time) * 1000)
        logger.info(
            "Turn processed",
            turn_number=turn.turn_number,
            parse_kind=result.parse_kind,
            has_image=bool(turn.image_url),
            image_ms=f"{image_ms:.2f}",
            processing_time_ms=processing_time_ms
        )

        return TurnOutcome(
            turn=turn,
            world_state_changes=world_state_changes,
            processing_time_ms=processing_time_ms,
        )

    async def create_session(self, user_id: str, request: NewGameRequest) -> SessionStart:
        """Start a preset-genre session with a generated prologue (turn 0)."""
        session_id = generate_session_id()
        set_session_id(session_id)
        logger.info("Creating new game", genre=request.genre, image_style=request.image_style)

        world_state = WorldState(location=starting_location(request.genre))
        settings = _settings_from(request)

        context = GameContext(
            genre=request.genre,
            world_state=world_state,
            player_input=BEGIN_ADVENTURE,
            session_id=session_id,
            style_preference=settings.style_preference,
            content_rating=settings.content_rating,
        )

        with PhaseTimer("prologue_narration", logger) as timer:
            result = await self.narrator.generate(context)

        return await self._open_session(
            session_id=session_id,
            user_id=user_id,
            world_state=world_state,
            result=result,
            narration_ms=timer.duration_ms,
            metadata=SessionMetadata(genre=request.genre, image_style=request.image_style),
            settings=settings,
        )

    async def create_custom_session(self, user_id: str, request: CustomAdventureRequest) -> SessionStart:
        """Validate a player-authored adventure and start a session from it.

        Raises:
            InvalidAdventureError: With the full validation report
        """
        validation = validate_adventure_details(request.adventure_details)
        if not validation.is_valid:
            raise InvalidAdventureError(
                "Validation failed: " + ", ".join(issue.message for issue in validation.errors),
                validation,
            )

        details = validate_adventure(request.adventure_details)
        return await self._start_custom_session(user_id, details, _settings_from(request), request.image_style)

    async def create_session_from_prompt(self, user_id: str, request: PromptAdventureRequest) -> SessionStart:
        """Generate an adventure from free text and start a session from it.

        A generated adventure that fails validation is replaced by the
        fallback adventure.
        """
        details, parse_kind = await self.narrator.generate_adventure(request.prompt)

        validation = validate_adventure_details(details.model_dump(mode="json"))
        if not validation.is_valid:
            logger.warning(
                "Generated adventure failed validation, using fallback adventure",
                codes=",".join(issue.code for issue in validation.errors),
                parse_kind=parse_kind
            )
            details = FALLBACK_ADVENTURE.model_copy(deep=True)

        return await self._start_custom_session(user_id, details, _settings_from(request), request.image_style)

    async def create_session_from_template(
        self,
        user_id: str,
        template_id: str,
        request: TemplateGameRequest
    ) -> SessionStart:
        """Start a session from a stored template, counting the use."""
        adventure = await self.store.get_adventure(template_id)
        if adventure is None or not adventure.is_template:
            raise AdventureNotFoundError("Template not found")

        await self.store.save_adventure(
            adventure.model_copy(update={"usage_count": adventure.usage_count + 1})
        )
        template = clone_as_template(adventure)

        return await self._start_custom_session(
            user_id,
            template.details.model_copy(deep=True),
            _settings_from(request),
            request.image_style,
        )

    async def save_adventure_as_template(
        self,
        user_id: str,
        adventure_id: str,
        is_public: bool = False,
        tags: Optional[List[str]] = None
    ) -> AdventureTemplate:
        """Mark a user's adventure as a template and return its read-only view."""
        adventure = await self.store.get_adventure(adventure_id)
        if adventure is None or adventure.user_id != user_id:
            raise AdventureNotFoundError("Adventure not found")

        updated = adventure.model_copy(update={
            "is_template": True,
            "is_public": is_public,
            "tags": list(tags) if tags is not None else adventure.tags,
        })
        await self.store.save_adventure(updated)

        logger.info("Adventure saved as template", adventure_id=adventure_id, is_public=is_public)
        return clone_as_template(updated)

    async def list_templates(self, limit: int = 20) -> List[AdventureTemplate]:
        adventures = await self.store.list_public_templates(limit)
        return [clone_as_template(adventure) for adventure in adventures]

    async def load_game(self, session_id: str, user_id: str) -> GameSession:
        """Return a session and record that it was played."""
        session = await self._load_session(session_id, user_id)
        session.metadata.last_played = utc_now()
        await self.store.update_session(session)
        return session

    async def save_game(self, user_id: str, session_id: str, save_name: str) -> SavedGame:
        """Snapshot a session under a unique, player-chosen name.

        Raises:
            InvalidSaveNameError, SessionNotFoundError, DuplicateSaveError
        """
        validate_save_name(save_name)
        session = await self._load_session(session_id, user_id)

        saved = SavedGame(
            save_id=f"save_{uuid.uuid4().hex}",
            save_name=save_name.strip(),
            session_id=session_id,
            user_id=user_id,
            turn_count=len(session.turn_history),
            preview_image=session.turn_history[-1].image_url if session.turn_history else "",
            session_snapshot=session.model_dump(mode="json"),
        )

        try:
            await self.store.save_game(saved)
        except DuplicateKeyError as e:
            raise DuplicateSaveError("A save with this name already exists") from e

        logger.info("Game saved", save_name=saved.save_name, turn_count=saved.turn_count)
        return saved

    async def list_saved_games(self, user_id: str) -> List[SavedGame]:
        """The user's saves, newest first."""
        return await self.store.load_saved_games(user_id, limit=SAVED_GAMES_LIMIT)

    async def _load_session(self, session_id: str, user_id: str) -> GameSession:
        session = await self.store.load_session(session_id, user_id)
        if session is None:
            raise SessionNotFoundError("Game session not found")
        set_session_id(session_id)
        return session

    async def _start_custom_session(
        self,
        user_id: str,
        details: AdventureDetails,
        settings: GameSettings,
        image_style: str
    ) -> SessionStart:
        details = sanitize_adventure(details)
        adventure_id = generate_adventure_id()
        session_id = generate_session_id()
        set_session_id(session_id)

        await self.store.save_adventure(CustomAdventure(
            adventure_id=adventure_id,
            user_id=user_id,
            details=details,
        ))
        logger.info("Custom adventure saved", adventure_id=adventure_id, title=details.title)

        world_state = WorldState(
            location=custom_starting_location(details),
            inventory=custom_starting_inventory(details),
            flags={"adventure_id": adventure_id},
        )

        with PhaseTimer("prologue_narration", logger) as timer:
            result = await self.narrator.generate_prologue(details)

        return await self._open_session(
            session_id=session_id,
            user_id=user_id,
            world_state=world_state,
            result=result,
            narration_ms=timer.duration_ms,
            metadata=SessionMetadata(genre="custom", image_style=image_style),
            settings=settings,
            custom=CustomAdventureState(adventure_id=adventure_id, original_details=details),
        )

    async def _open_session(
        self,
        session_id: str,
        user_id: str,
        world_state: WorldState,
        result: NarrationResult,
        narration_ms: float,
        metadata: SessionMetadata,
        settings: GameSettings,
        custom: Optional[CustomAdventureState] = None
    ) -> SessionStart:
        """Apply prologue deltas, illustrate, and store the new session."""
        changes = result.response.state_changes
        new_state = apply_state_changes(world_state, changes)

        turn_id = generate_turn_id()
        set_turn_id(turn_id)
        prologue, _ = await self._assemble_turn(
            turn_id=turn_id,
            turn_number=0,
            player_input=BEGIN_ADVENTURE,
            result=result,
            snapshot=new_state,
            image_style=metadata.image_style,
            adventure=custom.original_details if custom else None,
            narration_ms=narration_ms,
        )

        if custom is not None:
            custom.adaptive_elements = track_adventure_progress(custom.adaptive_elements, changes)

        metadata.total_turns = 1
        session = GameSession(
            session_id=session_id,
            user_id=user_id,
            world_state=new_state,
            turn_history=[prologue],
            metadata=metadata,
            settings=settings,
            adventure_type="custom" if custom else "preset",
            custom_adventure=custom,
        )
        await self.store.create_session(session)

        logger.info(
            "Session created",
            adventure_type=session.adventure_type,
            parse_kind=result.parse_kind,
            has_image=bool(prologue.image_url)
        )
        return SessionStart(
            session=session,
            prologue=prologue,
            adventure_id=custom.adventure_id if custom else None,
        )

    async def _assemble_turn(
        self,
        turn_id: str,
        turn_number: int,
        player_input: str,
        result: NarrationResult,
        snapshot: WorldState,
        image_style: str,
        adventure: Optional[AdventureDetails],
        narration_ms: float
    ) -> tuple[Turn, float]:
        response = result.response

        image_start = time.time()
        image = await self.illustrator.obtain(response.image_prompt, image_style, adventure)
        image_ms = (time.time() - image_start) * 1000

        turn = Turn(
            turn_id=turn_id,
            turn_number=turn_number,
            player_input=player_input,
            narration=response.narration,
            image_prompt=response.image_prompt,
            image_url=image.url,
            quick_actions=response.quick_actions,
            world_state_snapshot=snapshot.model_copy(deep=True),
            processing_metadata=ProcessingMetadata(
                ai_response_time_ms=round(narration_ms, 2),
                image_generation_time_ms=round(image_ms, 2),
                tokens_used=result.tokens_used,
            ),
            image_error=image.error,
        )
        return turn, image_ms
