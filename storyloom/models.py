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
"""Pydantic models for the storyloom service.

This module defines:
- World state and turn records produced by the turn engine
- The provider narration reply after schema validation
- Custom adventure definitions and their validation report
- Game sessions, saves and templates handed to the storage collaborator
- Request/response schemas for the HTTP API
"""

from datetime import datetime, timezone
from typing import List, Optional, Literal, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator

Genre = Literal["fantasy", "sci-fi", "horror", "modern", "custom"]
ImageStyle = Literal["fantasy_art", "comic_book", "painterly"]
StylePreference = Literal["detailed", "concise"]
ContentRating = Literal["PG-13", "R"]
Tone = Literal["serious", "humorous", "dramatic", "mixed"]
Complexity = Literal["simple", "moderate", "complex"]
Pacing = Literal["slow", "moderate", "fast"]
NPCImportance = Literal["major", "minor", "background"]
RelationshipType = Literal["ally", "enemy", "neutral", "family", "romantic", "rival"]
ImageErrorType = Literal["rate_limit", "content_policy", "network", "unknown"]

# Synthetic player input used to generate the prologue (turn 0)
BEGIN_ADVENTURE = "BEGIN_ADVENTURE"

DEFAULT_QUICK_ACTIONS = ["Look around", "Continue"]
PROLOGUE_QUICK_ACTIONS = ["Look around", "Continue", "Examine surroundings"]


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# World state and turns
# ---------------------------------------------------------------------------


class NPC(BaseModel):
    """A non-player character tracked in the world state."""
    name: str
    description: str = ""
    location: str = ""
    dialogue_state: Dict[str, Any] = Field(default_factory=dict)
    relationship_level: int = 0
    is_active: bool = True


class WorldState(BaseModel):
    """The mutable simulation state carried between turns.

    Attributes:
        location: Where the player currently is
        inventory: Ordered item names, duplicates allowed; always a list
        npcs: NPC records keyed by name
        flags: Story flags (arbitrary JSON values)
        current_chapter: Name of the active chapter
    """
    location: str = ""
    inventory: List[str] = Field(default_factory=list)
    npcs: Dict[str, NPC] = Field(default_factory=dict)
    flags: Dict[str, Any] = Field(default_factory=dict)
    current_chapter: str = "Prologue"

    @field_validator('inventory', mode='before')
    @classmethod
    def coerce_inventory(cls, v: Any) -> List[str]:
        """Coerce scalars and None so inventory is never anything but a list."""
        if v is None:
            return []
        if isinstance(v, (list, tuple)):
            return [str(item) for item in v if item is not None]
        return [str(v)]

    @field_validator('npcs', mode='before')
    @classmethod
    def key_npcs_by_name(cls, v: Any) -> Dict[str, Any]:
        """Accept a list of NPC records and key them by name."""
        if v is None:
            return {}
        if isinstance(v, (list, tuple)):
            keyed: Dict[str, Any] = {}
            for npc in v:
                name = npc.get("name") if isinstance(npc, dict) else getattr(npc, "name", None)
                if name:
                    keyed[name] = npc
            return keyed
        return v


class ProcessingMetadata(BaseModel):
    """Timing and usage figures recorded for a turn."""
    ai_response_time_ms: float = 0.0
    image_generation_time_ms: float = 0.0
    tokens_used: int = 0


class ImageGenerationError(BaseModel):
    """Why an illustration could not be produced.

    Attached to a turn when every configuration and retry has failed.
    Never fatal to the turn.
    """
    model: str = Field(..., description="Model of the last configuration attempted")
    error_type: ImageErrorType
    error_message: str
    timestamp: datetime = Field(default_factory=utc_now)
    fallback_used: bool = False


class ImageResult(BaseModel):
    """Outcome of an illustration request; url is empty on failure."""
    url: str = ""
    error: Optional[ImageGenerationError] = None
    cached: bool = False


class Turn(BaseModel):
    """One player-action/provider-response cycle. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    turn_id: str
    turn_number: int = Field(..., ge=0)
    player_input: str
    narration: str
    image_prompt: str
    image_url: str = ""
    quick_actions: List[str] = Field(default_factory=list, max_length=5)
    world_state_snapshot: WorldState
    timestamp: datetime = Field(default_factory=utc_now)
    processing_metadata: ProcessingMetadata = Field(default_factory=ProcessingMetadata)
    image_error: Optional[ImageGenerationError] = None


class StateChanges(BaseModel):
    """World-state deltas proposed by the provider."""
    location: Optional[str] = None
    inventory: List[str] = Field(default_factory=list)
    flags: Dict[str, Any] = Field(default_factory=dict)


class NarrationResponse(BaseModel):
    """A provider narration reply after schema validation."""
    narration: str
    image_prompt: str
    quick_actions: List[str]
    state_changes: StateChanges = Field(default_factory=StateChanges)


# ---------------------------------------------------------------------------
# Custom adventures
# ---------------------------------------------------------------------------


class TimePeriodSelection(BaseModel):
    """Either a predefined era or a free-form custom period."""
    type: Literal["predefined", "custom"] = "predefined"
    value: str = "medieval"
    custom_description: Optional[str] = None
    era: Optional[str] = None
    technological_level: Optional[str] = None
    cultural_context: Optional[str] = None

    @property
    def display(self) -> str:
        """Human-readable period used in prompts."""
        if self.type == "custom":
            return self.custom_description or self.value
        return self.value


class AdventureSetting(BaseModel):
    world_description: str = ""
    time_period: TimePeriodSelection = Field(default_factory=TimePeriodSelection)
    environment: str = ""
    special_rules: Optional[str] = None
    locations: Optional[List[str]] = None


class NPCRelationship(BaseModel):
    target_npc_id: str = ""
    type: RelationshipType = "neutral"
    description: str = "A relationship"
    strength: int = Field(default=5, ge=1, le=10)


class AdventureNPC(BaseModel):
    id: str
    name: str = "Unknown Character"
    description: str = "A mysterious figure"
    relationship: str = "neutral"
    personality: Optional[str] = None
    goals: Optional[str] = None
    traits: List[str] = Field(default_factory=list)
    backstory: Optional[str] = None
    importance: NPCImportance = "minor"
    relationships: List[NPCRelationship] = Field(default_factory=list)


class CharacterRelationship(BaseModel):
    character1: str
    character2: str
    type: str
    description: str = ""


class AdventureCharacters(BaseModel):
    player_role: str = ""
    key_npcs: List[AdventureNPC] = Field(default_factory=list)
    relationships: Optional[List[CharacterRelationship]] = None


class AdventurePlot(BaseModel):
    main_objective: str = ""
    secondary_goals: List[str] = Field(default_factory=list)
    plot_hooks: List[str] = Field(default_factory=list)
    victory_conditions: str = ""
    estimated_turns: Optional[int] = None
    themes: Optional[List[str]] = None


class StylePreferences(BaseModel):
    tone: Tone = "serious"
    complexity: Complexity = "moderate"
    pacing: Pacing = "moderate"


class AdventureDetails(BaseModel):
    """A player-authored (or prompt-derived) adventure definition."""
    title: str = "Untitled Adventure"
    description: str = ""
    setting: AdventureSetting = Field(default_factory=AdventureSetting)
    characters: AdventureCharacters = Field(default_factory=AdventureCharacters)
    plot: AdventurePlot = Field(default_factory=AdventurePlot)
    style_preferences: StylePreferences = Field(default_factory=StylePreferences)


class AdventureTemplate(BaseModel):
    """Read-only clone of an adventure that other sessions can start from."""
    model_config = ConfigDict(frozen=True)

    template_id: str
    title: str
    description: str
    details: AdventureDetails
    is_public: bool = False
    tags: List[str] = Field(default_factory=list)
    usage_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)


class ValidationIssue(BaseModel):
    field: str
    message: str
    code: str


class AdventureValidationResult(BaseModel):
    is_valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Sessions and saves
# ---------------------------------------------------------------------------


class SessionMetadata(BaseModel):
    genre: Genre
    image_style: ImageStyle = "fantasy_art"
    created_at: datetime = Field(default_factory=utc_now)
    last_played: datetime = Field(default_factory=utc_now)
    total_turns: int = 0


class GameSettings(BaseModel):
    difficulty: Literal["easy", "normal", "hard"] = "normal"
    safety_filter: bool = False
    style_preference: StylePreference = "detailed"
    content_rating: Optional[ContentRating] = None


class AdaptiveElements(BaseModel):
    """Progress a custom adventure accumulates for prompt continuity."""
    discovered_locations: List[str] = Field(default_factory=list)
    met_npcs: List[str] = Field(default_factory=list)
    completed_objectives: List[str] = Field(default_factory=list)
    story_branches: List[str] = Field(default_factory=list)
    unlocked_plot_hooks: List[str] = Field(default_factory=list)


class CustomAdventureState(BaseModel):
    adventure_id: str
    original_details: AdventureDetails
    adaptive_elements: AdaptiveElements = Field(default_factory=AdaptiveElements)


class GameSession(BaseModel):
    """A player's session as held by the storage collaborator."""
    session_id: str
    user_id: str
    world_state: WorldState
    turn_history: List[Turn] = Field(default_factory=list)
    metadata: SessionMetadata
    settings: GameSettings = Field(default_factory=GameSettings)
    adventure_type: Literal["preset", "custom"] = "preset"
    custom_adventure: Optional[CustomAdventureState] = None


class CustomAdventure(BaseModel):
    """A stored custom adventure definition owned by a user."""
    adventure_id: str
    user_id: str
    details: AdventureDetails
    created_at: datetime = Field(default_factory=utc_now)
    is_template: bool = False
    is_public: bool = False
    usage_count: int = 1
    tags: List[str] = Field(default_factory=list)


class SavedGame(BaseModel):
    save_id: str
    save_name: str
    session_id: str
    user_id: str
    created_at: datetime = Field(default_factory=utc_now)
    turn_count: int
    preview_image: str = ""
    session_snapshot: Optional[Dict[str, Any]] = None


class GameContext(BaseModel):
    """Everything the prompt composer needs for one narration call."""
    genre: str
    world_state: WorldState
    recent_history: List[Turn] = Field(default_factory=list)
    player_input: str
    session_id: str
    adventure_details: Optional[AdventureDetails] = None
    adaptive_elements: Optional[AdaptiveElements] = None
    style_preference: StylePreference = "detailed"
    content_rating: Optional[ContentRating] = None


# ---------------------------------------------------------------------------
# API requests
# ---------------------------------------------------------------------------


class NewGameRequest(BaseModel):
    """Request to start a preset-genre session."""
    genre: Genre = Field(..., examples=["fantasy"])
    style_preference: StylePreference = "detailed"
    image_style: ImageStyle = "fantasy_art"
    safety_filter: bool = False
    content_rating: Optional[ContentRating] = None


class CustomAdventureRequest(NewGameRequest):
    """Request to start a session from a player-authored adventure.

    adventure_details is accepted loosely so that the adventure validator
    can report every problem with a field path and code.
    """
    genre: Genre = "custom"
    adventure_details: Dict[str, Any]


class PromptAdventureRequest(BaseModel):
    prompt: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="Free-text description of the adventure to generate",
        examples=["A heist in a floating city run by dragons"]
    )
    style_preference: StylePreference = "detailed"
    image_style: ImageStyle = "fantasy_art"
    safety_filter: bool = False
    content_rating: Optional[ContentRating] = None


class TemplateGameRequest(BaseModel):
    style_preference: StylePreference = "detailed"
    image_style: ImageStyle = "fantasy_art"
    safety_filter: bool = False
    content_rating: Optional[ContentRating] = None


class TurnRequest(BaseModel):
    session_id: str = Field(..., min_length=1, examples=["session_lq2x9abc"])
    player_input: str = Field(
        ...,
        description="The player's free-text action",
        examples=["I open the creaking door"]
    )


class SaveGameRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    save_name: str


class TemplateSaveRequest(BaseModel):
    is_public: bool = False
    tags: List[str] = Field(default_factory=list)


class AdventureValidationRequest(BaseModel):
    adventure_details: Any = None


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class PrologueResponse(BaseModel):
    session_id: str
    adventure_id: Optional[str] = None
    narration: str
    image_url: str
    image_error: Optional[ImageGenerationError] = None
    quick_actions: List[str]
    world_state: WorldState


class InventoryChanges(BaseModel):
    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)


class WorldStateChanges(BaseModel):
    """Diff between the previous and the new world-state snapshot."""
    location: Optional[str] = None
    inventory_changes: InventoryChanges = Field(default_factory=InventoryChanges)
    flags_updated: Dict[str, Any] = Field(default_factory=dict)


class TurnMetadata(BaseModel):
    turn_number: int
    timestamp: str
    processing_time_ms: int


class TurnResponse(BaseModel):
    turn_id: str
    narration: str
    image_url: str
    image_error: Optional[ImageGenerationError] = None
    quick_actions: List[str]
    world_state_changes: WorldStateChanges
    metadata: TurnMetadata


class GameStateResponse(BaseModel):
    session_id: str
    adventure_type: Literal["preset", "custom"]
    world_state: WorldState
    turn_history: List[Turn]
    metadata: SessionMetadata


class SaveGameResponse(BaseModel):
    save_id: str
    message: str


class SavedGameSummary(BaseModel):
    save_id: str
    save_name: str
    session_id: str
    created_at: datetime
    turn_count: int
    preview_image: str


class SavedGamesResponse(BaseModel):
    saves: List[SavedGameSummary]


class TemplateSaveResponse(BaseModel):
    template_id: str
    message: str


class TemplateSummary(BaseModel):
    template_id: str
    title: str
    description: str
    usage_count: int
    created_at: datetime
    tags: List[str]


class TemplatesResponse(BaseModel):
    templates: List[TemplateSummary]


class HealthResponse(BaseModel):
    """Health check response model."""
    status: Literal["healthy", "degraded"] = Field(..., examples=["healthy"])
    service: str = Field(..., examples=["storyloom"])
    stub_mode: bool = False
    image_cache_entries: Optional[int] = None
