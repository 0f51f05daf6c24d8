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
"""Total normalisation of untyped provider payloads.

Every function in this module accepts arbitrary decoded JSON and returns a
well-formed model. Nothing here raises: absent or wrong-typed fields take
the defaults supplied by the call site.
"""

import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from storyloom.models import (
    AdventureCharacters,
    AdventureDetails,
    AdventureNPC,
    AdventurePlot,
    AdventureSetting,
    CharacterRelationship,
    DEFAULT_QUICK_ACTIONS,
    NarrationResponse,
    NPCRelationship,
    PROLOGUE_QUICK_ACTIONS,
    StateChanges,
    StylePreferences,
    TimePeriodSelection,
)

MAX_QUICK_ACTIONS = 5

VALID_TONES = ("serious", "humorous", "dramatic", "mixed")
VALID_COMPLEXITIES = ("simple", "moderate", "complex")
VALID_PACINGS = ("slow", "moderate", "fast")
VALID_IMPORTANCE = ("major", "minor", "background")
VALID_RELATIONSHIP_TYPES = ("ally", "enemy", "neutral", "family", "romantic", "rival")


@dataclass
class NarrationDefaults:
    """Fallback values used when a narration payload is incomplete.

    Attributes:
        narration: Text used when the payload has no usable narration
        image_prompt: Prompt used when the payload has no usable image prompt
        quick_actions: Actions used when the payload offers none
    """
    narration: str
    image_prompt: str
    quick_actions: List[str] = field(default_factory=lambda: list(DEFAULT_QUICK_ACTIONS))

    @classmethod
    def for_turn(cls, location: str, genre: str) -> "NarrationDefaults":
        """Defaults for an ordinary turn, derived from where the player is."""
        return cls(
            narration=f"You are in {location}. What would you like to do?",
            image_prompt=f"{location}, {genre} scene",
            quick_actions=list(DEFAULT_QUICK_ACTIONS),
        )

    @classmethod
    def for_prologue(cls, world_description: str, narration: str = "") -> "NarrationDefaults":
        """Defaults for a custom adventure's opening scene."""
        return cls(
            narration=narration or f"Your adventure begins. {world_description}".strip(),
            image_prompt=f"{world_description}, opening scene",
            quick_actions=list(PROLOGUE_QUICK_ACTIONS),
        )


def _non_empty_string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _string_or(value: Any, default: str) -> str:
    return value if isinstance(value, str) else default


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def validate_quick_actions(value: Any, defaults: Sequence[str]) -> List[str]:
    """Normalise a quick-actions value to 1-5 non-empty strings.

    Args:
        value: Untyped value from the provider
        defaults: Actions to use when nothing usable remains

    Returns:
        Between one and five stripped, non-empty action strings
    """
    if not isinstance(value, list):
        return list(defaults)

    actions = [
        item.strip()
        for item in value
        if isinstance(item, str) and item.strip()
    ][:MAX_QUICK_ACTIONS]

    return actions or list(defaults)


def validate_inventory(value: Any) -> List[str]:
    """Normalise an inventory value to a list of non-empty strings."""
    if not value:
        return []
    if isinstance(value, list):
        return [str(item) for item in value if item is not None and str(item)]
    return [str(value)]


def validate_state_changes(value: Any) -> StateChanges:
    """Normalise a state-changes object.

    location is kept only when it is a non-empty string; flags only when
    they are an object.
    """
    if not isinstance(value, dict):
        return StateChanges()

    flags = value.get("flags")
    return StateChanges(
        location=_non_empty_string(value.get("location")),
        inventory=validate_inventory(value.get("inventory")),
        flags=dict(flags) if isinstance(flags, dict) else {},
    )


def validate_narration(payload: Any, defaults: NarrationDefaults) -> NarrationResponse:
    """Normalise a narration payload into a NarrationResponse.

    Args:
        payload: Decoded JSON (any type; non-objects are treated as empty)
        defaults: Call-site defaults for missing fields

    Returns:
        A NarrationResponse with non-empty narration and image prompt
    """
    if not isinstance(payload, dict):
        payload = {}

    return NarrationResponse(
        narration=_non_empty_string(payload.get("narration")) or defaults.narration,
        image_prompt=_non_empty_string(payload.get("image_prompt")) or defaults.image_prompt,
        quick_actions=validate_quick_actions(payload.get("quick_actions"), defaults.quick_actions),
        state_changes=validate_state_changes(payload.get("state_changes")),
    )


def _validate_time_period(value: Any) -> TimePeriodSelection:
    if isinstance(value, str) and value.strip():
        return TimePeriodSelection(type="predefined", value=value)
    if not isinstance(value, dict):
        return TimePeriodSelection(type="predefined", value="medieval")

    period_type = "custom" if value.get("type") == "custom" else "predefined"
    return TimePeriodSelection(
        type=period_type,
        value=_non_empty_string(value.get("value")) or ("custom" if period_type == "custom" else "medieval"),
        custom_description=_non_empty_string(value.get("custom_description")),
        era=_non_empty_string(value.get("era")),
        technological_level=_non_empty_string(value.get("technological_level")),
        cultural_context=_non_empty_string(value.get("cultural_context")),
    )


def _clamp_strength(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return 5
    return max(1, min(10, int(value)))


def _validate_npc_relationship(value: Any) -> NPCRelationship:
    if not isinstance(value, dict):
        value = {}
    rel_type = value.get("type")
    return NPCRelationship(
        target_npc_id=_string_or(value.get("target_npc_id"), ""),
        type=rel_type if rel_type in VALID_RELATIONSHIP_TYPES else "neutral",
        description=_non_empty_string(value.get("description")) or "A relationship",
        strength=_clamp_strength(value.get("strength")),
    )


def _validate_npc(value: Any, index: int, stamp: int) -> AdventureNPC:
    if not isinstance(value, dict):
        value = {}
    importance = value.get("importance")
    relationships = value.get("relationships")
    return AdventureNPC(
        id=_non_empty_string(value.get("id")) or f"npc_{stamp}_{index}",
        name=_non_empty_string(value.get("name")) or "Unknown Character",
        description=_non_empty_string(value.get("description")) or "A mysterious figure",
        relationship=_non_empty_string(value.get("relationship")) or "neutral",
        personality=_non_empty_string(value.get("personality")),
        goals=_non_empty_string(value.get("goals")),
        traits=_string_list(value.get("traits")),
        backstory=_non_empty_string(value.get("backstory")),
        importance=importance if importance in VALID_IMPORTANCE else "minor",
        relationships=[
            _validate_npc_relationship(rel)
            for rel in (relationships if isinstance(relationships, list) else [])
        ],
    )


def _validate_character_relationships(value: Any) -> Optional[List[CharacterRelationship]]:
    if not isinstance(value, list):
        return None
    relationships = []
    for rel in value:
        if not isinstance(rel, dict):
            continue
        first = _non_empty_string(rel.get("character1"))
        second = _non_empty_string(rel.get("character2"))
        if not first or not second:
            continue
        relationships.append(CharacterRelationship(
            character1=first,
            character2=second,
            type=_non_empty_string(rel.get("type")) or "neutral",
            description=_string_or(rel.get("description"), ""),
        ))
    return relationships


def validate_adventure(payload: Any) -> AdventureDetails:
    """Normalise an adventure definition into AdventureDetails.

    Used both for player-authored definitions (after the adventure
    validator accepts them) and for provider-generated ones.

    Args:
        payload: Decoded JSON of any type

    Returns:
        A fully populated AdventureDetails
    """
    if not isinstance(payload, dict):
        payload = {}

    setting: Dict[str, Any] = payload.get("setting") if isinstance(payload.get("setting"), dict) else {}
    characters: Dict[str, Any] = payload.get("characters") if isinstance(payload.get("characters"), dict) else {}
    plot: Dict[str, Any] = payload.get("plot") if isinstance(payload.get("plot"), dict) else {}
    style: Dict[str, Any] = (
        payload.get("style_preferences") if isinstance(payload.get("style_preferences"), dict) else {}
    )

    locations = setting.get("locations")
    npcs = characters.get("key_npcs")
    estimated_turns = plot.get("estimated_turns")
    themes = plot.get("themes")
    stamp = int(time.time() * 1000)

    return AdventureDetails(
        title=_non_empty_string(payload.get("title")) or "Untitled Adventure",
        description=_string_or(payload.get("description"), ""),
        setting=AdventureSetting(
            world_description=_string_or(setting.get("world_description"), ""),
            time_period=_validate_time_period(setting.get("time_period")),
            environment=_string_or(setting.get("environment"), ""),
            special_rules=_non_empty_string(setting.get("special_rules")),
            locations=_string_list(locations) if isinstance(locations, list) else None,
        ),
        characters=AdventureCharacters(
            player_role=_string_or(characters.get("player_role"), ""),
            key_npcs=[
                _validate_npc(npc, index, stamp)
                for index, npc in enumerate(npcs if isinstance(npcs, list) else [])
            ],
            relationships=_validate_character_relationships(characters.get("relationships")),
        ),
        plot=AdventurePlot(
            main_objective=_string_or(plot.get("main_objective"), ""),
            secondary_goals=_string_list(plot.get("secondary_goals")),
            plot_hooks=_string_list(plot.get("plot_hooks")),
            victory_conditions=_string_or(plot.get("victory_conditions"), ""),
            estimated_turns=(
                estimated_turns
                if isinstance(estimated_turns, int) and not isinstance(estimated_turns, bool)
                else None
            ),
            themes=_string_list(themes) if isinstance(themes, list) else None,
        ),
        style_preferences=StylePreferences(
            tone=style.get("tone") if style.get("tone") in VALID_TONES else "serious",
            complexity=style.get("complexity") if style.get("complexity") in VALID_COMPLEXITIES else "moderate",
            pacing=style.get("pacing") if style.get("pacing") in VALID_PACINGS else "moderate",
        ),
    )
