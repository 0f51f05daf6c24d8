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
"""Tests for PromptBuilder."""

import pytest

from storyloom.models import (
    AdaptiveElements,
    GameContext,
    NPC,
    Turn,
    WorldState,
)
from storyloom.prompting.prompt_builder import PromptBuilder, pacing_guidance
from storyloom.services.schema_validator import validate_adventure


def make_turn(number: int, player_input: str, narration: str) -> Turn:
    return Turn(
        turn_id=f"turn_{number}",
        turn_number=number,
        player_input=player_input,
        narration=narration,
        image_prompt="scene",
        world_state_snapshot=WorldState(location="Gate"),
    )


@pytest.fixture
def builder():
    return PromptBuilder()


@pytest.fixture
def world_state():
    return WorldState(
        location="The Salt Gate",
        inventory=["rope", "lantern"],
        npcs={
            "Ilsa": NPC(name="Ilsa", is_active=True),
            "Bram": NPC(name="Bram", is_active=False),
        },
        flags={"gate_open": True, "bribe": 3},
    )


@pytest.fixture
def context(world_state):
    return GameContext(
        genre="fantasy",
        world_state=world_state,
        player_input="I knock on the gate",
        session_id="session_1",
    )


@pytest.fixture
def adventure(adventure_payload):
    return validate_adventure(adventure_payload)


class TestTurnPrompt:
    """Tests for build_turn_prompt."""

    def test_genre_system_prompt(self, builder, context):
        blocks = builder.build_turn_prompt(context)

        assert "interactive fantasy adventure game" in blocks.system
        assert "CRITICAL: Always respond with valid JSON" in blocks.system
        assert "R-rated" in blocks.system

    def test_pg13_drops_mature_line(self, builder, context):
        context.content_rating = "PG-13"

        blocks = builder.build_turn_prompt(context)

        assert "R-rated" not in blocks.system
        assert "- Content rating: PG-13" in blocks.system

    def test_closing_lines_follow_schema(self, builder, context):
        """Test that narration guidance is appended after the output schema."""
        context.style_preference = "concise"
        context.content_rating = "R"

        system = builder.build_turn_prompt(context).system

        assert system.index("NARRATION GUIDANCE:") > system.index("Do not include any text outside")
        assert system.endswith(
            "- Length: brief, no more than four sentences\n"
            "- Content rating: R. Mature themes, violence and complex moral situations are allowed"
        )

    def test_custom_closing_lines_include_style(self, builder, context, adventure):
        context.adventure_details = adventure

        system = builder.build_turn_prompt(context).system

        assert "- Tone: keep a dramatic tone" in system
        assert "- Pacing: narration should be concise and action-packed" in system
        assert "- Complexity: moderate storytelling" in system

    def test_context_block(self, builder, context):
        block = builder.build_turn_prompt(context).context

        assert "Location: The Salt Gate" in block
        assert "Inventory: rope, lantern" in block
        assert "Chapter: Prologue" in block
        assert "NPCs present: Ilsa" in block
        assert "Bram" not in block
        assert 'Story flags: {"gate_open":true,"bribe":3}' in block

    def test_empty_inventory(self, builder, context):
        context.world_state = WorldState(location="Nowhere")

        assert "Inventory: empty" in builder.build_turn_prompt(context).context

    def test_recent_events_show_last_three(self, builder, context):
        context.recent_history = [
            make_turn(i, f"action {i}", f"narration {i} " + "x" * 200)
            for i in range(5)
        ]

        block = builder.build_turn_prompt(context).context

        assert "RECENT EVENTS:" in block
        assert 'action 0' not in block
        assert 'action 1' not in block
        assert '1. Player: "action 2" → narration 2 ' in block
        assert '3. Player: "action 4"' in block
        line = [ln for ln in block.splitlines() if ln.startswith("3. ")][0]
        assert line.endswith("...")

    def test_user_block(self, builder, context):
        user = builder.build_turn_prompt(context).user

        assert user.startswith('PLAYER ACTION: "I knock on the gate"')

    def test_custom_system_prompt(self, builder, context, adventure):
        context.adventure_details = adventure
        context.adaptive_elements = AdaptiveElements(
            discovered_locations=["The Bell Tower Dock"],
            completed_objectives=["vault_objective"],
        )

        blocks = builder.build_turn_prompt(context)

        assert '"The Sunken Library"' in blocks.system
        assert "TIME PERIOD: renaissance" in blocks.system
        assert "- Sister Maren: An archivist monk (employer)" in blocks.system
        assert "POTENTIAL PLOT HOOKS: A rival crew, Rising water" in blocks.system
        assert "DISCOVERED LOCATIONS: The Bell Tower Dock" in blocks.system
        assert "ADVENTURE PROGRESS:" in blocks.context
        assert "Objectives completed: vault_objective" in blocks.context

    def test_deterministic_and_pure(self, builder, context):
        """Test that the same context yields the same blocks and is not modified."""
        before = context.model_dump()

        first = builder.build_turn_prompt(context)
        second = builder.build_turn_prompt(context)

        assert first == second
        assert context.model_dump() == before


class TestPrologueAndAdventurePrompts:
    def test_prologue_prompt(self, builder, adventure):
        blocks = builder.build_prologue_prompt(adventure)

        assert "opening scene" in blocks.system
        assert "- Time Period: renaissance" in blocks.system
        assert "concise and action-packed" in blocks.system
        assert '"prologue_complete": true' in blocks.system
        assert blocks.context == ""
        assert "A rogue diver for hire" in blocks.user

    def test_adventure_prompt(self, builder):
        blocks = builder.build_adventure_prompt("A heist on a glacier")

        assert blocks.system == PromptBuilder.ADVENTURE_SYSTEM_INSTRUCTIONS
        assert blocks.user == "Prompt: A heist on a glacier\nReturn only valid JSON"


def test_pacing_guidance():
    assert pacing_guidance("fast") == "concise and action-packed"
    assert pacing_guidance("slow") == "detailed and atmospheric"
    assert pacing_guidance("moderate") == "balanced between description and action"
