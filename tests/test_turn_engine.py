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
"""Tests for the turn engine: helpers, session lifecycle and turns."""

import re
import pytest
from unittest.mock import AsyncMock

from storyloom.models import (
    AdaptiveElements,
    AdventureDetails,
    BEGIN_ADVENTURE,
    CustomAdventureRequest,
    NarrationResponse,
    NewGameRequest,
    PromptAdventureRequest,
    StateChanges,
    TemplateGameRequest,
    WorldState,
)
from storyloom.services.illustration import STUB_IMAGE_URL
from storyloom.services.llm_client import NarrationResult
from storyloom.services.schema_validator import validate_adventure
from storyloom.services.turn_engine import (
    AdventureNotFoundError,
    ContentFlaggedError,
    DuplicateSaveError,
    InvalidAdventureError,
    InvalidPlayerInputError,
    InvalidSaveNameError,
    SessionNotFoundError,
    STARTING_LOCATIONS,
    TurnEngine,
    TurnLimitReachedError,
    apply_state_changes,
    compute_world_state_changes,
    custom_starting_inventory,
    custom_starting_location,
    sanitize_input,
    starting_location,
    track_adventure_progress,
    validate_player_input,
    validate_save_name,
)

USER = "user-1"


def narration(**state_changes) -> NarrationResult:
    return NarrationResult(
        response=NarrationResponse(
            narration="The ground shifts beneath you.",
            image_prompt="A shifting cavern",
            quick_actions=["Go north", "Look around", "Examine trees"],
            state_changes=StateChanges(**state_changes),
        ),
        parse_kind="strict",
        tokens_used=120,
    )


def details_with(adventure_payload, **setting) -> AdventureDetails:
    adventure_payload["setting"].update(setting)
    return validate_adventure(adventure_payload)


class TestInputHelpers:
    """Tests for player input and save name rules."""

    @pytest.mark.parametrize("text,message", [
        ("", "Input cannot be empty"),
        ("   ", "Input cannot be empty"),
        ("x" * 501, "Input too long (max 500 characters)"),
        ("I hack the gate", "Input contains prohibited content"),
        ("<script>alert(1)</script>", "Input contains prohibited content"),
        ("JavaScript:void(0)", "Input contains prohibited content"),
    ])
    def test_invalid_input(self, text, message):
        with pytest.raises(InvalidPlayerInputError, match=re.escape(message)):
            validate_player_input(text)

    def test_valid_input(self):
        validate_player_input("I open the creaking door")

    def test_hack_inside_word_is_allowed(self):
        validate_player_input("I hacksaw through the bars")

    def test_sanitize_input(self):
        assert sanitize_input("  I <b>open</b>\n\n the   door ") == "I bopen/b the door"
        assert sanitize_input("x" * 20, max_length=5) == "xxxxx"

    @pytest.mark.parametrize("name", ["Before the vault", "save_01", "run-2"])
    def test_valid_save_names(self, name):
        validate_save_name(name)

    @pytest.mark.parametrize("name", ["", "  ", "x" * 51, "bad/name", "quote's"])
    def test_invalid_save_names(self, name):
        with pytest.raises(InvalidSaveNameError):
            validate_save_name(name)


class TestStartingWorld:
    def test_genre_locations(self):
        assert starting_location("horror") == STARTING_LOCATIONS["horror"]
        assert starting_location("western") == STARTING_LOCATIONS["fantasy"]

    def test_custom_location_prefers_declared_locations(self, adventure_payload):
        details = validate_adventure(adventure_payload)

        assert custom_starting_location(details) == "The Bell Tower Dock"

    def test_custom_location_skips_blank_entries(self, adventure_payload):
        details = details_with(adventure_payload, locations=["", "   ", "The Salt Market"])

        assert custom_starting_location(details) == "The Salt Market"

    def test_custom_location_all_blank_uses_environment(self, adventure_payload):
        details = details_with(adventure_payload, locations=[""], environment="The Crooked Tavern")

        assert custom_starting_location(details) == "Inside The Crooked Tavern"

    @pytest.mark.parametrize("environment,expected", [
        ("A walled city", "A bustling area in the heart of A walled city"),
        ("An old forest", "A forest clearing in An old forest"),
        ("A sunken dungeon", "The entrance to A sunken dungeon"),
        ("The Crooked Tavern", "Inside The Crooked Tavern"),
        ("Open plains", "At the beginning of your journey in Open plains"),
    ])
    def test_custom_location_from_environment(self, adventure_payload, environment, expected):
        details = details_with(adventure_payload, locations=[], environment=environment)

        assert custom_starting_location(details) == expected

    def test_inventory_from_role(self, adventure_payload):
        details = validate_adventure(adventure_payload)

        assert custom_starting_inventory(details) == ["lockpicks", "daggers", "hood"]

    def test_inventory_from_role_and_environment(self, adventure_payload):
        adventure_payload["characters"]["player_role"] = "A wandering mage"
        details = details_with(adventure_payload, environment="A frozen winter coast")

        assert custom_starting_inventory(details) == ["spellbook", "staff", "magic pouch", "warm cloak"]

    def test_inventory_empty_without_keywords(self, adventure_payload):
        adventure_payload["characters"]["player_role"] = "A curious child"

        assert custom_starting_inventory(validate_adventure(adventure_payload)) == []


class TestWorldStateChanges:
    """Tests for applying and diffing world-state deltas."""

    def test_apply_returns_new_state(self):
        state = WorldState(location="Gate", inventory=["rope"], flags={"a": 1})

        updated = apply_state_changes(
            state,
            StateChanges(location="Hall", inventory=["sword"], flags={"b": 2})
        )

        assert updated.location == "Hall"
        assert updated.inventory == ["rope", "sword"]
        assert updated.flags == {"a": 1, "b": 2}
        assert state.inventory == ["rope"]
        assert state.flags == {"a": 1}

    def test_apply_empty_changes_keeps_state(self):
        state = WorldState(location="Gate", inventory=["rope"])

        assert apply_state_changes(state, StateChanges()) == state

    def test_diff_without_previous_snapshot(self):
        current = WorldState(location="Gate", inventory=["rope"], flags={"a": 1})

        changes = compute_world_state_changes(None, current)

        assert changes.location == "Gate"
        assert changes.inventory_changes.added == ["rope"]
        assert changes.inventory_changes.removed == []
        assert changes.flags_updated == {"a": 1}

    def test_diff_reports_only_changes(self):
        previous = WorldState(location="Gate", inventory=["rope", "coin"], flags={"a": 1, "b": 2})
        current = WorldState(location="Gate", inventory=["coin", "torch"], flags={"a": 1, "b": 3})

        changes = compute_world_state_changes(previous, current)

        assert changes.location is None
        assert changes.inventory_changes.added == ["torch"]
        assert changes.inventory_changes.removed == ["rope"]
        assert changes.flags_updated == {"b": 3}

    def test_diff_counts_duplicates(self):
        previous = WorldState(location="Gate", inventory=["coin"])
        current = WorldState(location="Hall", inventory=["coin", "coin"])

        changes = compute_world_state_changes(previous, current)

        assert changes.location == "Hall"
        assert changes.inventory_changes.added == ["coin"]
        assert changes.inventory_changes.removed == []

    def test_track_adventure_progress(self):
        adaptive = AdaptiveElements(discovered_locations=["Dock"])

        updated = track_adventure_progress(adaptive, StateChanges(
            location="Vault",
            flags={"vault_objective": "complete", "side_objective": "started", "door": "complete"},
        ))

        assert updated.discovered_locations == ["Dock", "Vault"]
        assert updated.completed_objectives == ["vault_objective"]
        assert adaptive.discovered_locations == ["Dock"]

    def test_track_progress_ignores_known_location(self):
        adaptive = AdaptiveElements(discovered_locations=["Dock"])

        updated = track_adventure_progress(adaptive, StateChanges(location="Dock"))

        assert updated.discovered_locations == ["Dock"]


class TestCreateSession:
    @pytest.mark.asyncio
    async def test_preset_session_has_prologue_turn(self, stub_engine, store):
        start = await stub_engine.create_session(USER, NewGameRequest(genre="sci-fi", image_style="comic_book"))

        prologue = start.prologue
        assert prologue.turn_number == 0
        assert prologue.player_input == BEGIN_ADVENTURE
        assert prologue.image_url == STUB_IMAGE_URL
        assert start.session.world_state.location == STARTING_LOCATIONS["sci-fi"]
        assert start.session.metadata.total_turns == 1
        assert start.session.metadata.image_style == "comic_book"
        assert start.session.adventure_type == "preset"
        assert start.adventure_id is None

        stored = await store.load_session(start.session.session_id, USER)
        assert [turn.turn_id for turn in stored.turn_history] == [prologue.turn_id]

    @pytest.mark.asyncio
    async def test_custom_session(self, stub_engine, store, adventure_payload):
        start = await stub_engine.create_custom_session(
            USER, CustomAdventureRequest(adventure_details=adventure_payload)
        )

        session = start.session
        assert start.adventure_id.startswith("adv_")
        assert session.adventure_type == "custom"
        assert session.metadata.genre == "custom"
        assert session.world_state.location == "The Bell Tower Dock"
        assert session.world_state.inventory == ["lockpicks", "daggers", "hood"]
        assert session.world_state.flags == {"adventure_id": start.adventure_id, "prologue_complete": True}
        assert start.prologue.world_state_snapshot == session.world_state
        assert session.custom_adventure.original_details.title == "The Sunken Library"

        stored = await store.get_adventure(start.adventure_id)
        assert stored.user_id == USER
        assert stored.usage_count == 1

    @pytest.mark.asyncio
    async def test_custom_session_rejects_invalid_adventure(self, stub_engine, adventure_payload):
        adventure_payload["title"] = ""

        with pytest.raises(InvalidAdventureError) as exc_info:
            await stub_engine.create_custom_session(
                USER, CustomAdventureRequest(adventure_details=adventure_payload)
            )

        assert str(exc_info.value) == "Validation failed: Adventure title is required"
        assert [issue.code for issue in exc_info.value.validation.errors] == ["TITLE_REQUIRED"]

    @pytest.mark.asyncio
    async def test_custom_session_sanitises_text(self, stub_engine, adventure_payload):
        adventure_payload["title"] = "The <Sunken> Library"

        start = await stub_engine.create_custom_session(
            USER, CustomAdventureRequest(adventure_details=adventure_payload)
        )

        assert start.session.custom_adventure.original_details.title == "The Sunken Library"

    @pytest.mark.asyncio
    async def test_prompt_session(self, stub_engine):
        start = await stub_engine.create_session_from_prompt(
            USER, PromptAdventureRequest(prompt="A valley of watchtowers")
        )

        assert start.session.custom_adventure.original_details.title == "The Stub Expedition"
        assert start.session.world_state.inventory == []

    @pytest.mark.asyncio
    async def test_prompt_session_falls_back_on_invalid_adventure(self, stub_engine):
        stub_engine.narrator.generate_adventure = AsyncMock(
            return_value=(validate_adventure({"title": "X"}), "strict")
        )

        start = await stub_engine.create_session_from_prompt(
            USER, PromptAdventureRequest(prompt="anything")
        )

        assert start.session.custom_adventure.original_details.title == "Default Adventure"


class TestProcessTurn:
    """Tests for TurnEngine.process_turn."""

    @pytest.mark.asyncio
    async def test_stub_turn(self, stub_engine, store):
        start = await stub_engine.create_session(USER, NewGameRequest(genre="fantasy"))
        session_id = start.session.session_id

        outcome = await stub_engine.process_turn(session_id, USER, "  I look   around ")

        turn = outcome.turn
        assert turn.turn_number == 1
        assert turn.player_input == "I look around"
        assert turn.quick_actions == ["Look around", "Continue", "Check inventory"]
        assert turn.image_url == STUB_IMAGE_URL
        assert outcome.processing_time_ms >= 0

        stored = await store.load_session(session_id, USER)
        assert len(stored.turn_history) == 2
        assert stored.metadata.total_turns == 2

    @pytest.mark.asyncio
    async def test_inventory_gain_is_reported(self, stub_engine, store):
        """A reply adding a sword shows up in the diff and the new snapshot."""
        start = await stub_engine.create_session(USER, NewGameRequest(genre="fantasy"))
        stub_engine.narrator.generate = AsyncMock(return_value=narration(inventory=["sword"]))

        outcome = await stub_engine.process_turn(start.session.session_id, USER, "I pick up the sword")

        assert outcome.world_state_changes.inventory_changes.added == ["sword"]
        assert outcome.world_state_changes.location is None
        assert outcome.turn.world_state_snapshot.inventory == ["sword"]
        assert outcome.turn.processing_metadata.tokens_used == 120

        stored = await store.load_session(start.session.session_id, USER)
        assert stored.world_state.inventory == ["sword"]
        assert start.prologue.world_state_snapshot.inventory == []

    @pytest.mark.asyncio
    async def test_history_window_passed_to_narrator(self, stub_engine):
        start = await stub_engine.create_session(USER, NewGameRequest(genre="fantasy"))
        session_id = start.session.session_id
        for i in range(6):
            await stub_engine.process_turn(session_id, USER, f"step {i}")

        stub_engine.narrator.generate = AsyncMock(return_value=narration())
        await stub_engine.process_turn(session_id, USER, "step 6")

        context = stub_engine.narrator.generate.await_args.args[0]
        assert [turn.turn_number for turn in context.recent_history] == [2, 3, 4, 5, 6]

    @pytest.mark.asyncio
    async def test_custom_turn_tracks_progress(self, stub_engine, store, adventure_payload):
        start = await stub_engine.create_custom_session(
            USER, CustomAdventureRequest(adventure_details=adventure_payload)
        )
        stub_engine.narrator.generate = AsyncMock(return_value=narration(
            location="The Reading Vault",
            flags={"vault_objective": "complete"},
        ))

        outcome = await stub_engine.process_turn(start.session.session_id, USER, "I dive into the vault")

        assert outcome.world_state_changes.location == "The Reading Vault"
        assert outcome.world_state_changes.flags_updated == {"vault_objective": "complete"}

        context = stub_engine.narrator.generate.await_args.args[0]
        assert context.adventure_details.title == "The Sunken Library"

        stored = await store.load_session(start.session.session_id, USER)
        adaptive = stored.custom_adventure.adaptive_elements
        assert adaptive.discovered_locations == ["The Reading Vault"]
        assert adaptive.completed_objectives == ["vault_objective"]

    @pytest.mark.asyncio
    async def test_unknown_session(self, stub_engine):
        with pytest.raises(SessionNotFoundError, match="Game session not found"):
            await stub_engine.process_turn("session_missing", USER, "hello")

    @pytest.mark.asyncio
    async def test_other_users_session_not_found(self, stub_engine):
        start = await stub_engine.create_session(USER, NewGameRequest(genre="fantasy"))

        with pytest.raises(SessionNotFoundError):
            await stub_engine.process_turn(start.session.session_id, "intruder", "hello")

    @pytest.mark.asyncio
    async def test_invalid_input_checked_before_loading(self, stub_engine):
        with pytest.raises(InvalidPlayerInputError):
            await stub_engine.process_turn("session_missing", USER, "")

    @pytest.mark.asyncio
    async def test_turn_limit(self, stub_engine, store):
        engine = TurnEngine(
            store=store,
            narrator=stub_engine.narrator,
            illustrator=stub_engine.illustrator,
            moderation=stub_engine.moderation,
            max_turns_per_session=2,
        )
        start = await engine.create_session(USER, NewGameRequest(genre="fantasy"))
        await engine.process_turn(start.session.session_id, USER, "one")

        with pytest.raises(TurnLimitReachedError, match="Maximum turns reached"):
            await engine.process_turn(start.session.session_id, USER, "two")

    @pytest.mark.asyncio
    async def test_flagged_input_with_safety_filter(self, stub_engine, store):
        start = await stub_engine.create_session(USER, NewGameRequest(genre="horror", safety_filter=True))
        stub_engine.moderation.moderate = AsyncMock(return_value=True)
        stub_engine.narrator.generate = AsyncMock(return_value=narration())

        with pytest.raises(ContentFlaggedError):
            await stub_engine.process_turn(start.session.session_id, USER, "something awful")

        stub_engine.narrator.generate.assert_not_awaited()
        stored = await store.load_session(start.session.session_id, USER)
        assert len(stored.turn_history) == 1

    @pytest.mark.asyncio
    async def test_moderation_skipped_without_safety_filter(self, stub_engine):
        start = await stub_engine.create_session(USER, NewGameRequest(genre="horror"))
        stub_engine.moderation.moderate = AsyncMock(return_value=True)
        stub_engine.narrator.generate = AsyncMock(return_value=narration())

        outcome = await stub_engine.process_turn(start.session.session_id, USER, "something awful")

        assert outcome.turn.turn_number == 1
        # Image prompt moderation still applies, so the illustration is withheld
        assert outcome.turn.image_url == ""
        assert outcome.turn.image_error.error_type == "unknown"


class TestSavesAndLoads:
    @pytest.mark.asyncio
    async def test_save_and_list(self, stub_engine):
        start = await stub_engine.create_session(USER, NewGameRequest(genre="fantasy"))

        saved = await stub_engine.save_game(USER, start.session.session_id, " Before the vault ")

        assert saved.save_id.startswith("save_")
        assert saved.save_name == "Before the vault"
        assert saved.turn_count == 1
        assert saved.preview_image == STUB_IMAGE_URL
        assert saved.session_snapshot["session_id"] == start.session.session_id

        saves = await stub_engine.list_saved_games(USER)
        assert [save.save_id for save in saves] == [saved.save_id]
        assert await stub_engine.list_saved_games("user-2") == []

    @pytest.mark.asyncio
    async def test_duplicate_save_name(self, stub_engine):
        start = await stub_engine.create_session(USER, NewGameRequest(genre="fantasy"))
        await stub_engine.save_game(USER, start.session.session_id, "slot 1")

        with pytest.raises(DuplicateSaveError, match="already exists"):
            await stub_engine.save_game(USER, start.session.session_id, "slot 1")

    @pytest.mark.asyncio
    async def test_save_unknown_session(self, stub_engine):
        with pytest.raises(SessionNotFoundError):
            await stub_engine.save_game(USER, "session_missing", "slot 1")

    @pytest.mark.asyncio
    async def test_load_game_updates_last_played(self, stub_engine):
        start = await stub_engine.create_session(USER, NewGameRequest(genre="fantasy"))

        loaded = await stub_engine.load_game(start.session.session_id, USER)

        assert loaded.metadata.last_played >= start.session.metadata.last_played
        assert len(loaded.turn_history) == 1


class TestTemplates:
    """Tests for saving adventures as templates and starting from them."""

    @pytest.mark.asyncio
    async def test_template_lifecycle(self, stub_engine, store, adventure_payload):
        start = await stub_engine.create_custom_session(
            USER, CustomAdventureRequest(adventure_details=adventure_payload)
        )

        template = await stub_engine.save_adventure_as_template(
            USER, start.adventure_id, is_public=True, tags=["heist"]
        )

        assert template.template_id == start.adventure_id
        assert template.is_public
        assert template.tags == ["heist"]

        listed = await stub_engine.list_templates()
        assert [t.template_id for t in listed] == [start.adventure_id]
        assert listed[0].usage_count == 1

        second = await stub_engine.create_session_from_template(
            "user-2", start.adventure_id, TemplateGameRequest(image_style="painterly")
        )

        assert second.session.user_id == "user-2"
        assert second.adventure_id != start.adventure_id
        assert second.session.metadata.image_style == "painterly"
        assert second.session.custom_adventure.original_details.title == "The Sunken Library"

        listed = await stub_engine.list_templates()
        assert listed[0].usage_count == 2

    @pytest.mark.asyncio
    async def test_private_template_not_listed(self, stub_engine, adventure_payload):
        start = await stub_engine.create_custom_session(
            USER, CustomAdventureRequest(adventure_details=adventure_payload)
        )

        await stub_engine.save_adventure_as_template(USER, start.adventure_id)

        assert await stub_engine.list_templates() == []

    @pytest.mark.asyncio
    async def test_only_owner_can_save_template(self, stub_engine, adventure_payload):
        start = await stub_engine.create_custom_session(
            USER, CustomAdventureRequest(adventure_details=adventure_payload)
        )

        with pytest.raises(AdventureNotFoundError, match="Adventure not found"):
            await stub_engine.save_adventure_as_template("intruder", start.adventure_id)

    @pytest.mark.asyncio
    async def test_non_template_cannot_start_session(self, stub_engine, adventure_payload):
        start = await stub_engine.create_custom_session(
            USER, CustomAdventureRequest(adventure_details=adventure_payload)
        )

        with pytest.raises(AdventureNotFoundError, match="Template not found"):
            await stub_engine.create_session_from_template(USER, start.adventure_id, TemplateGameRequest())

        with pytest.raises(AdventureNotFoundError):
            await stub_engine.create_session_from_template(USER, "adv_missing", TemplateGameRequest())
