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
"""Shared test fixtures for the storyloom service.

This module provides pytest fixtures for testing the storyloom service:
- test_env: Test environment variables (stub mode, metrics enabled)
- client: FastAPI TestClient running the real lifespan in stub mode
- adventure_payload: A custom adventure that passes validation
- store / stub_engine: In-memory store and a stub-mode TurnEngine

Usage:
    Run tests with pytest:
        pytest tests/
        pytest tests/test_turn_engine.py -v
"""

import copy
import os
import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch

from storyloom.metrics import disable_metrics_collector
from storyloom.services.illustration import IllustrationPipeline, ImageCache
from storyloom.services.llm_client import NarrationGenerator
from storyloom.services.moderation import ModerationClient
from storyloom.services.turn_engine import TurnEngine
from storyloom.session_store import InMemorySessionStore

ADVENTURE_PAYLOAD = {
    "title": "The Sunken Library",
    "description": "Recover a lost archive from a flooded city.",
    "setting": {
        "world_description": (
            "A drowned port city whose upper towers still rise above the tide, "
            "home to scavengers, monks and smugglers."
        ),
        "time_period": {"type": "predefined", "value": "renaissance"},
        "environment": "A flooded city of canals and towers",
        "locations": ["The Bell Tower Dock", "The Reading Vault"],
    },
    "characters": {
        "player_role": "A rogue diver for hire",
        "key_npcs": [
            {
                "id": "npc_1",
                "name": "Sister Maren",
                "description": "An archivist monk",
                "relationship": "employer",
            }
        ],
    },
    "plot": {
        "main_objective": "Retrieve the Codex of Tides",
        "secondary_goals": ["Map the vault"],
        "plot_hooks": ["A rival crew", "Rising water"],
        "victory_conditions": "Return the Codex to the monastery",
    },
    "style_preferences": {"tone": "dramatic", "complexity": "moderate", "pacing": "fast"},
}


@pytest.fixture
def test_env():
    """Fixture providing test environment variables.

    Usage:
        def test_example(test_env):
            with patch.dict(os.environ, test_env, clear=True):
                ...
    """
    return {
        "OPENAI_API_KEY": "sk-test-key-12345",
        "OPENAI_MODEL": "gpt-4",
        "OPENAI_STUB_MODE": "true",
        "SERVICE_NAME": "storyloom-test",
        "LOG_LEVEL": "INFO",
        "ENABLE_METRICS": "true",
        "IMAGE_RETRY_BASE_DELAY": "0",
    }


@pytest.fixture
def client(test_env):
    """Fixture providing a FastAPI TestClient against a stub-mode app.

    The application lifespan builds the real services in stub mode, so no
    provider calls are made.

    Usage:
        def test_new_game(client):
            response = client.post("/api/new-game", json={"genre": "fantasy"},
                                   headers={"X-User-Id": "user-1"})
    """
    with patch.dict(os.environ, test_env, clear=True):
        from storyloom.config import get_settings
        get_settings.cache_clear()

        from storyloom.main import app

        try:
            with TestClient(app) as client:
                yield client
        finally:
            get_settings.cache_clear()
            disable_metrics_collector()


@pytest.fixture
def adventure_payload():
    """A custom adventure definition that passes validation."""
    return copy.deepcopy(ADVENTURE_PAYLOAD)


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def stub_engine(store):
    """TurnEngine wired to stub-mode services and an in-memory store."""
    moderation = ModerationClient(api_key="sk-test", stub_mode=True)
    return TurnEngine(
        store=store,
        narrator=NarrationGenerator(api_key="sk-test", stub_mode=True),
        illustrator=IllustrationPipeline(
            api_key="sk-test",
            moderation=moderation,
            cache=ImageCache(),
            stub_mode=True
        ),
        moderation=moderation,
    )
