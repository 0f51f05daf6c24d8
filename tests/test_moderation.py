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
"""Tests for ModerationClient."""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

from storyloom.services.moderation import ModerationClient


def make_client(create: AsyncMock) -> ModerationClient:
    openai_client = MagicMock()
    openai_client.moderations.create = create
    return ModerationClient(api_key="sk-test-key", client=openai_client)


def moderation_response(flagged: bool):
    result = MagicMock()
    result.flagged = flagged
    response = MagicMock()
    response.results = [result]
    return response


@pytest.mark.asyncio
async def test_flagged_text():
    client = make_client(AsyncMock(return_value=moderation_response(True)))

    assert await client.moderate("something awful") is True


@pytest.mark.asyncio
async def test_safe_text():
    create = AsyncMock(return_value=moderation_response(False))
    client = make_client(create)

    assert await client.moderate("I open the door") is False
    create.assert_awaited_once_with(input="I open the door")


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [asyncio.TimeoutError(), ConnectionError("reset")])
async def test_provider_failure_fails_open(error):
    client = make_client(AsyncMock(side_effect=error))

    assert await client.moderate("anything") is False


@pytest.mark.asyncio
async def test_stub_mode_never_flags():
    client = ModerationClient(api_key="sk-test-key", stub_mode=True)

    assert client.client is None
    assert await client.moderate("anything") is False
