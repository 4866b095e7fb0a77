"""Tests for chat_server.services.stream_bridge."""

import pytest

from chat_server.exceptions import PersistenceError
from chat_server.models import MessageRole
from chat_server.providers.base import StreamChunk
from chat_server.services.stream_bridge import BridgeState, StreamPersistBridge

from conftest import ScriptedProvider


async def _bridge(provider, conversation_id, message_repo, citation_repo, chat_service):
    response = await provider.generate_response([], streaming=True)
    return StreamPersistBridge(
        response,
        conversation_id,
        messages=message_repo,
        citations=citation_repo,
        chat_service=chat_service,
    )


@pytest.mark.asyncio
async def test_completed_stream_persists_concatenated_message(
    provider, message_repo, citation_repo, chat_service, conversation_repo,
):
    conversation = await chat_service.create_conversation("user-1")
    bridge = await _bridge(provider, conversation.id, message_repo, citation_repo, chat_service)

    received = [chunk.text async for chunk in bridge.stream()]

    assert received == ["Hello", "World"]
    assert bridge.state is BridgeState.DONE
    assert bridge.message is not None
    assert bridge.message.content == "HelloWorld"
    assert bridge.message.token_count == 3
    assert bridge.message.role is MessageRole.ASSISTANT
    assert [m.content for m in message_repo.rows] == ["HelloWorld"]
    assert conversation_repo.rows[conversation.id].total_tokens == 3
    assert provider.closed == 1


@pytest.mark.asyncio
async def test_citations_are_saved_with_the_message(
    message_repo, citation_repo, chat_service, sample_citation,
):
    conversation = await chat_service.create_conversation("user-1")
    provider = ScriptedProvider([
        StreamChunk("Theo luật"),
        StreamChunk("", citation=sample_citation),
        StreamChunk("."),
    ])
    bridge = await _bridge(provider, conversation.id, message_repo, citation_repo, chat_service)

    chunks = [chunk async for chunk in bridge.stream()]

    assert [c.citation for c in chunks if c.citation] == [sample_citation]
    assert bridge.message.content == "Theo luật."
    assert bridge.message.citations == [sample_citation]
    assert citation_repo.rows[bridge.message.id] == [sample_citation]


@pytest.mark.asyncio
async def test_abandoned_stream_persists_nothing_and_releases_response(
    provider, message_repo, citation_repo, chat_service, conversation_repo,
):
    conversation = await chat_service.create_conversation("user-1")
    bridge = await _bridge(provider, conversation.id, message_repo, citation_repo, chat_service)

    chunks = bridge.stream()
    first = await chunks.__anext__()
    await chunks.aclose()

    assert first.text == "Hello"
    assert provider.consumed == 1
    assert provider.closed == 1
    assert message_repo.rows == []
    assert bridge.message is None
    assert conversation_repo.total_updates == []


@pytest.mark.asyncio
async def test_persistence_failure_surfaces_after_all_chunks_delivered(
    provider, message_repo, citation_repo, chat_service,
):
    conversation = await chat_service.create_conversation("user-1")
    bridge = await _bridge(provider, conversation.id, message_repo, citation_repo, chat_service)
    message_repo.fail_on_create = True

    received = []
    with pytest.raises(PersistenceError):
        async for chunk in bridge.stream():
            received.append(chunk.text)

    assert received == ["Hello", "World"]
    assert bridge.state is BridgeState.FINALIZING
    assert bridge.message is None
    assert provider.closed == 1


@pytest.mark.asyncio
async def test_source_error_propagates_without_persisting(
    message_repo, citation_repo, chat_service,
):
    conversation = await chat_service.create_conversation("user-1")

    class _Broken(ScriptedProvider):
        async def generate_response(self, messages, streaming=False):
            response = await super().generate_response(messages, streaming)

            async def _fail():
                yield StreamChunk("partial")
                raise RuntimeError("stream cut")

            response.stream = _fail()
            return response

    provider = _Broken([])
    bridge = await _bridge(provider, conversation.id, message_repo, citation_repo, chat_service)

    with pytest.raises(RuntimeError, match="stream cut"):
        async for _ in bridge.stream():
            pass

    assert message_repo.rows == []
    assert provider.closed == 1


@pytest.mark.asyncio
async def test_stream_is_single_use(provider, message_repo, citation_repo, chat_service):
    conversation = await chat_service.create_conversation("user-1")
    bridge = await _bridge(provider, conversation.id, message_repo, citation_repo, chat_service)

    async for _ in bridge.stream():
        pass

    with pytest.raises(RuntimeError):
        async for _ in bridge.stream():
            pass
    assert len(message_repo.rows) == 1


@pytest.mark.asyncio
async def test_aclose_without_iterating_releases_response(
    provider, message_repo, citation_repo, chat_service,
):
    conversation = await chat_service.create_conversation("user-1")
    bridge = await _bridge(provider, conversation.id, message_repo, citation_repo, chat_service)

    await bridge.aclose()

    assert provider.closed == 1
    assert provider.consumed == 0
    assert bridge.state is BridgeState.PENDING
