"""
Consultation chat worker tests

Publishing order on vet_chat:{consultation_id}, cancel flags and the task
body, with Redis replaced by an in-memory recorder.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from conftest import LITERATURE_RESULT, RecordingDispatcher, ScriptedModelClient, text_response, tool_response
from vet_agent import AgentLoop
from vet_chat_tasks import vet_chat_tasks as tasks

QUESTION = [{"role": "user", "content": "Dose of maropitant for a 10 kg dog?"}]


class FakePubSub:
    def __init__(self):
        self.channels = []
        self.unsubscribed = []
        self.closed = False
        self.messages = asyncio.Queue()

    async def subscribe(self, channel):
        self.channels.append(channel)

    async def unsubscribe(self, channel):
        self.unsubscribed.append(channel)

    async def aclose(self):
        self.closed = True

    async def listen(self):
        while True:
            yield await self.messages.get()


class FakeRedis:
    def __init__(self, values=None):
        self.values = dict(values or {})
        self.published = []
        self.deleted = []
        self.pubsubs = []

    def pubsub(self):
        ps = FakePubSub()
        self.pubsubs.append(ps)
        return ps

    async def get(self, key):
        return self.values.get(key)

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    async def delete(self, *keys):
        self.deleted.extend(keys)
        for k in keys:
            self.values.pop(k, None)

    def envelopes(self):
        return [json.loads(m) for _, m in self.published if m != tasks.END_OF_STREAM]


def _agent(responses, dispatcher=None):
    return AgentLoop(ScriptedModelClient(responses), dispatcher or RecordingDispatcher(), model="test-model")


class TestCancelFlags:
    def test_flag_keys(self):
        assert tasks._cancel_flag_keys("c1", "t1") == ["vet_chat:c1:cancelled:t1", "vet_chat:c1:cancelled:any"]
        assert tasks._cancel_flag_keys("c1", None) == ["vet_chat:c1:cancelled:any"]

    @pytest.mark.asyncio
    async def test_sticky_flag_sets_event_immediately(self):
        r = FakeRedis({"vet_chat:c1:cancelled:any": "1"})
        ev, listener = await tasks._make_cancel_event_chat(r, "c1", "t1")
        assert ev.is_set()
        assert listener is None
        assert r.pubsubs == []

    @pytest.mark.asyncio
    async def test_control_message_sets_event_and_releases_subscription(self):
        r = FakeRedis()
        ev, listener = await tasks._make_cancel_event_chat(r, "c1", "t1")
        pubsub = r.pubsubs[0]
        assert pubsub.channels == ["vet_chat:c1:control"]

        await pubsub.messages.put({"type": "message", "data": json.dumps({"event": "cancel", "data": {"turn_id": "t2"}})})
        await pubsub.messages.put({"type": "message", "data": json.dumps({"event": "cancel", "data": {"turn_id": "t1"}})})
        await asyncio.wait_for(ev.wait(), timeout=1)
        await listener
        assert pubsub.unsubscribed == ["vet_chat:c1:control"]
        assert pubsub.closed

    @pytest.mark.asyncio
    async def test_stop_listener_releases_idle_subscription(self):
        r = FakeRedis()
        ev, listener = await tasks._make_cancel_event_chat(r, "c1", "t1")
        await tasks._stop_listener(listener)
        assert listener.done()
        assert not ev.is_set()
        assert r.pubsubs[0].unsubscribed == ["vet_chat:c1:control"]
        assert r.pubsubs[0].closed

    @pytest.mark.asyncio
    async def test_clear_only_removes_any_flag(self):
        r = FakeRedis({"vet_chat:c1:cancelled:any": "1"})
        await tasks._clear_cancel_flags(r, "c1")
        assert r.deleted == ["vet_chat:c1:cancelled:any"]


class TestStreamAgentToChannel:
    @pytest.mark.asyncio
    async def test_events_published_in_order(self):
        r = FakeRedis()
        agent = _agent(
            [tool_response(("knowledge_search", {"query": "maropitant"})), text_response("1 mg/kg SC [1].")],
            RecordingDispatcher({"knowledge_search": LITERATURE_RESULT}),
        )
        summary = await tasks.stream_agent_to_channel(r, "c1", QUESTION, agent_loop=agent)

        assert {ch for ch, _ in r.published} == {"vet_chat:c1"}
        events = [e["event"] for e in r.envelopes()]
        assert events == ["tool_call", "text_delta", "text_delta", "text_delta", "citations", "tool_calls", "done"]
        assert summary == {"status": "done", "token_usage": {"inputTokens": 30, "outputTokens": 15}, "chunks": 3}

    @pytest.mark.asyncio
    async def test_cancelled_run(self):
        r = FakeRedis()
        cancel = asyncio.Event()
        cancel.set()
        summary = await tasks.stream_agent_to_channel(
            r, "c1", QUESTION, agent_loop=_agent([text_response("never")]), cancel_event=cancel,
        )
        assert summary["status"] == "cancelled"
        assert r.envelopes() == [{"event": "error", "data": "cancelled"}]

    @pytest.mark.asyncio
    async def test_mode_string_is_accepted(self):
        r = FakeRedis()
        agent = _agent([text_response("S: O: A: P:")])
        summary = await tasks.stream_agent_to_channel(r, "c1", QUESTION, agent_loop=agent, mode="soap_structure")
        assert summary["status"] == "done"
        assert agent.model_client.requests[0].tools is None


class TestProcessTask:
    @pytest.mark.asyncio
    async def test_full_turn(self, monkeypatch):
        r = FakeRedis({"sse:ready:vet_chat:c9": "1"})
        monkeypatch.setattr(tasks, "redis_stream", r)
        monkeypatch.setattr(tasks, "build_agent_loop", lambda: _agent([text_response("Answer.")]))
        monkeypatch.setattr(tasks, "_make_cancel_event_chat", AsyncMock(return_value=(asyncio.Event(), None)))

        result = await tasks.process_vet_evidence_chat_task("c9", QUESTION, turn_id="turn_1")

        assert result["status"] == "done"
        assert result["turn_id"] == "turn_1"
        phases = [e["data"]["phase"] for e in r.envelopes() if e["event"] == "status"]
        assert phases == ["started", "accepted", "completed"]
        assert r.published[-1] == ("vet_chat:c9", tasks.END_OF_STREAM)

    @pytest.mark.asyncio
    async def test_cancelled_turn_clears_flags(self, monkeypatch):
        r = FakeRedis({"sse:ready:vet_chat:c9": "1"})
        cancel = asyncio.Event()
        cancel.set()
        monkeypatch.setattr(tasks, "redis_stream", r)
        monkeypatch.setattr(tasks, "build_agent_loop", lambda: _agent([text_response("never")]))
        monkeypatch.setattr(tasks, "_make_cancel_event_chat", AsyncMock(return_value=(cancel, None)))

        result = await tasks.process_vet_evidence_chat_task("c9", QUESTION, turn_id="turn_1")

        assert result["status"] == "cancelled"
        assert r.deleted == ["vet_chat:c9:cancelled:any"]
        phases = [e["data"]["phase"] for e in r.envelopes() if e["event"] == "status"]
        assert phases[-1] == "cancelled"
        assert r.published[-1][1] == tasks.END_OF_STREAM

    @pytest.mark.asyncio
    async def test_invalid_messages_still_end_stream(self, monkeypatch):
        r = FakeRedis({"sse:ready:vet_chat:c9": "1"})
        monkeypatch.setattr(tasks, "redis_stream", r)
        monkeypatch.setattr(tasks, "build_agent_loop", lambda: _agent([]))
        monkeypatch.setattr(tasks, "_make_cancel_event_chat", AsyncMock(return_value=(asyncio.Event(), None)))

        result = await tasks.process_vet_evidence_chat_task("c9", [], turn_id="turn_1")

        assert result["status"] == "error"
        phases = [e["data"]["phase"] for e in r.envelopes() if e["event"] == "status"]
        assert phases[-1] == "error"
        assert r.published[-1][1] == tasks.END_OF_STREAM

    @pytest.mark.asyncio
    async def test_completed_turn_releases_control_subscription(self, monkeypatch):
        r = FakeRedis({"sse:ready:vet_chat:c9": "1"})
        monkeypatch.setattr(tasks, "redis_stream", r)
        monkeypatch.setattr(tasks, "build_agent_loop", lambda: _agent([text_response("Answer.")]))

        result = await tasks.process_vet_evidence_chat_task("c9", QUESTION, turn_id="turn_1")

        assert result["status"] == "done"
        [pubsub] = r.pubsubs
        assert pubsub.channels == ["vet_chat:c9:control"]
        assert pubsub.unsubscribed == ["vet_chat:c9:control"]
        assert pubsub.closed
