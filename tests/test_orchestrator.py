import asyncio
import base64
import time

import numpy as np
import pytest

from cueline.core.pipeline.context import InterviewPhase
from cueline.core.pipeline.debounce import DebounceConfig
from cueline.core.pipeline.orchestrator import (
    INTERRUPTED_MARKER,
    REPLAY_PROMPT,
    SESSION_CLOSED_MARKER,
    ConnectionStatus,
    OrchestratorConfig,
    SessionOrchestrator,
    SessionTerminalError,
)
from cueline.core.pipeline.priority import Priority, PriorityConfig
from cueline.data.models import ConversationTurn, TranscriptionFragment
from cueline.data.storage import SessionStore
from cueline.events import (
    AudioChunkEvent,
    ContextHint,
    HintKind,
    ResponseComplete,
    ResponseStarting,
    ResponseUpdate,
    StatusUpdate,
    VadEvent,
    VadEventKind,
)
from cueline.services.backend.base import (
    BackendConnectionClosed,
    KeySpecificError,
    TransientBackendError,
)
from cueline.services.backend.dummy import DummyBackend, DummyBackendSession


def _long_reply(prompt):
    return " ".join(["word"] * 40)


class ScriptedSession(DummyBackendSession):
    """Dummy session that fails according to its backend's script."""

    def __init__(self, backend, key):
        super().__init__(backend.reply, chunk_words=backend.chunk_words, delay=backend.delay)
        self.backend = backend
        self.key = key
        self.audio = []

    async def stream(self, prompt):
        backend = self.backend
        backend.stream_calls += 1
        if self.key in backend.bad_stream_keys:
            raise KeySpecificError(f"quota exceeded for {self.key}")
        if backend.transient_failures > 0:
            backend.transient_failures -= 1
            raise TransientBackendError("server overloaded")
        async for chunk in super().stream(prompt):
            yield chunk

    async def send_audio(self, data):
        self.audio.append(data)


class ScriptedBackend(DummyBackend):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.bad_connect_keys = set()
        self.bad_stream_keys = set()
        self.transient_failures = 0
        self.refuse_connections = False
        self.connect_keys = []
        self.stream_calls = 0

    async def connect(self, api_key, system_prompt=None, language="en-US"):
        self.connect_keys.append(api_key)
        if self.refuse_connections:
            raise BackendConnectionClosed("connection refused")
        if api_key in self.bad_connect_keys:
            raise KeySpecificError(f"invalid api key {api_key}")
        session = ScriptedSession(self, api_key)
        self.sessions.append(session)
        return session


def _orchestrator(
    backend=None, priority_config=None, store=None, on_turn_saved=None, debounce_config=None, **overrides
):
    config = OrchestratorConfig(reconnect_delay_seconds=0.0, send_retry_base_seconds=0.0, **overrides)
    orchestrator = SessionOrchestrator(
        backend or DummyBackend(),
        config,
        debounce_config=debounce_config or DebounceConfig(adaptive_enabled=False, fallback_seconds=0.01),
        priority_config=priority_config,
        store=store,
        on_turn_saved=on_turn_saved,
    )
    events = []
    orchestrator.bus.on("*", events.append)
    return orchestrator, events


def _statuses(events):
    return [event.status for event in events if isinstance(event, StatusUpdate)]


def test_send_text_streams_answer_and_saves_turn():
    orchestrator, events = _orchestrator()

    async def scenario():
        session_id = await orchestrator.initialize_session()
        assert orchestrator.status is ConnectionStatus.LIVE
        assert await orchestrator.send_text("What is binary search?")
        await orchestrator.wait_idle()
        await orchestrator.close()
        return session_id

    session_id = asyncio.run(scenario())

    assert session_id.startswith("interview-")
    [turn] = orchestrator.history.turns
    assert turn.question == "What is binary search?"
    assert turn.answer.startswith("Dummy answer for: What is binary search?")
    kinds = [type(event) for event in events if isinstance(event, (ResponseStarting, ResponseUpdate, ResponseComplete))]
    assert kinds[0] is ResponseStarting
    assert kinds[-1] is ResponseComplete
    assert ResponseUpdate in kinds
    updates = [event for event in events if isinstance(event, ResponseUpdate)]
    assert updates[-1].text == turn.answer
    assert _statuses(events)[:2] == ["connecting", "live"]
    assert orchestrator.status is ConnectionStatus.CLOSED


def test_blank_text_is_rejected():
    backend = DummyBackend()
    orchestrator, _ = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session()
        result = await orchestrator.send_text("   ")
        await orchestrator.close()
        return result

    assert asyncio.run(scenario()) is False
    assert backend.sessions[0].prompts == []


def test_questions_queue_behind_in_flight_exchange():
    backend = DummyBackend(chunk_words=2, delay=0.01)
    orchestrator, _ = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session()
        await orchestrator.send_text("What is a heap?")
        assert orchestrator.responding
        await orchestrator.send_text("Tell me about yourself")
        assert orchestrator.queue == ["Tell me about yourself"]
        await orchestrator.wait_idle()
        await orchestrator.close()

    asyncio.run(scenario())

    prompts = backend.sessions[0].prompts
    assert len(prompts) == 2
    assert prompts[1].endswith("Tell me about yourself")
    assert [turn.question for turn in orchestrator.history.turns] == ["What is a heap?", "Tell me about yourself"]


def test_recent_duplicate_is_not_dispatched_again():
    backend = DummyBackend()
    orchestrator, _ = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session()
        await orchestrator.send_text("What is binary search?")
        await orchestrator.wait_idle()
        await orchestrator.send_text("what is binary search")
        await orchestrator.wait_idle()
        await orchestrator.close()

    asyncio.run(scenario())

    assert len(backend.sessions[0].prompts) == 1
    assert len(orchestrator.history) == 1


def test_urgent_clarification_interrupts_current_answer():
    backend = DummyBackend(reply=_long_reply, chunk_words=1, delay=0.02)
    orchestrator, events = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session()
        orchestrator.set_phase(InterviewPhase.TECHNICAL)
        await orchestrator.send_text("Explain how a B-tree works in detail")
        await asyncio.sleep(0.1)
        orchestrator._on_vad_event(
            VadEvent(
                kind=VadEventKind.SPEECH_END,
                frame_index=10,
                energy=0.0,
                silence_frames=8,
                hint=ContextHint(kind=HintKind.CLARIFICATION, confidence=0.95),
            )
        )
        await orchestrator.send_text("Wait, what do you mean?")
        await orchestrator.wait_idle()
        await orchestrator.close()

    asyncio.run(scenario())

    first, second = orchestrator.history.turns
    assert first.question == "Explain how a B-tree works in detail"
    assert first.answer.endswith(INTERRUPTED_MARKER)
    assert second.question == "Wait, what do you mean?"
    assert not second.answer.endswith(INTERRUPTED_MARKER)
    assert orchestrator.priority.metrics()["successful_interruptions"] == 1


def test_timeout_saves_partial_and_requeues_question():
    backend = DummyBackend(reply=_long_reply, chunk_words=1, delay=0.03)
    priority_config = PriorityConfig(timeouts={priority: 0.1 for priority in Priority})
    orchestrator, events = _orchestrator(backend, priority_config=priority_config)

    async def scenario():
        await orchestrator.initialize_session()
        await orchestrator.send_text("What is a heap?")
        await orchestrator.wait_idle()
        queued = list(orchestrator.queue)
        await orchestrator.close()
        return queued

    queued = asyncio.run(scenario())

    assert queued == ["What is a heap?"]
    [turn] = orchestrator.history.turns
    assert turn.answer.endswith(INTERRUPTED_MARKER)
    assert turn.interrupted
    assert "timeout" in _statuses(events)


def test_timed_out_question_is_retried_with_next_dispatch():
    replies = iter([_long_reply(None)])
    backend = DummyBackend(reply=lambda prompt: next(replies, "Short answer."), chunk_words=1, delay=0.03)
    priority_config = PriorityConfig(timeouts={priority: 0.2 for priority in Priority})
    orchestrator, _ = _orchestrator(backend, priority_config=priority_config)

    async def scenario():
        await orchestrator.initialize_session()
        await orchestrator.send_text("What is a heap?")
        await orchestrator.wait_idle()
        await orchestrator.send_text("Tell me about yourself")
        await orchestrator.wait_idle()
        await orchestrator.close()

    asyncio.run(scenario())

    prompts = backend.sessions[0].prompts
    assert len(prompts) == 2
    assert "What is a heap?" in prompts[-1]
    assert prompts[-1].endswith("Tell me about yourself")
    partial, retried = orchestrator.history.turns
    assert partial.interrupted
    assert retried.question == "What is a heap? Tell me about yourself"
    assert retried.answer == "Short answer."
    assert not retried.interrupted


def test_debounce_coalesces_transcription_burst():
    backend = DummyBackend()
    orchestrator, _ = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session()
        orchestrator.handle_transcription(TranscriptionFragment(text="ignored partial", is_final=False))
        orchestrator.handle_transcription("What is")
        orchestrator.handle_transcription("binary search?")
        await asyncio.sleep(0.05)
        await orchestrator.wait_idle()
        await orchestrator.close()

    asyncio.run(scenario())

    assert backend.sessions[0].prompts == ["What is binary search?"]


def test_incomplete_speech_accumulates_until_complete():
    backend = DummyBackend()
    orchestrator, _ = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session()
        orchestrator.handle_transcription("so tell me about")
        await asyncio.sleep(0.05)
        accumulated = orchestrator.accumulator
        orchestrator.handle_transcription("your last project.")
        await asyncio.sleep(0.05)
        await orchestrator.wait_idle()
        await orchestrator.close()
        return accumulated

    accumulated = asyncio.run(scenario())

    assert accumulated == "so tell me about"
    assert backend.sessions[0].prompts == ["so tell me about your last project."]


def test_speaker_detection_disabled_discards_speaker_input():
    backend = ScriptedBackend()
    orchestrator, events = _orchestrator(backend, speaker_detection_enabled=False)
    payload = (np.full(480 * 3, 0.1) * 32767).astype("<i2").tobytes()
    chunk = AudioChunkEvent(data=base64.b64encode(b"\x01\x00").decode("ascii"), sample_count=1, energy=0.1, is_speaking=True)

    async def scenario():
        await orchestrator.initialize_session()
        orchestrator.handle_transcription("What is binary search?")
        await asyncio.sleep(0.05)
        accepted = orchestrator.send_audio_frame(payload)
        orchestrator._on_vad_event(chunk)
        await asyncio.sleep(0.02)
        muted_audio = list(backend.sessions[0].audio)

        orchestrator.set_speaker_detection_enabled(True)
        orchestrator._on_vad_event(chunk)
        orchestrator.handle_transcription("What is binary search?")
        await asyncio.sleep(0.05)
        await orchestrator.wait_idle()
        await orchestrator.close()
        return accepted, muted_audio

    accepted, muted_audio = asyncio.run(scenario())

    assert accepted is False
    assert muted_audio == []
    assert backend.sessions[0].audio == [b"\x01\x00"]
    assert backend.sessions[0].prompts == ["What is binary search?"]
    assert not any(isinstance(event, VadEvent) for event in events)


def test_disabling_speaker_detection_drops_pending_fragments():
    backend = DummyBackend()
    orchestrator, _ = _orchestrator(
        backend, debounce_config=DebounceConfig(adaptive_enabled=False, fallback_seconds=0.05)
    )

    async def scenario():
        await orchestrator.initialize_session()
        orchestrator.handle_transcription("What is binary search?")
        orchestrator.set_speaker_detection_enabled(False)
        await asyncio.sleep(0.1)
        pending = orchestrator.debounce.pending_text
        await orchestrator.close()
        return pending

    assert asyncio.run(scenario()) == ""
    assert backend.sessions[0].prompts == []
    assert orchestrator.accumulator == ""


def test_inactivity_clears_accumulated_context():
    backend = DummyBackend()
    orchestrator, _ = _orchestrator(backend, context_reset_seconds=0.1)

    async def scenario():
        await orchestrator.initialize_session()
        orchestrator.handle_transcription("so tell me about")
        await asyncio.sleep(0.03)
        accumulated = orchestrator.accumulator
        await asyncio.sleep(0.15)
        cleared = orchestrator.accumulator
        orchestrator.handle_transcription("your last project.")
        await asyncio.sleep(0.05)
        await orchestrator.wait_idle()
        await orchestrator.close()
        return accumulated, cleared

    assert asyncio.run(scenario()) == ("so tell me about", "")
    assert backend.sessions[0].prompts == ["your last project."]
    assert orchestrator.queue == []


def test_completion_matching_recent_turn_is_not_saved_twice():
    backend = DummyBackend(chunk_words=1, delay=0.02)
    orchestrator, events = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session()
        await orchestrator.send_text("What is a heap?")
        orchestrator.history.append(
            ConversationTurn(timestamp=time.time(), question="What is a heap?", answer="Answered already.")
        )
        await orchestrator.wait_idle()
        await orchestrator.close()

    asyncio.run(scenario())

    [turn] = orchestrator.history.turns
    assert turn.answer == "Answered already."
    assert any(isinstance(event, ResponseComplete) for event in events)


def test_critical_context_is_preserved_in_prompt():
    backend = DummyBackend()
    orchestrator, _ = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session()
        orchestrator.add_critical_context("Candidate prefers Python")
        await orchestrator.send_text("Can you explain that again?")
        await orchestrator.wait_idle()
        await orchestrator.close()

    asyncio.run(scenario())

    [prompt] = backend.sessions[0].prompts
    assert "Candidate prefers Python" in prompt
    assert prompt.endswith("Can you explain that again?")


def test_dropped_connection_reconnects_and_replays_transcript():
    backend = ScriptedBackend()
    orchestrator, events = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session()
        await orchestrator.send_text("What is binary search?")
        await orchestrator.wait_idle()
        await backend.sessions[0].close()
        await orchestrator.send_text("How does a heap work?")
        await orchestrator.wait_idle()
        status = orchestrator.status
        await orchestrator.close()
        return status

    assert asyncio.run(scenario()) is ConnectionStatus.LIVE

    assert len(backend.sessions) == 2
    assert backend.sessions[1].prompts[0].startswith(REPLAY_PROMPT)
    assert backend.sessions[1].prompts[0].endswith("What is binary search?")
    assert orchestrator.history.turns[-1].suppressed
    assert orchestrator.history.transcript() == ["What is binary search?"]
    assert sum(isinstance(event, ResponseStarting) for event in events) == 2
    statuses = _statuses(events)
    assert "disconnected" in statuses
    assert "reconnecting" in statuses
    assert orchestrator.reconnect_attempts == 0


def test_exhausted_reconnection_closes_session():
    backend = ScriptedBackend()
    orchestrator, events = _orchestrator(backend, reconnect_max_attempts=3)

    async def scenario():
        await orchestrator.initialize_session()
        backend.refuse_connections = True
        await backend.sessions[0].close()
        await orchestrator.send_text("What is binary search?")
        await orchestrator.wait_idle()
        with pytest.raises(SessionTerminalError):
            await orchestrator.send_text("Are you there?")
        with pytest.raises(SessionTerminalError):
            await orchestrator.attempt_reconnection()
        await orchestrator.close()

    asyncio.run(scenario())

    assert orchestrator.status is ConnectionStatus.CLOSED
    assert orchestrator.reconnect_attempts == 3
    assert _statuses(events).count("reconnecting") == 3
    terminal = [event for event in events if isinstance(event, StatusUpdate) and event.terminal]
    assert terminal and terminal[-1].status == "closed"


def test_connect_rotates_past_rejected_keys():
    backend = ScriptedBackend()
    backend.bad_connect_keys = {"k1"}
    orchestrator, _ = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session(keys=["k1", "k2"])
        await orchestrator.close()

    asyncio.run(scenario())

    assert backend.connect_keys == ["k1", "k2"]
    assert orchestrator.keys.summary()["failed_keys"] == [1]


def test_initialize_fails_when_every_key_is_rejected():
    backend = ScriptedBackend()
    backend.bad_connect_keys = {"k1", "k2"}
    orchestrator, events = _orchestrator(backend)

    with pytest.raises(SessionTerminalError):
        asyncio.run(orchestrator.initialize_session(keys=["k1", "k2"]))

    assert orchestrator.status is ConnectionStatus.CLOSED
    assert events[-1].terminal


def test_key_failure_during_stream_rotates_and_retries():
    backend = ScriptedBackend()
    backend.bad_stream_keys = {"k1"}
    orchestrator, _ = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session(keys=["k1", "k2"])
        await orchestrator.send_text("What is a trie?")
        await orchestrator.wait_idle()
        await orchestrator.close()

    asyncio.run(scenario())

    assert backend.connect_keys == ["k1", "k2"]
    assert backend.sessions[0].closed
    [turn] = orchestrator.history.turns
    assert turn.answer.startswith("Dummy answer for: What is a trie?")


def test_transient_errors_are_retried():
    backend = ScriptedBackend()
    backend.transient_failures = 2
    orchestrator, _ = _orchestrator(backend, send_retries=3)

    async def scenario():
        await orchestrator.initialize_session()
        await orchestrator.send_text("What is a trie?")
        await orchestrator.wait_idle()
        await orchestrator.close()

    asyncio.run(scenario())

    assert backend.stream_calls == 3
    assert len(orchestrator.history) == 1


def test_persistent_transient_errors_report_error_status():
    backend = ScriptedBackend()
    backend.transient_failures = 10
    orchestrator, events = _orchestrator(backend, send_retries=2)

    async def scenario():
        await orchestrator.initialize_session()
        await orchestrator.send_text("What is a trie?")
        await orchestrator.wait_idle()
        status = orchestrator.status
        await orchestrator.close()
        return status

    assert asyncio.run(scenario()) is ConnectionStatus.LIVE
    assert backend.stream_calls == 3
    assert "error" in _statuses(events)
    assert len(orchestrator.history) == 0
    assert orchestrator.priority.current is None


def test_close_marks_in_flight_answer():
    backend = DummyBackend(reply=_long_reply, chunk_words=1, delay=0.02)
    orchestrator, _ = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session()
        await orchestrator.send_text("Explain consistent hashing")
        await asyncio.sleep(0.1)
        await orchestrator.close()
        with pytest.raises(SessionTerminalError):
            await orchestrator.send_text("Hello again")

    asyncio.run(scenario())

    [turn] = orchestrator.history.turns
    assert turn.answer.endswith(SESSION_CLOSED_MARKER)
    assert backend.sessions[0].closed


def test_audio_frames_produce_vad_events():
    orchestrator, events = _orchestrator()
    speech = np.concatenate([np.full(480 * 3, 0.1), np.zeros(480 * 10)])
    payload = (speech * 32767).astype("<i2").tobytes()

    async def scenario():
        await orchestrator.initialize_session()
        assert orchestrator.send_audio_frame(payload)
        assert not orchestrator.send_audio_frame(b"\x00")
        assert not orchestrator.send_audio_frame(b"")
        for _ in range(100):
            kinds = [event.kind for event in events if isinstance(event, VadEvent)]
            if VadEventKind.SPEECH_END in kinds:
                break
            await asyncio.sleep(0.02)
        await orchestrator.close()

    asyncio.run(scenario())

    kinds = [event.kind for event in events if isinstance(event, VadEvent)]
    assert kinds == [VadEventKind.SPEECH_START, VadEventKind.SPEECH_END]


def test_partial_audio_payloads_are_carried_into_whole_frames():
    orchestrator, events = _orchestrator()
    half_frame = (np.full(240, 0.1) * 32767).astype("<i2").tobytes()

    async def scenario():
        await orchestrator.initialize_session()
        for _ in range(20):
            assert orchestrator.send_audio_frame(half_frame)
        remainder = orchestrator._audio_remainder.size
        assert orchestrator.send_audio_frame(half_frame[:200])
        carried = orchestrator._audio_remainder.size
        for _ in range(100):
            if any(isinstance(event, VadEvent) for event in events):
                break
            await asyncio.sleep(0.02)
        await orchestrator.close()
        return remainder, carried

    assert asyncio.run(scenario()) == (0, 100)
    kinds = [event.kind for event in events if isinstance(event, VadEvent)]
    assert VadEventKind.SPEECH_START in kinds


def test_audio_requires_running_session():
    orchestrator, _ = _orchestrator()

    with pytest.raises(RuntimeError):
        orchestrator.send_audio_frame(b"\x00\x00")


def test_turns_and_metrics_are_persisted(tmp_path):
    store = SessionStore(tmp_path / "cueline.db")
    saved = []
    orchestrator, _ = _orchestrator(store=store, on_turn_saved=lambda sid, turn, turns: saved.append((sid, turn)))

    async def scenario():
        session_id = await orchestrator.initialize_session(profile="backend", language="en-GB")
        await orchestrator.send_text("What is a trie?")
        await orchestrator.wait_idle()
        await orchestrator.close()
        return session_id

    session_id = asyncio.run(scenario())

    session = store.fetch_session(session_id)
    assert session.profile == "backend"
    assert session.language == "en-GB"
    assert [turn.question for turn in store.fetch_turns(session_id)] == ["What is a trie?"]
    events = [metric["event"] for metric in store.fetch_metrics(session_id)]
    assert events == ["request_start", "first_token", "response_quality"]
    assert saved[0][0] == session_id


def test_reset_session_clears_conversation():
    backend = DummyBackend()
    orchestrator, events = _orchestrator(backend)

    async def scenario():
        await orchestrator.initialize_session()
        await orchestrator.send_text("What is a trie?")
        await orchestrator.wait_idle()
        orchestrator.handle_transcription("so tell me")
        orchestrator.reset_session()
        pending = orchestrator.debounce.pending_text
        await orchestrator.send_image(b"\x89PNG")
        await orchestrator.close()
        return pending

    assert asyncio.run(scenario()) == ""
    assert len(orchestrator.history) == 0
    assert "reset" in _statuses(events)
    assert backend.sessions[0].images == [b"\x89PNG"]
    assert orchestrator.phase is InterviewPhase.WARMUP
