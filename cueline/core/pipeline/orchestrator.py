"""Session orchestrator owning the live backend connection and the question flow."""

from __future__ import annotations

import asyncio
import base64
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union

import numpy as np

from ...config import Settings, get_settings
from ...data.history import ConversationHistory
from ...data.models import ConversationTurn, InterviewSession, TranscriptionFragment, TurnKind
from ...data.storage import SessionStore
from ...events import (
    AudioChunkEvent,
    ContextHint,
    Event,
    EventBus,
    HintKind,
    ResponseComplete,
    ResponseStarting,
    ResponseUpdate,
    StatsSample,
    StatusUpdate,
    VadEvent,
    VadEventKind,
)
from ...logging import get_logger
from ...services.backend.base import (
    BackendConnectionClosed,
    BackendError,
    BackendSession,
    GenerationBackend,
    KeySpecificError,
    TransientBackendError,
)
from ...services.keys import ApiKeyRing, NoApiKeyError
from ...utils.audio import decode_pcm16, iter_frames
from ...utils.text import sanitize_text, word_count
from ..audio.vad import VadConfig, VadSegmenter
from ..audio.worker import VadWorker
from .completeness import hit_buffer_ceiling, is_semantically_complete
from .context import ContextBoundaryManager, InterviewPhase
from .debounce import AdaptiveDelayCalculator, DebounceConfig, DebounceTimer
from .followup import FollowUpClassifier, FollowUpType
from .priority import (
    ExchangeCancelledError,
    ExchangeTimeoutError,
    InFlightExchange,
    PriorityConfig,
    PriorityManager,
    RequestAnalysis,
)

LOGGER = get_logger(__name__)

INTERRUPTED_MARKER = "[interrupted]"
SESSION_CLOSED_MARKER = "[session-closed]"
REPLAY_PROMPT = "Till now all these questions were asked in the interview, provide answer for the last question in this list:"
SESSION_CLOSED_REASON = "session closed"
QUALITY_WORDS = 150
METRICS_LOG_SIZE = 500

TurnCallback = Callable[[str, ConversationTurn, List[ConversationTurn]], None]


class InvalidInputError(ValueError):
    """Raised for empty text or malformed audio handed to the orchestrator."""


class SessionTerminalError(RuntimeError):
    """Raised by commands once the session reached the terminal ``Closed`` state."""


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class OrchestratorConfig:
    speaker_detection_enabled: bool = True
    context_reset_seconds: float = 60.0
    debounce_duplicate_seconds: float = 10.0
    completion_duplicate_seconds: float = 15.0
    queue_duplicate_seconds: float = 20.0
    history_max_turns: int = 25
    history_preserve_turns: int = 10
    summary_max_chars: int = 800
    reconnect_max_attempts: int = 3
    reconnect_delay_seconds: float = 2.0
    send_retries: int = 3
    send_retry_base_seconds: float = 0.5
    session_prefix: str = "interview"
    profile: str = "interview"
    language: str = "en-US"
    system_prompt: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestratorConfig":
        return cls(
            speaker_detection_enabled=settings.speaker_detection_enabled,
            context_reset_seconds=settings.context_reset_seconds,
            debounce_duplicate_seconds=settings.debounce_duplicate_seconds,
            completion_duplicate_seconds=settings.completion_duplicate_seconds,
            queue_duplicate_seconds=settings.queue_duplicate_seconds,
            history_max_turns=settings.history_max_turns,
            history_preserve_turns=settings.history_preserve_turns,
            summary_max_chars=settings.summary_max_chars,
            reconnect_max_attempts=settings.reconnect_max_attempts,
            reconnect_delay_seconds=settings.reconnect_delay_seconds,
            send_retries=settings.send_retries,
            send_retry_base_seconds=settings.send_retry_base_seconds,
            session_prefix=settings.session_prefix,
            profile=settings.profile,
            language=settings.language,
            system_prompt=settings.system_prompt,
        )


class SessionOrchestrator:
    """Owns every piece of mutable state for one interview session.

    All methods except :meth:`send_audio_frame` must be called from the event
    loop that ran :meth:`initialize_session`. Audio frames are handed to a
    :class:`VadWorker` thread whose events come back through
    ``loop.call_soon_threadsafe``.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        config: Optional[OrchestratorConfig] = None,
        *,
        vad_config: Optional[VadConfig] = None,
        debounce_config: Optional[DebounceConfig] = None,
        priority_config: Optional[PriorityConfig] = None,
        bus: Optional[EventBus] = None,
        store: Optional[SessionStore] = None,
        on_turn_saved: Optional[TurnCallback] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.config = config or OrchestratorConfig()
        self.bus = bus or EventBus()
        self.store = store
        self.on_turn_saved = on_turn_saved
        self._clock = clock

        self.vad_config = vad_config or VadConfig()
        debounce_config = debounce_config or DebounceConfig(
            sample_rate=self.vad_config.sample_rate,
            frame_size=self.vad_config.frame_size,
        )
        self.calculator = AdaptiveDelayCalculator(debounce_config, clock=clock)
        self.debounce = DebounceTimer(
            self._on_debounce_fire,
            calculator=self.calculator,
            fallback_seconds=debounce_config.fallback_seconds,
        )
        self.priority = PriorityManager(priority_config)
        self.context = ContextBoundaryManager(clock=clock)
        self.followup = FollowUpClassifier(clock=clock)
        self.history = ConversationHistory(
            max_turns=self.config.history_max_turns,
            preserve_turns=self.config.history_preserve_turns,
            summary_max_chars=self.config.summary_max_chars,
            clock=clock,
        )
        self.keys = ApiKeyRing()

        self.status = ConnectionStatus.DISCONNECTED
        self.session: Optional[InterviewSession] = None
        self.speaker_detection_enabled = self.config.speaker_detection_enabled
        self.reconnect_attempts = 0
        self.accumulator = ""
        self.queue: List[str] = []
        self.metrics_log: List[Dict[str, Any]] = []
        self._audio_remainder = np.zeros(0, dtype=np.float32)

        self._backend_session: Optional[BackendSession] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[VadWorker] = None
        self._reset_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._avg_pause_frames: Optional[float] = None
        self._pending_hint: Optional[ContextHint] = None

    @classmethod
    def from_settings(
        cls,
        backend: GenerationBackend,
        settings: Optional[Settings] = None,
        **kwargs: Any,
    ) -> "SessionOrchestrator":
        settings = settings or get_settings()
        return cls(
            backend,
            OrchestratorConfig.from_settings(settings),
            vad_config=VadConfig.from_settings(settings),
            debounce_config=DebounceConfig.from_settings(settings),
            priority_config=PriorityConfig.from_settings(settings),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def session_id(self) -> Optional[str]:
        return self.session.id if self.session else None

    @property
    def responding(self) -> bool:
        return self.priority.current is not None

    @property
    def activity(self) -> str:
        return "responding" if self.responding else "idle"

    @property
    def phase(self) -> InterviewPhase:
        return self.context.phase

    # ------------------------------------------------------------------
    # Command surface
    # ------------------------------------------------------------------
    async def initialize_session(
        self,
        keys: Optional[Sequence[str]] = None,
        prompt: Optional[str] = None,
        profile: Optional[str] = None,
        language: Optional[str] = None,
    ) -> str:
        """Open a fresh backend connection and reset all session state."""

        if self._backend_session is not None or self._tasks:
            await self.close()

        self._loop = asyncio.get_running_loop()
        config = self.config
        self.session = InterviewSession(
            id=f"{config.session_prefix}-{uuid.uuid4().hex[:8]}",
            profile=profile or config.profile,
            language=language or config.language,
            created_at=self._clock(),
            system_prompt=prompt if prompt is not None else config.system_prompt,
        )
        self.keys = ApiKeyRing(keys or ())
        self.reconnect_attempts = 0
        self._reset_state()
        if self.store is not None:
            self.store.initialize()
            self.store.save_session(self.session)

        self._set_status(ConnectionStatus.CONNECTING, f"Connecting session {self.session.id}")
        try:
            await self._connect_with_rotation()
        except (BackendError, NoApiKeyError) as exc:
            LOGGER.error("Failed to open backend session: %s", exc)
            self._terminate(f"Unable to connect: {exc}")
            raise SessionTerminalError(str(exc)) from exc

        self._start_worker()
        self._set_status(ConnectionStatus.LIVE, "Session live")
        LOGGER.info("Initialised session %s (profile=%s)", self.session.id, self.session.profile)
        return self.session.id

    async def send_text(self, text: str) -> bool:
        """Queue a typed question directly, bypassing the debounce stage."""

        self._ensure_open()
        try:
            question = self._clean_text(text)
        except InvalidInputError as exc:
            LOGGER.info("Dropping text input: %s", exc)
            return False
        self.queue.append(question)
        self._dispatch_or_interrupt(question)
        return True

    def send_audio_frame(self, data: bytes) -> bool:
        """Split little-endian PCM16 bytes into frames for the VAD worker.

        Samples that do not fill a whole frame are carried over to the next
        call. Returns ``False`` when the payload is invalid or speaker
        detection is disabled.
        """

        self._ensure_open()
        try:
            samples = self._decode_audio(data)
        except InvalidInputError as exc:
            LOGGER.info("Dropping audio input: %s", exc)
            return False
        if self._worker is None:
            raise RuntimeError("Audio path is not running; initialise the session first")
        if not self.speaker_detection_enabled:
            LOGGER.debug("Speaker detection disabled; audio not processed")
            return False

        frame_size = self.vad_config.frame_size
        if self._audio_remainder.size:
            samples = np.concatenate([self._audio_remainder, samples])
        usable = samples.size - samples.size % frame_size
        self._audio_remainder = samples[usable:].copy()
        self._worker.submit_many(iter_frames(samples[:usable], frame_size))
        return True

    async def send_image(self, data: bytes, mime_type: str = "image/jpeg") -> None:
        self._ensure_open()
        if not data:
            LOGGER.info("Dropping empty image payload")
            return
        session = self._require_backend()
        await session.send_image(data, mime_type)
        LOGGER.info("Forwarded %d byte image to backend", len(data))

    def set_speaker_detection_enabled(self, enabled: bool) -> None:
        """Toggle speaker input; while disabled audio and transcriptions are discarded."""

        self.speaker_detection_enabled = bool(enabled)
        if not enabled:
            self.debounce.cancel()
            self._audio_remainder = np.zeros(0, dtype=np.float32)
        LOGGER.info("Speaker detection %s", "enabled" if enabled else "disabled")

    def add_critical_context(self, text: str) -> None:
        """Register context preserved across every context boundary."""

        self.context.add_critical_context(sanitize_text(text))

    def reset_session(self) -> None:
        """Forget conversation state while keeping the backend connection."""

        self.priority.cancel_current("session reset")
        self._reset_state()
        if self._worker is not None:
            self._worker.request_reset()
        self._emit(StatusUpdate(status="reset", message="Session state cleared"))
        LOGGER.info("Session %s reset", self.session_id)

    def handle_transcription(self, fragment: Union[TranscriptionFragment, str]) -> None:
        """Feed one speech-to-text fragment into the debounce stage."""

        self._ensure_open()
        if isinstance(fragment, str):
            fragment = TranscriptionFragment(text=fragment)
        if not fragment.is_final:
            LOGGER.debug("Ignoring non-final transcription fragment")
            return
        text = sanitize_text(fragment.text)
        if not text:
            LOGGER.info("Dropping empty transcription fragment")
            return

        self._restart_context_reset()
        delay = self.debounce.push(text, self._avg_pause_frames)
        LOGGER.debug("Debounce restarted with %.2fs delay", delay)

    def set_phase(self, phase: InterviewPhase) -> None:
        """Manually override the interview phase."""

        self.context.set_phase(phase)
        self.priority.set_phase(self.context.phase)

    async def attempt_reconnection(self) -> bool:
        """Reconnect with bounded retries, replaying the transcript on success."""

        if self.status is ConnectionStatus.CLOSED:
            raise SessionTerminalError("Session is closed; initialise a new session")
        if self.session is None:
            raise SessionTerminalError("No session has been initialised")

        config = self.config
        await self._close_backend()
        while self.reconnect_attempts < config.reconnect_max_attempts:
            self.reconnect_attempts += 1
            self._set_status(
                ConnectionStatus.RECONNECTING,
                f"Reconnection attempt {self.reconnect_attempts}/{config.reconnect_max_attempts}",
            )
            try:
                await self._connect_with_rotation()
            except NoApiKeyError as exc:
                LOGGER.error("Reconnection impossible: %s", exc)
                break
            except BackendError as exc:
                LOGGER.warning("Reconnection attempt %d failed: %s", self.reconnect_attempts, exc)
                if self.reconnect_attempts < config.reconnect_max_attempts:
                    await asyncio.sleep(config.reconnect_delay_seconds)
                continue

            self.reconnect_attempts = 0
            self._set_status(ConnectionStatus.LIVE, "Reconnected")
            await self._replay_transcript()
            self._process_queue()
            return True

        self._terminate("Reconnection attempts exhausted; start a new session")
        return False

    async def wait_idle(self) -> None:
        """Wait until no exchange task is running."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        exchange = self.priority.cancel_current(SESSION_CLOSED_REASON)
        if exchange is not None:
            LOGGER.info("Closing session with exchange %s in flight", exchange.conversation_id)
        await self.wait_idle()
        self._clear_pending()
        self._stop_worker()
        await self._close_backend()
        if self.status is not ConnectionStatus.CLOSED:
            self._set_status(ConnectionStatus.CLOSED, "Session closed")

    # ------------------------------------------------------------------
    # Debounce and queue handling
    # ------------------------------------------------------------------
    def _on_debounce_fire(self, text: str) -> None:
        if not self.speaker_detection_enabled:
            LOGGER.info("Speaker detection disabled; discarding pending input")
            return
        now = self._clock()
        if self.history.is_duplicate(text, now, self.config.debounce_duplicate_seconds):
            LOGGER.info("Skipping duplicate transcription: %s", text[:60])
            return

        self.accumulator = f"{self.accumulator} {text}".strip()
        calculator = self.calculator.config
        if not is_semantically_complete(self.accumulator, calculator.max_buffer_words, calculator.max_buffer_chars):
            LOGGER.debug("Accumulated partial question: %s", self.accumulator[:60])
            return

        question, self.accumulator = self.accumulator, ""
        self.queue.append(question)
        self._dispatch_or_interrupt(question)

    def _dispatch_or_interrupt(self, question: str) -> None:
        if self.priority.current is None:
            self._process_queue()
            return
        if self.status is not ConnectionStatus.LIVE:
            return

        analysis = self.priority.analyze(question, self._hint_for(question))
        if not self.priority.should_interrupt(analysis):
            LOGGER.info("Queued %s priority question behind in-flight exchange", analysis.priority.value)
            return
        combined = self._take_queue()
        if combined:
            self._pending_hint = None
            self._dispatch(combined, analysis, interrupting=True)

    def _process_queue(self) -> None:
        if self.priority.current is not None or self.status is not ConnectionStatus.LIVE:
            return
        question = self._take_queue()
        if not question:
            return
        analysis = self.priority.analyze(question, self._hint_for(question))
        self._pending_hint = None
        self._dispatch(question, analysis)

    def _take_queue(self) -> str:
        """Join and clear the queue in one step, dropping recently answered questions."""

        pending, self.queue = self.queue, []
        now = self._clock()
        window = self.config.queue_duplicate_seconds
        kept = [item for item in pending if not self.history.is_duplicate(item, now, window, completed_only=True)]
        if len(kept) != len(pending):
            LOGGER.info("Dropped %d duplicate queued question(s)", len(pending) - len(kept))
        return " ".join(kept).strip()

    def _hint_for(self, question: str) -> Optional[ContextHint]:
        calculator = self.calculator.config
        if hit_buffer_ceiling(question, calculator.max_buffer_words, calculator.max_buffer_chars):
            return ContextHint(kind=HintKind.TECHNICAL_EXPLANATION, likely_incomplete=True)
        return self._pending_hint

    def _restart_context_reset(self) -> None:
        if self._reset_handle is not None:
            self._reset_handle.cancel()
        loop = self._loop or asyncio.get_running_loop()
        self._reset_handle = loop.call_later(self.config.context_reset_seconds, self._on_context_reset)

    def _on_context_reset(self) -> None:
        self._reset_handle = None
        if self.accumulator or self.queue:
            LOGGER.info("Context reset after %.0fs of inactivity", self.config.context_reset_seconds)
        self.accumulator = ""
        self.queue = []

    # ------------------------------------------------------------------
    # Exchange execution
    # ------------------------------------------------------------------
    def _dispatch(self, question: str, analysis: RequestAnalysis, interrupting: bool = False) -> InFlightExchange:
        prompt, kind = self._build_prompt(question)
        exchange = self.priority.begin_exchange(question, analysis, interrupting=interrupting)
        task = asyncio.ensure_future(self._run_exchange(exchange, prompt, kind))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return exchange

    def _build_prompt(self, question: str) -> Tuple[str, TurnKind]:
        turns = self.history.turns
        previous_phase = self.context.phase
        plan = self.context.process(question, turns)
        if plan.phase is not previous_phase:
            self.priority.set_phase(plan.phase)
        follow_up = self.followup.classify(question, turns)

        prompt = question
        sources: List[str] = []
        if plan.analysis.requires_context and plan.context:
            prompt = f"{plan.context}\n\nCurrent question: {question}"
            sources.append("context")
        recommendation = follow_up.recommendation
        if recommendation is not None and recommendation.content and recommendation.content[:50] not in prompt:
            if sources:
                prompt = f"{plan.context}\n\nAdditional context for follow-up:\n{recommendation.content}\n\nFollow-up question: {question}"
            else:
                prompt = f"{recommendation.content}\n\nCurrent question: {question}"
            sources.append("follow_up")

        self._record_metric(
            "request_start",
            phase=plan.phase.value,
            boundary=plan.decision.kind.value,
            follow_up=follow_up.type.value,
            follow_up_confidence=round(follow_up.confidence, 3),
            context_sources=sources,
            length=len(prompt),
        )
        kind = TurnKind.CLARIFICATION if follow_up.type is FollowUpType.CLARIFICATION else TurnKind.QUESTION
        return prompt, kind

    async def _run_exchange(
        self,
        exchange: InFlightExchange,
        prompt: str,
        kind: TurnKind = TurnKind.QUESTION,
        suppressed: bool = False,
    ) -> None:
        buffer: List[str] = []
        success = False
        started_at = self._clock()
        if not suppressed:
            self._emit(ResponseStarting(conversation_id=exchange.conversation_id, question=exchange.question))
        try:
            await self.priority.execute(
                exchange, lambda token: self._stream_answer(exchange, prompt, buffer, suppressed, started_at)
            )
            success = True
        except ExchangeTimeoutError as exc:
            LOGGER.warning("%s", exc)
            self._save_partial(exchange, buffer, INTERRUPTED_MARKER, kind)
            self.queue.insert(0, exchange.question)
            self._emit(StatusUpdate(status="timeout", message=str(exc)))
        except ExchangeCancelledError as exc:
            marker = SESSION_CLOSED_MARKER if exc.reason == SESSION_CLOSED_REASON else INTERRUPTED_MARKER
            LOGGER.info("Exchange %s cancelled (%s)", exchange.conversation_id, exc.reason)
            self._save_partial(exchange, buffer, marker, kind)
        except BackendConnectionClosed as exc:
            LOGGER.warning("Backend connection closed: %s", exc)
            self._save_partial(exchange, buffer, SESSION_CLOSED_MARKER, kind)
            self._clear_pending()
            self._emit(StatusUpdate(status="disconnected", message=str(exc)))
            if not suppressed:
                self._schedule_reconnection()
        except (BackendError, NoApiKeyError) as exc:
            LOGGER.error("Exchange %s failed: %s", exchange.conversation_id, exc)
            self._save_partial(exchange, buffer, INTERRUPTED_MARKER, kind)
            self._clear_pending()
            if isinstance(exc, (KeySpecificError, NoApiKeyError)):
                self._terminate("All API keys failed")
            else:
                self._emit(StatusUpdate(status="error", message=str(exc)))
        finally:
            self.priority.finish_exchange(exchange, success)

        if success:
            self._complete(exchange, "".join(buffer), kind, suppressed)
            self._process_queue()

    async def _stream_answer(
        self,
        exchange: InFlightExchange,
        prompt: str,
        buffer: List[str],
        suppressed: bool,
        started_at: float,
    ) -> str:
        attempt = 0
        while True:
            session = self._require_backend()
            try:
                async for raw in session.stream(prompt):
                    delta = sanitize_text(raw, strip=False)
                    if not delta:
                        continue
                    if not buffer:
                        self._record_metric(
                            "first_token",
                            conversation_id=exchange.conversation_id,
                            latency=self._clock() - started_at,
                        )
                    buffer.append(delta)
                    if not suppressed:
                        self._emit(
                            ResponseUpdate(
                                conversation_id=exchange.conversation_id,
                                delta=delta,
                                text="".join(buffer),
                            )
                        )
                self.keys.mark_succeeded()
                return "".join(buffer)
            except KeySpecificError as exc:
                if buffer or not self.keys.mark_failed(exc):
                    raise
                await self._rotate_connection()
            except TransientBackendError as exc:
                if buffer or attempt >= self.config.send_retries:
                    raise
                delay = self.config.send_retry_base_seconds * (2 ** attempt)
                attempt += 1
                LOGGER.warning("Transient backend error (%s); retry %d in %.2fs", exc, attempt, delay)
                await asyncio.sleep(delay)

    def _complete(self, exchange: InFlightExchange, text: str, kind: TurnKind, suppressed: bool) -> None:
        if not suppressed:
            self._emit(ResponseComplete(conversation_id=exchange.conversation_id, text=text))
        self._record_metric(
            "response_quality",
            conversation_id=exchange.conversation_id,
            quality=min(1.0, word_count(text) / QUALITY_WORDS),
            words=word_count(text),
        )
        now = self._clock()
        window = self.config.completion_duplicate_seconds
        if not suppressed and self.history.is_duplicate(exchange.question, now, window, completed_only=True):
            LOGGER.info("Suppressing duplicate save for %s", exchange.question[:60])
            return
        self._save_turn(
            ConversationTurn(timestamp=now, question=exchange.question, answer=text, suppressed=suppressed, kind=kind)
        )

    def _save_partial(self, exchange: InFlightExchange, buffer: List[str], marker: str, kind: TurnKind) -> None:
        partial = "".join(buffer).strip()
        if not partial:
            return
        self._save_turn(
            ConversationTurn(
                timestamp=self._clock(),
                question=exchange.question,
                answer=f"{partial} {marker}",
                kind=kind,
                interrupted=True,
            )
        )

    def _save_turn(self, turn: ConversationTurn) -> None:
        self.history.append(turn)
        session_id = self.session_id or ""
        if self.store is not None and session_id:
            self.store.save_turn(session_id, turn)
        if self.on_turn_saved is not None:
            try:
                self.on_turn_saved(session_id, turn, self.history.turns)
            except Exception:  # pragma: no cover - callbacks should not break pipeline
                LOGGER.exception("Turn persistence callback raised an exception")

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    async def _connect(self) -> None:
        session = self.session
        assert session is not None
        self._backend_session = await self.backend.connect(
            self.keys.current(),
            system_prompt=session.system_prompt,
            language=session.language,
        )

    async def _connect_with_rotation(self) -> None:
        while True:
            try:
                await self._connect()
                return
            except KeySpecificError as exc:
                if not self.keys.mark_failed(exc):
                    raise

    async def _rotate_connection(self) -> None:
        await self._close_backend()
        await self._connect_with_rotation()

    async def _close_backend(self) -> None:
        session, self._backend_session = self._backend_session, None
        if session is None or session.closed:
            return
        try:
            await session.close()
        except BackendError as exc:
            LOGGER.warning("Error while closing backend session: %s", exc)

    def _schedule_reconnection(self) -> None:
        if self.status is ConnectionStatus.CLOSED:
            return
        task = asyncio.ensure_future(self.attempt_reconnection())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _replay_transcript(self) -> None:
        transcript = self.history.transcript()
        if not transcript:
            return
        prompt = f"{REPLAY_PROMPT}\n\n" + "\n".join(transcript)
        analysis = self.priority.analyze(transcript[-1])
        exchange = self.priority.begin_exchange(transcript[-1], analysis)
        LOGGER.info("Replaying %d question(s) to the new backend session", len(transcript))
        await self._run_exchange(exchange, prompt, suppressed=True)

    def _require_backend(self) -> BackendSession:
        session = self._backend_session
        if session is None:
            raise BackendConnectionClosed("No live backend session")
        return session

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _start_worker(self) -> None:
        if self._worker is not None and self._worker.is_running:
            return
        loop = self._loop or asyncio.get_running_loop()

        def sink(event: Event) -> None:
            if not loop.is_closed():
                loop.call_soon_threadsafe(self._on_vad_event, event)

        self._worker = VadWorker(VadSegmenter(self.vad_config), sink, stats_interval=self.vad_config.stats_interval)
        self._worker.start()

    def _on_vad_event(self, event: Event) -> None:
        if isinstance(event, VadEvent):
            if event.avg_pause_frames is not None:
                self._avg_pause_frames = event.avg_pause_frames
            if event.kind is VadEventKind.SPEECH_END and event.hint is not None:
                self._pending_hint = event.hint
        elif isinstance(event, StatsSample) and event.avg_pause_frames is not None:
            self._avg_pause_frames = event.avg_pause_frames
        elif isinstance(event, AudioChunkEvent) and self._backend_session is not None:
            self._forward_audio(event)
        self._emit(event)

    def _stop_worker(self) -> None:
        if self._worker is not None:
            self._worker.stop()
            self._worker = None

    def _forward_audio(self, event: AudioChunkEvent) -> None:
        session = self._backend_session
        if session is None or self.status is not ConnectionStatus.LIVE or not self.speaker_detection_enabled:
            return
        task = asyncio.ensure_future(session.send_audio(base64.b64decode(event.data)))
        task.add_done_callback(self._log_task_error)

    @staticmethod
    def _log_task_error(task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning("Audio forwarding failed: %s", exc)

    def _reset_state(self) -> None:
        self._clear_pending()
        self.history.clear()
        self.metrics_log = []
        self._avg_pause_frames = None
        self._pending_hint = None
        self.calculator.reset()
        self.context.reset()
        self.followup.reset_session()
        self.priority.reset()

    def _clear_pending(self) -> None:
        self.debounce.cancel()
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None
        self.accumulator = ""
        self.queue = []
        self._audio_remainder = np.zeros(0, dtype=np.float32)

    def _clean_text(self, text: str) -> str:
        cleaned = sanitize_text(text)
        if len(cleaned) < 2:
            raise InvalidInputError("text is empty or too short")
        return cleaned

    @staticmethod
    def _decode_audio(data: bytes) -> Any:
        if not data:
            raise InvalidInputError("audio payload is empty")
        try:
            return decode_pcm16(data)
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc

    def _ensure_open(self) -> None:
        if self.status is ConnectionStatus.CLOSED:
            raise SessionTerminalError("Session is closed; initialise a new session")

    def _terminate(self, message: str) -> None:
        self._clear_pending()
        self._stop_worker()
        self.priority.cancel_current(SESSION_CLOSED_REASON)
        self._set_status(ConnectionStatus.CLOSED, message, terminal=True)
        LOGGER.error("Session %s terminated: %s", self.session_id, message)

    def _set_status(self, status: ConnectionStatus, message: str = "", terminal: bool = False) -> None:
        self.status = status
        self._emit(
            StatusUpdate(
                status=status.value,
                message=message,
                terminal=terminal,
                details={"reconnect_attempts": self.reconnect_attempts},
            )
        )

    def _record_metric(self, event: str, **data: Any) -> None:
        now = self._clock()
        entry = {"event": event, "timestamp": now, **data}
        self.metrics_log.append(entry)
        del self.metrics_log[:-METRICS_LOG_SIZE]
        if self.store is not None and self.session_id:
            self.store.save_metric(self.session_id, event, data, now)

    def _emit(self, event: Event) -> None:
        self.bus.emit(event)


__all__ = [
    "ConnectionStatus",
    "InvalidInputError",
    "OrchestratorConfig",
    "SessionOrchestrator",
    "SessionTerminalError",
]
