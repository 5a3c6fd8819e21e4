"""
Conversation session state machine that orchestrates a spoken turn:
capture, transcribe, respond, synthesize, play.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, List, Optional, Set
import structlog

from ..audio.capture import AudioCaptureDevice, CapturedAudio
from ..audio.playback import AudioPlayer
from ..errors import MicrophonePermissionError, SessionCreationError
from ..metrics.collector import MetricsCollector
from ..providers.ai.generator import ResponseGenerator
from ..providers.stt.transcriber import SpeechTranscriber
from ..providers.tts.synthesizer import SpeechSynthesizer, SynthesizedAudio
from ..state.models import AggregateAnalysis, Message, Role, Session
from ..state.session_store import SessionStore
from ..state.voices import VoiceRegistry


logger = structlog.get_logger()


class ConversationState(str, Enum):
    INACTIVE = "inactive"
    CONNECTING = "connecting"
    GREETING = "greeting"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"
    ENDED = "ended"


TERMINAL_STATES = (ConversationState.ERROR, ConversationState.ENDED)
RESTARTABLE_STATES = (ConversationState.INACTIVE, ConversationState.ERROR, ConversationState.ENDED)


@dataclass
class ControllerEvent:
    """Notification sent to subscribers.

    Kinds: ``state``, ``transcript``, ``response``, ``session_updated``,
    ``analysis`` and ``error``.
    """
    kind: str
    payload: Any = None


ControllerListener = Callable[[ControllerEvent], None]


class ConversationController:
    """
    Drives one conversation session at a time.

    Exactly one turn is in flight: the microphone can only be toggled while
    LISTENING. A failing stage degrades its turn and the controller returns to
    LISTENING; only a denied microphone or a session that cannot be created
    moves to ERROR. Results that arrive after ``end_session()`` are dropped.
    """

    def __init__(
        self,
        store: SessionStore,
        voices: VoiceRegistry,
        transcriber: SpeechTranscriber,
        generator: ResponseGenerator,
        synthesizer: SpeechSynthesizer,
        capture: AudioCaptureDevice,
        player: AudioPlayer,
        sync_agent=None,
        analysis=None,
        metrics: Optional[MetricsCollector] = None,
        default_voice_id: str = "EXAVITQu4vr4xnSDxMaL",
    ):
        self.store = store
        self.voices = voices
        self.transcriber = transcriber
        self.generator = generator
        self.synthesizer = synthesizer
        self.capture = capture
        self.player = player
        self.sync_agent = sync_agent
        self.analysis_service = analysis
        self.metrics = metrics
        self.default_voice_id = default_voice_id

        self._state = ConversationState.INACTIVE
        self._epoch = 0
        self._session_id: Optional[str] = None
        self._voice_id: Optional[str] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._sync_tasks: Set[asyncio.Task] = set()
        self._listeners: List[ControllerListener] = []

        self.transcript = ""
        self.transcript_is_placeholder = False
        self.text_response = ""
        self.analysis: Optional[AggregateAnalysis] = None
        self.error_message: Optional[str] = None
        self.last_synthesis_tier: Optional[str] = None

    # Observable state

    @property
    def conversation_state(self) -> ConversationState:
        return self._state

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def voice_id(self) -> Optional[str]:
        return self._voice_id

    @property
    def is_recording(self) -> bool:
        return self.capture.is_recording

    @property
    def record_toggle_enabled(self) -> bool:
        return self._state == ConversationState.LISTENING

    def subscribe(self, listener: ControllerListener) -> Callable[[], None]:
        """Register a listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, payload: Any = None) -> None:
        event = ControllerEvent(kind=kind, payload=payload)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error("Controller listener failed", kind=kind, error=str(e))

    def _set_state(self, new_state: ConversationState) -> bool:
        current = self._state
        if current == new_state:
            return True
        if current in TERMINAL_STATES:
            allowed = new_state == ConversationState.CONNECTING or (
                current == ConversationState.ERROR and new_state == ConversationState.ENDED
            )
            if not allowed:
                logger.debug("Ignoring transition out of terminal state",
                             state=current.value, requested=new_state.value)
                return False

        self._state = new_state
        logger.info("Conversation state changed", previous=current.value, state=new_state.value,
                    session_id=self._session_id)
        self._emit("state", {"state": new_state.value, "recording": self.is_recording})
        return True

    def _is_current(self, epoch: int) -> bool:
        return epoch == self._epoch and self._state not in TERMINAL_STATES

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        return asyncio.get_running_loop().create_task(coro)

    # Session lifecycle

    async def begin_session(self, session_id: Optional[str] = None) -> Optional[str]:
        """
        Start a session: acquire the microphone, create the session, then greet.

        Returns the session id, or ``None`` if the controller is busy or the
        session could not start (state is then ERROR). The greeting runs as
        the first turn; ``wait_for_turn()`` awaits it.
        """
        if self._state not in RESTARTABLE_STATES:
            logger.warning("Session already active", state=self._state.value)
            return None

        self._epoch += 1
        epoch = self._epoch
        self._session_id = None
        self._voice_id = None
        self.transcript = ""
        self.transcript_is_placeholder = False
        self.text_response = ""
        self.error_message = None
        self.last_synthesis_tier = None
        self._set_state(ConversationState.CONNECTING)

        try:
            await self.capture.open()
        except MicrophonePermissionError as e:
            self._fail(f"Microphone access denied: {e}")
            return None
        if epoch != self._epoch:
            return None

        try:
            voice_id = self.voices.select_session_voice(self.default_voice_id)
            session = self.store.create(session_id, voice_id)
        except (SessionCreationError, OSError) as e:
            self._fail(f"Could not start session: {e}")
            return None

        self._session_id = session.id
        self._voice_id = session.voice_id
        if self.metrics:
            self.metrics.start_session(session.id)
        self._emit("session_updated", session)

        self._set_state(ConversationState.GREETING)
        self._turn_task = self._spawn(self._run_greeting(epoch))
        return session.id

    async def _run_greeting(self, epoch: int) -> None:
        try:
            reply = await self.generator.greet()
            if not self._is_current(epoch):
                return
            text = reply.value.text
            self.text_response = text
            self._emit("response", text)
            self._append(Role.ASSISTANT, text)

            audio = await self.synthesizer.synthesize(text, self._voice_id)
            if not self._is_current(epoch):
                return
            await self._speak(audio, epoch)
        except Exception as e:
            self._degrade_turn(epoch, "greeting", e)

    def _fail(self, message: str) -> None:
        logger.error("Conversation failed", error=message, session_id=self._session_id)
        self.error_message = message
        if self.metrics:
            self.metrics.record_error("controller", message)
        self._set_state(ConversationState.ERROR)
        self.capture.release()
        self.player.stop()
        self._emit("error", message)

    async def end_session(self) -> None:
        """End the session, release audio devices and schedule a final sync."""
        if self._state in (ConversationState.INACTIVE, ConversationState.ENDED):
            return

        self._epoch += 1
        self._set_state(ConversationState.ENDED)
        self.capture.release()
        self.player.stop()

        if self._session_id is None:
            return
        try:
            session = self.store.end_session(self._session_id)
            self._emit("session_updated", session)
        except (KeyError, OSError) as e:
            logger.error("Failed to end session", session_id=self._session_id, error=str(e))
        self._schedule_sync()

        if self.metrics and self.metrics.current_session:
            self.metrics.end_session()
            self.metrics.save_metrics()

    async def close(self) -> None:
        """Wait for background work and release every resource."""
        await self.end_session()
        await self.wait_for_turn()
        await self.wait_for_sync()
        self.player.release()
        if self.sync_agent is not None:
            await self.sync_agent.aclose()

    # Turns

    def toggle_microphone(self) -> bool:
        """
        Start recording, or stop recording and run the turn.

        A no-op returning ``False`` unless the controller is LISTENING.
        """
        if not self.record_toggle_enabled:
            logger.debug("Record toggle ignored", state=self._state.value)
            return False

        if not self.capture.is_recording:
            try:
                self.capture.start()
            except (MicrophonePermissionError, RuntimeError) as e:
                self._fail(f"Microphone access denied: {e}")
                return False
            self._emit("state", {"state": self._state.value, "recording": True})
            return True

        captured = self.capture.stop()
        self._set_state(ConversationState.PROCESSING)
        self._turn_task = self._spawn(self._run_turn(captured, self._epoch))
        return True

    async def wait_for_turn(self) -> None:
        """Wait until the turn (or greeting) in flight has finished."""
        task = self._turn_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def _run_turn(self, captured: CapturedAudio, epoch: int) -> None:
        turn_start = time.perf_counter()
        try:
            stt = await self.transcriber.transcribe(captured.to_wav_bytes())
            if not self._is_current(epoch):
                return
            if self.metrics:
                self.metrics.record_latency("stt", stt.latency_ms)

            transcript = stt.value
            self.transcript = transcript.text
            self.transcript_is_placeholder = transcript.is_placeholder
            self._emit("transcript", transcript.text)
            if transcript.is_empty:
                logger.info("Nothing to respond to", tier=stt.tier, seconds=round(captured.duration_seconds, 2))
                self._set_state(ConversationState.LISTENING)
                return

            session = self._append(Role.USER, transcript.text, placeholder=transcript.is_placeholder)
            if session is None:
                self._set_state(ConversationState.LISTENING)
                return

            reply = await self.generator.respond(session.conversation)
            if not self._is_current(epoch):
                return
            if self.metrics:
                self.metrics.record_latency("ai", reply.latency_ms)

            text = reply.value.text
            self.text_response = text
            self._emit("response", text)
            self._append(Role.ASSISTANT, text)
            self._schedule_sync()

            synth_start = time.perf_counter()
            audio = await self.synthesizer.synthesize(text, self._voice_id)
            if not self._is_current(epoch):
                return
            if self.metrics:
                self.metrics.record_latency("tts", (time.perf_counter() - synth_start) * 1000)
                self.metrics.record_latency("e2e", (time.perf_counter() - turn_start) * 1000)

            await self._speak(audio, epoch)
            if self.metrics:
                self.metrics.record_turn()
        except Exception as e:
            self._degrade_turn(epoch, "turn", e)

    async def _speak(self, audio: SynthesizedAudio, epoch: int) -> None:
        self.last_synthesis_tier = audio.tier
        if not self._set_state(ConversationState.SPEAKING):
            return
        played = await self.player.play(audio)
        if not played:
            logger.info("Reply not played", tier=audio.tier)
        if self._is_current(epoch):
            self._set_state(ConversationState.LISTENING)

    def _degrade_turn(self, epoch: int, stage: str, error: Exception) -> None:
        logger.error("Turn failed", stage=stage, error=str(error),
                     error_type=type(error).__name__, session_id=self._session_id)
        if self.metrics:
            self.metrics.record_error(stage, str(error))
        if self._is_current(epoch):
            self._set_state(ConversationState.LISTENING)

    def _append(self, role: Role, content: str, placeholder: bool = False) -> Optional[Session]:
        if self._session_id is None:
            return None
        try:
            message = Message(role=role, content=content, placeholder=placeholder)
            session = self.store.add_message(self._session_id, message)
        except (KeyError, OSError) as e:
            logger.error("Failed to store message", session_id=self._session_id, error=str(e))
            return None
        self._emit("session_updated", session)
        return session

    # Sync and analysis

    def _schedule_sync(self) -> None:
        if self.sync_agent is None or self._session_id is None:
            return
        task = self._spawn(self._sync(self._session_id))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    async def _sync(self, session_id: str) -> None:
        result = await self.sync_agent.sync(session_id)
        if result is not None:
            session = self.store.get(session_id)
            if session is not None:
                self._emit("session_updated", session)

    async def wait_for_sync(self) -> None:
        """Wait for all scheduled syncs to settle."""
        while True:
            pending = [task for task in self._sync_tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def refresh_analysis(self, force: bool = False, include_synthetic: bool = False) -> Optional[AggregateAnalysis]:
        """Analyze stale sessions of the current user and recompute the aggregate."""
        if self.analysis_service is None:
            return None
        self.analysis = await self.analysis_service.refresh(force=force, include_synthetic=include_synthetic)
        self._emit("analysis", self.analysis)
        return self.analysis
