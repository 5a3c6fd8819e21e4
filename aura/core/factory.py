"""Wiring of stores, providers and services from settings."""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union
import structlog

from ..analysis.aggregator import AnalysisAggregator
from ..analysis.analyzer import GeminiSessionAnalyzer, SyntheticSessionAnalyzer
from ..analysis.service import AnalysisService
from ..audio.capture import AudioCaptureDevice
from ..audio.playback import AudioPlayer
from ..config.settings import Settings
from ..metrics.collector import MetricsCollector
from ..providers.ai.generator import ResponseGenerator
from ..providers.registry import registry
from ..providers.stt.transcriber import SpeechTranscriber
from ..providers.tts.synthesizer import SpeechSynthesizer
from ..state.session_store import SessionStore
from ..state.storage import LocalStorage
from ..state.voices import VoiceRegistry
from ..sync.agent import SyncAgent
from .conversation_controller import ConversationController


logger = structlog.get_logger()


@dataclass
class AppContext:
    """Long-lived components shared by the CLI commands."""
    settings: Settings
    storage: LocalStorage
    store: SessionStore
    voices: VoiceRegistry
    sync_agent: SyncAgent
    analysis: AnalysisService
    metrics: Optional[MetricsCollector]

    def build_controller(
        self,
        capture: Optional[AudioCaptureDevice] = None,
        player: Optional[AudioPlayer] = None,
    ) -> ConversationController:
        """Assemble a controller with the configured provider chains."""
        s = self.settings
        p = s.providers

        transcriber = SpeechTranscriber(
            [registry.get_stt_provider(name) for name in p.stt_chain],
            fallback=registry.get_stt_provider("placeholder"),
            min_audio_bytes=s.audio.min_capture_bytes,
            metrics=self.metrics,
        )
        generator = ResponseGenerator(
            [registry.get_ai_provider(name) for name in p.ai_chain],
            apology=s.system_prompts.apology,
            greeting_prompt=s.system_prompts.greeting,
            fallback_greeting=s.system_prompts.fallback_greeting,
            metrics=self.metrics,
        )
        synthesizer = SpeechSynthesizer(
            narration=registry.get_tts_provider(p.narration_provider),
            cloning=registry.get_tts_provider(
                p.cloning_provider, reference_lookup=self.voices.load_reference_audio
            ),
            on_device=registry.get_tts_provider(p.on_device_provider),
            default_voice_id=p.default_voice_id,
            cloning_namespace=p.cloning_namespace,
            metrics=self.metrics,
        )

        return ConversationController(
            store=self.store,
            voices=self.voices,
            transcriber=transcriber,
            generator=generator,
            synthesizer=synthesizer,
            capture=capture or AudioCaptureDevice(
                sample_rate=s.audio.sample_rate,
                channels=s.audio.channels,
                timeslice_ms=s.audio.timeslice_ms,
                dtype=s.audio.dtype,
            ),
            player=player or AudioPlayer(ready_timeout=s.timeouts.playback_ready_timeout),
            sync_agent=self.sync_agent,
            analysis=self.analysis,
            metrics=self.metrics,
            default_voice_id=p.default_voice_id,
        )


def build_context(
    settings: Settings,
    data_dir: Optional[Union[str, Path]] = None,
    user_id: Optional[str] = None,
    token_provider: Optional[Callable[[], Optional[str]]] = None,
) -> AppContext:
    """Open local storage and create the services that work on it."""
    data_path = Path(data_dir).expanduser() if data_dir else settings.data_path
    storage = LocalStorage(data_path)
    store = SessionStore(storage, user_id=user_id, default_voice_id=settings.providers.default_voice_id).open()
    voices = VoiceRegistry(storage, cloning_namespace=settings.providers.cloning_namespace)
    metrics = MetricsCollector(data_path / "metrics") if settings.storage.metrics_enabled else None

    sync_agent = SyncAgent(
        store,
        api_url=settings.sync.api_url,
        token_provider=token_provider,
        probe_timeout=settings.sync.probe_timeout,
        request_timeout=settings.sync.request_timeout,
        health_path=settings.sync.health_path,
        sync_path=settings.sync.sync_path,
        enabled=settings.sync.enabled,
    )

    a = settings.analysis
    analysis = AnalysisService(
        store,
        analyzers=[GeminiSessionAnalyzer(
            model_name=settings.providers.gemini_model,
            temperature=a.analysis_temperature,
            max_tokens=a.analysis_max_tokens,
            seconds_per_char=a.speech_seconds_per_char,
            timeout=settings.timeouts.ai_response_timeout,
        )],
        aggregator=AnalysisAggregator(a),
        synthetic=SyntheticSessionAnalyzer(seed=a.synthetic_seed),
        metrics=metrics,
    )

    logger.debug("Application context ready", data_dir=str(data_path), user_id=store.user_id)
    return AppContext(
        settings=settings,
        storage=storage,
        store=store,
        voices=voices,
        sync_agent=sync_agent,
        analysis=analysis,
        metrics=metrics,
    )
