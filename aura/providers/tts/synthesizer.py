"""Speech synthesis routed by voice and degraded through fallback tiers."""

from dataclasses import dataclass, field
from functools import partial
from typing import List, Optional
import structlog

from ..chain import FallbackChain, Tier, TierFailure
from .base import TTSProvider
from .silent import SilentProvider


logger = structlog.get_logger()

TIER_CLONED = "cloned"
TIER_NARRATION = "narration"
TIER_ON_DEVICE = "on_device"
TIER_SILENT = "silent"


@dataclass
class SynthesizedAudio:
    """Audio ready for playback, with the tier that produced it."""
    data: bytes
    format: str
    tier: str
    voice_id: Optional[str] = None
    failures: List[TierFailure] = field(default_factory=list)

    @property
    def is_silent(self) -> bool:
        return self.tier == TIER_SILENT


class SpeechSynthesizer:
    """
    Turns reply text into audio.

    Cloned voice ids (those under the cloning namespace) are tried with the
    cloning provider first and then with the default narration voice; other
    ids go to narration directly. On-device synthesis and a silent clip
    follow, so synthesis always resolves.
    """

    def __init__(
        self,
        narration: TTSProvider,
        cloning: Optional[TTSProvider] = None,
        on_device: Optional[TTSProvider] = None,
        default_voice_id: str = "EXAVITQu4vr4xnSDxMaL",
        cloning_namespace: str = "zyphra_",
        metrics=None,
    ):
        self.narration = narration
        self.cloning = cloning
        self.on_device = on_device
        self.silent = SilentProvider()
        self.default_voice_id = default_voice_id
        self.cloning_namespace = cloning_namespace
        self.metrics = metrics

    def plan(self, voice_id: Optional[str]) -> List[Tier]:
        """The ordered tiers that will be attempted for ``voice_id``."""
        voice_id = voice_id or self.default_voice_id
        tiers: List[Tier] = []

        if voice_id.startswith(self.cloning_namespace):
            if self.cloning is not None:
                tiers.append(Tier(TIER_CLONED, partial(self.cloning.synthesize, voice_id=voice_id)))
            narration_voice = self.default_voice_id
        else:
            narration_voice = voice_id

        tiers.append(Tier(TIER_NARRATION, partial(self.narration.synthesize, voice_id=narration_voice)))
        if self.on_device is not None:
            tiers.append(Tier(TIER_ON_DEVICE, self.on_device.synthesize))
        tiers.append(Tier(TIER_SILENT, self.silent.synthesize))
        return tiers

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> SynthesizedAudio:
        chain = FallbackChain("synthesis", self.plan(voice_id), metrics=self.metrics)
        result = await chain.run(text)
        clip = result.value
        logger.debug("Speech synthesized", tier=result.tier, bytes=clip.size,
                     failed_tiers=[f.tier for f in result.failures])
        return SynthesizedAudio(
            data=clip.data,
            format=clip.format,
            tier=result.tier,
            voice_id=clip.voice_id,
            failures=result.failures,
        )
