"""Microphone capture in fixed time slices."""

import asyncio
import io
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional
import numpy as np
import soundfile as sf
import structlog

from ..errors import MicrophonePermissionError


logger = structlog.get_logger()

StreamFactory = Callable[..., Any]


def _default_stream_factory(**kwargs) -> Any:
    # imported lazily: importing sounddevice requires the PortAudio library
    import sounddevice as sd
    return sd.InputStream(**kwargs)


@dataclass
class CapturedAudio:
    """The slices recorded between start and stop."""
    chunks: List[np.ndarray] = field(default_factory=list)
    sample_rate: int = 16000
    channels: int = 1
    dtype: str = "int16"

    @property
    def frames(self) -> int:
        return sum(len(chunk) for chunk in self.chunks)

    @property
    def duration_seconds(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate else 0.0

    @property
    def is_empty(self) -> bool:
        return self.frames == 0

    def to_wav_bytes(self) -> bytes:
        """Encode as 16-bit PCM WAV; an empty capture encodes to zero bytes."""
        if self.is_empty:
            return b""
        audio = np.concatenate(self.chunks, axis=0)
        if audio.ndim == 1:
            audio = audio.reshape(-1, self.channels)
        buffer = io.BytesIO()
        with sf.SoundFile(buffer, mode="w", samplerate=self.sample_rate, channels=self.channels,
                          subtype="PCM_16", format="WAV") as f:
            f.write(audio)
        return buffer.getvalue()


class AudioCaptureDevice:
    """
    Exclusive handle on the microphone.

    Audio arrives on the stream's callback thread and is grouped into time
    slices. ``stop()`` flushes the partial slice before stopping the stream,
    so the tail of an utterance is never lost.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        timeslice_ms: int = 500,
        dtype: str = "int16",
        stream_factory: Optional[StreamFactory] = None,
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.timeslice_ms = timeslice_ms
        self.dtype = dtype
        self.stream_factory = stream_factory or _default_stream_factory

        self._stream: Any = None
        self._recording = False
        self._lock = threading.Lock()
        self._pending: List[np.ndarray] = []
        self._pending_frames = 0
        self._chunks: List[np.ndarray] = []

    @property
    def slice_frames(self) -> int:
        return max(1, int(self.sample_rate * self.timeslice_ms / 1000))

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def slices(self) -> int:
        """Number of slices flushed so far in the current recording."""
        with self._lock:
            return len(self._chunks)

    def _open_stream(self) -> None:
        try:
            self._stream = self.stream_factory(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype=self.dtype,
                callback=self._callback,
            )
        except Exception as e:
            raise MicrophonePermissionError(f"Microphone unavailable: {e}") from e
        logger.info("Microphone opened", sample_rate=self.sample_rate, channels=self.channels)

    async def open(self) -> None:
        """Acquire the microphone. Raises ``MicrophonePermissionError`` if denied."""
        if self._stream is None:
            await asyncio.to_thread(self._open_stream)

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug("Input stream status", status=str(status))
        chunk = np.array(indata, dtype=self.dtype, copy=True)
        with self._lock:
            if not self._recording:
                return
            self._pending.append(chunk)
            self._pending_frames += len(chunk)
            if self._pending_frames >= self.slice_frames:
                self._flush_locked()

    def _flush_locked(self) -> None:
        if self._pending:
            self._chunks.append(np.concatenate(self._pending, axis=0))
            self._pending = []
            self._pending_frames = 0

    def request_data(self) -> None:
        """Flush the partial slice collected so far."""
        with self._lock:
            self._flush_locked()

    def start(self) -> None:
        if self._stream is None:
            raise RuntimeError("Microphone is not open")
        with self._lock:
            self._pending = []
            self._pending_frames = 0
            self._chunks = []
            self._recording = True
        try:
            self._stream.start()
        except Exception as e:
            with self._lock:
                self._recording = False
            raise MicrophonePermissionError(f"Microphone could not start: {e}") from e
        logger.debug("Recording started", timeslice_ms=self.timeslice_ms)

    def stop(self) -> CapturedAudio:
        """Flush, stop the stream, and return everything recorded."""
        if not self._recording:
            return CapturedAudio(sample_rate=self.sample_rate, channels=self.channels, dtype=self.dtype)

        self.request_data()
        try:
            if self._stream is not None:
                self._stream.stop()
        finally:
            with self._lock:
                # callbacks that raced the stop
                self._flush_locked()
                self._recording = False
                chunks = list(self._chunks)
                self._chunks = []

        captured = CapturedAudio(chunks=chunks, sample_rate=self.sample_rate,
                                 channels=self.channels, dtype=self.dtype)
        logger.debug("Recording stopped", slices=len(chunks), seconds=round(captured.duration_seconds, 2))
        return captured

    def release(self) -> None:
        """Stop recording if needed and give the microphone back."""
        stream = self._stream
        if stream is None:
            return
        with self._lock:
            self._recording = False
            self._pending = []
            self._pending_frames = 0
            self._chunks = []
        self._stream = None
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning("Error releasing microphone", error=str(e))
        logger.info("Microphone released")
