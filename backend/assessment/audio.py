"""
Audio assembly and playback for the listening module.

Speech is synthesized one script part at a time as raw 16-bit signed
little-endian mono PCM. The parts are stitched into one track with silent
gaps, decoded to normalized float samples and played through a single
output source owned by the listening stage that built it.
"""

from __future__ import annotations

import asyncio
import io
import logging
import wave
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence

import numpy as np

from .errors import DecodeError, PlaybackUnavailableError

logger = logging.getLogger(__name__)

BYTES_PER_SAMPLE = 2
DEFAULT_SAMPLE_RATE = 24000
DEFAULT_SILENCE_SECONDS = 2.0


def silence_length_bytes(silence_seconds: float, sample_rate: int) -> int:
	"""Byte length of ``silence_seconds`` of 16-bit mono silence, in whole samples."""
	if silence_seconds < 0:
		raise ValueError("silence_seconds must not be negative")
	return int(round(silence_seconds * sample_rate)) * BYTES_PER_SAMPLE


def assemble_pcm(
	segments: Sequence[bytes],
	silence_seconds: float = DEFAULT_SILENCE_SECONDS,
	sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> bytes:
	"""
	Concatenate raw PCM segments, inserting a zero-filled gap between neighbours.

	Raises:
		DecodeError: if there are no segments, or a segment is empty or has an
			odd byte length.
	"""
	if not segments:
		raise DecodeError("No audio segments to assemble")
	for index, segment in enumerate(segments):
		length = len(segment)
		if length <= 0 or length % BYTES_PER_SAMPLE:
			raise DecodeError(f"Audio segment {index} has invalid PCM length {length}")

	gap = silence_length_bytes(silence_seconds, sample_rate)
	total = sum(len(s) for s in segments) + (len(segments) - 1) * gap
	out = np.zeros(total, dtype=np.uint8)
	offset = 0
	for index, segment in enumerate(segments):
		out[offset : offset + len(segment)] = np.frombuffer(segment, dtype=np.uint8)
		offset += len(segment)
		if index < len(segments) - 1:
			# zeros are silence in signed PCM
			offset += gap
	return out.tobytes()


def decode_pcm16(data: bytes) -> np.ndarray:
	"""Decode 16-bit signed little-endian PCM into float32 samples in [-1, 1)."""
	if not data or len(data) % BYTES_PER_SAMPLE:
		raise DecodeError(f"Invalid PCM buffer length {len(data)}")
	samples = np.frombuffer(data, dtype="<i2")
	return samples.astype(np.float32) / np.float32(32768.0)


@dataclass(frozen=True)
class AssembledAudio:
	samples: np.ndarray
	sample_rate: int

	@property
	def frame_count(self) -> int:
		return int(self.samples.shape[0])

	@property
	def duration_seconds(self) -> float:
		return self.frame_count / self.sample_rate


def assemble(
	segments: Sequence[bytes],
	silence_seconds: float = DEFAULT_SILENCE_SECONDS,
	sample_rate: int = DEFAULT_SAMPLE_RATE,
) -> AssembledAudio:
	raw = assemble_pcm(segments, silence_seconds, sample_rate)
	return AssembledAudio(samples=decode_pcm16(raw), sample_rate=sample_rate)


def encode_wav(audio: AssembledAudio) -> bytes:
	"""Encode an assembled track as a 16-bit mono WAV file."""
	pcm = np.clip(np.round(audio.samples * 32768.0), -32768, 32767).astype("<i2")
	buffer = io.BytesIO()
	with wave.open(buffer, "wb") as out:
		out.setnchannels(1)
		out.setsampwidth(BYTES_PER_SAMPLE)
		out.setframerate(audio.sample_rate)
		out.writeframes(pcm.tobytes())
	return buffer.getvalue()


# ============================================================================
# PLAYBACK
# ============================================================================

class PlaybackSource(Protocol):
	"""One run of the buffer through the output device."""

	position: int

	def start(self) -> None: ...

	def stop(self) -> None: ...


class PlaybackContext(Protocol):
	def create_source(
		self,
		samples: np.ndarray,
		offset: int,
		on_finished: Callable[[], None],
	) -> PlaybackSource: ...

	def close(self) -> None: ...


ContextFactory = Callable[[int], PlaybackContext]


class AudioPlayer:
	"""
	Single-flight player for one assembled track.

	The playback context is created lazily on the first ``play()`` and must be
	released with ``close()`` when the owning stage is torn down.
	"""

	def __init__(self, audio: AssembledAudio, context_factory: Optional[ContextFactory] = None) -> None:
		self.audio = audio
		self._context_factory = context_factory or SoundDeviceContext
		self._context: Optional[PlaybackContext] = None
		self._source: Optional[PlaybackSource] = None
		self._position = 0
		self._playing = False
		self._closed = False

	@property
	def is_playing(self) -> bool:
		return self._playing

	@property
	def position(self) -> int:
		if self._source is not None:
			return self._source.position
		return self._position

	@property
	def closed(self) -> bool:
		return self._closed

	def play(self) -> None:
		if self._closed:
			raise RuntimeError("player has been closed")
		if self._source is not None:
			self._halt_source()
		if self._position >= self.audio.frame_count:
			self._position = 0
		if self._context is None:
			self._context = self._context_factory(self.audio.sample_rate)
		source: Optional[PlaybackSource] = None

		def finished() -> None:
			self._on_finished(source)

		source = self._context.create_source(self.audio.samples, self._position, finished)
		self._source = source
		self._playing = True
		try:
			source.start()
		except PlaybackUnavailableError:
			self._source = None
			self._playing = False
			raise

	def pause(self) -> None:
		if self._source is None:
			return
		self._halt_source()

	def stop(self) -> None:
		if self._source is not None:
			self._halt_source()
		self._position = 0

	def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		self.stop()
		if self._context is not None:
			try:
				self._context.close()
			finally:
				self._context = None

	def _halt_source(self) -> None:
		source = self._source
		# detach first so the source's own finished callback is treated as stale
		self._source = None
		self._playing = False
		self._position = source.position
		source.stop()

	def _on_finished(self, source: Optional[PlaybackSource]) -> None:
		if source is None or source is not self._source:
			return
		self._source = None
		self._playing = False
		self._position = 0
		logger.debug("Playback reached end of track")


class SoundDeviceContext:
	"""Plays float32 mono samples through the default output device."""

	def __init__(self, sample_rate: int) -> None:
		try:
			import sounddevice
		except (ImportError, OSError) as e:
			raise PlaybackUnavailableError(f"Audio playback is unavailable: {e}") from e

		self._sd = sounddevice
		self.sample_rate = sample_rate
		try:
			self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
		except RuntimeError:
			self._loop = None
		self._sources: list = []

	def create_source(self, samples: np.ndarray, offset: int, on_finished: Callable[[], None]) -> "_StreamSource":
		source: Optional[_StreamSource] = None

		def finished() -> None:
			self._discard(source)
			on_finished()

		try:
			source = _StreamSource(self._sd, samples, self.sample_rate, offset, self._marshal(finished))
		except self._sd.PortAudioError as e:
			raise PlaybackUnavailableError(f"No audio output device: {e}") from e
		self._sources.append(source)
		return source

	def close(self) -> None:
		for source in self._sources:
			source.stop()
		self._sources.clear()

	def _discard(self, source: Optional["_StreamSource"]) -> None:
		# ended streams are closed right away instead of waiting for close()
		if source is None:
			return
		if source in self._sources:
			self._sources.remove(source)
		source.stop()

	def _marshal(self, callback: Callable[[], None]) -> Callable[[], None]:
		loop = self._loop
		if loop is None:
			return callback

		def threadsafe() -> None:
			if not loop.is_closed():
				loop.call_soon_threadsafe(callback)

		return threadsafe


class _StreamSource:
	def __init__(self, sd, samples: np.ndarray, sample_rate: int, offset: int, on_finished: Callable[[], None]) -> None:
		self._sd = sd
		self._samples = samples
		self.position = offset
		self._stopped = False
		self._stream = sd.OutputStream(
			samplerate=sample_rate,
			channels=1,
			dtype="float32",
			callback=self._callback,
			finished_callback=on_finished,
		)

	def start(self) -> None:
		try:
			self._stream.start()
		except self._sd.PortAudioError as e:
			self._stopped = True
			self._stream.close()
			raise PlaybackUnavailableError(f"Could not start audio output: {e}") from e

	def stop(self) -> None:
		if self._stopped:
			return
		self._stopped = True
		self._stream.stop()
		self._stream.close()

	def _callback(self, outdata, frames: int, _time, status) -> None:
		if status:
			logger.warning("Playback status: %s", status)
		chunk = self._samples[self.position : self.position + frames]
		taken = len(chunk)
		outdata[:taken, 0] = chunk
		outdata[taken:, 0] = 0.0
		self.position += taken
		if taken < frames:
			raise self._sd.CallbackStop
