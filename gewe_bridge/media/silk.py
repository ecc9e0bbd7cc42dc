"""SILK voice transcoding through external decoder/encoder binaries.

Inbound voice notes arrive as SILK v3 and are decoded to WAV for the agent.
Outbound audio is converted to 16-bit mono PCM with ffmpeg and then encoded
to SILK. Candidate binaries and argument shapes are tried in order until one
produces a non-empty output file; every failure degrades to ``None``.
"""

from __future__ import annotations

import itertools
import logging
import tempfile
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from gewe_bridge.config import GeweAccountConfig
from gewe_bridge.media.process import resolve_template_args, run_command

logger = logging.getLogger(__name__)

SILK_HEADER = b"#!SILK_V3"
DEFAULT_SAMPLE_RATE = 24000
DEFAULT_FFMPEG = "ffmpeg"
VOICE_TIMEOUT_SECONDS = 30.0
PCM_BYTES_PER_SAMPLE = 2

LEGACY_DECODERS = ("silk-decoder", "silk-v3-decoder", "decoder")
LEGACY_DECODE_TEMPLATES = (
    ("{input}", "{output}"),
    ("-i", "{input}", "-o", "{output}"),
    ("{input}", "-o", "{output}"),
    ("-i", "{input}", "{output}"),
)
RUST_SILK_DECODE_TEMPLATE = (
    "decode", "-i", "{input}", "-o", "{output}",
    "--sample-rate", "{sampleRate}", "--quiet",
)

LEGACY_ENCODER = "silk-encoder"
LEGACY_ENCODE_TEMPLATES = (
    ("-i", "{input}", "-o", "{output}", "-rate", "{sampleRate}"),
    ("{input}", "{output}", "-rate", "{sampleRate}"),
    ("{input}", "{output}", "{sampleRate}"),
    ("{input}", "{output}"),
)
RUST_SILK_ENCODE_TEMPLATE = (
    "encode", "-i", "{input}", "-o", "{output}",
    "--sample-rate", "{sampleRate}", "--quiet", "--tencent",
)


Candidate = tuple[str, Sequence[str]]


class SilkBinaryProvider(Protocol):
    def ensure(self) -> Awaitable[str | None]: ...


class VoiceEncodeError(Exception):
    """Raised inside the encode path; never escapes ``encode``."""


@dataclass(frozen=True)
class DecodedVoice:
    buffer: bytes
    content_type: str = "audio/wav"
    file_name: str = "voice.wav"


@dataclass(frozen=True)
class EncodedVoice:
    buffer: bytes
    duration_ms: int


def looks_like_silk(
    buffer: bytes,
    content_type: str | None = None,
    file_name: str | None = None,
) -> bool:
    """Content type, file extension, then the ``#!SILK_V3`` magic header."""
    if "silk" in (content_type or "").lower():
        return True
    if (file_name or "").lower().endswith(".silk"):
        return True
    if len(buffer) < len(SILK_HEADER):
        return False
    return buffer[: len(SILK_HEADER)] == SILK_HEADER


def is_silk_audio(content_type: str | None = None, file_name: str | None = None) -> bool:
    if "silk" in (content_type or "").lower():
        return True
    return (file_name or "").lower().endswith(".silk")


def pcm_frame_bytes(sample_rate: int) -> int:
    """Bytes in one 20ms frame, or 0 when the rate is not frame-aligned."""
    if sample_rate % 50 != 0:
        return 0
    return sample_rate // 50 * PCM_BYTES_PER_SAMPLE


def pcm_duration_ms(size: int, sample_rate: int) -> int:
    return max(1, round(size / (sample_rate * PCM_BYTES_PER_SAMPLE) * 1000))


def _positive(value: int | None) -> int | None:
    return value if value is not None and value > 0 else None


def _has_output(path: Path) -> bool:
    return path.is_file() and path.stat().st_size > 0


class VoiceTranscoder:
    """Runs SILK decode and encode for one account."""

    def __init__(
        self,
        config: GeweAccountConfig,
        installer: SilkBinaryProvider | None = None,
    ) -> None:
        self._config = config
        self._installer = installer

    @property
    def ffmpeg_path(self) -> str:
        return (self._config.voice_ffmpeg_path or "").strip() or DEFAULT_FFMPEG

    @property
    def encode_sample_rate(self) -> int:
        return _positive(self._config.voice_sample_rate) or DEFAULT_SAMPLE_RATE

    @property
    def decode_sample_rate(self) -> int:
        return (
            _positive(self._config.voice_decode_sample_rate)
            or _positive(self._config.voice_sample_rate)
            or DEFAULT_SAMPLE_RATE
        )

    async def _rust_silk(self) -> str | None:
        if self._installer is None:
            return None
        return await self._installer.ensure()

    async def decode_candidates(self) -> list[Candidate]:
        """(binary, argument template) pairs to try, in order."""
        cfg = self._config
        custom_path = (cfg.voice_decode_path or "").strip()
        wav = cfg.voice_decode_output == "wav"
        rust_template = RUST_SILK_DECODE_TEMPLATE + (("--wav",) if wav else ())

        rust_silk = None if custom_path else await self._rust_silk()
        if cfg.voice_decode_args:
            templates: list[Sequence[str]] = [cfg.voice_decode_args]
        elif rust_silk:
            templates = [rust_template]
        else:
            templates = list(LEGACY_DECODE_TEMPLATES)

        if custom_path:
            binaries = [custom_path]
        elif rust_silk:
            binaries = [rust_silk]
        else:
            binaries = list(LEGACY_DECODERS)
        return list(itertools.product(binaries, templates))

    async def encode_candidates(self) -> list[Candidate]:
        cfg = self._config
        custom_path = (cfg.voice_silk_path or "").strip()
        rust_silk = None if custom_path else await self._rust_silk()
        if cfg.voice_silk_args:
            templates: list[Sequence[str]] = [cfg.voice_silk_args]
        elif rust_silk:
            templates = [RUST_SILK_ENCODE_TEMPLATE]
        else:
            templates = list(LEGACY_ENCODE_TEMPLATES)
        binary = custom_path or rust_silk or LEGACY_ENCODER
        return [(binary, template) for template in templates]

    async def _try_candidates(
        self,
        candidates: Sequence[Candidate],
        input_path: Path,
        output_path: Path,
        sample_rate: int,
    ) -> tuple[bool, str | None]:
        last_error: str | None = None
        for binary, template in candidates:
            args = resolve_template_args(
                template, str(input_path), str(output_path), sample_rate,
            )
            result = await run_command([binary, *args], timeout=VOICE_TIMEOUT_SECONDS)
            if result.ok and _has_output(output_path):
                return True, None
            last_error = result.describe_failure()
        return False, last_error

    async def decode(self, buffer: bytes) -> DecodedVoice | None:
        """Decode a SILK buffer to WAV, or None when no decoder succeeds."""
        try:
            return await self._decode(buffer)
        except OSError as e:
            logger.warning("Voice decode failed: %s", e)
            return None

    async def _decode(self, buffer: bytes) -> DecodedVoice | None:
        sample_rate = self.decode_sample_rate
        wav_output = self._config.voice_decode_output == "wav"
        candidates = await self.decode_candidates()

        with tempfile.TemporaryDirectory(prefix="gewe-voice-in-") as tmp:
            tmp_dir = Path(tmp)
            silk_path = tmp_dir / "voice.silk"
            decode_path = tmp_dir / ("voice.wav" if wav_output else "voice.pcm")
            wav_path = decode_path if wav_output else tmp_dir / "voice.wav"
            silk_path.write_bytes(buffer)

            decoded, last_error = await self._try_candidates(
                candidates, silk_path, decode_path, sample_rate,
            )
            if not decoded:
                logger.warning(
                    "Voice decode failed: %s", last_error or "decoder not available",
                )
                return None

            if not wav_output:
                result = await run_command(
                    [
                        self.ffmpeg_path, "-y",
                        "-f", "s16le", "-ar", str(sample_rate), "-ac", "1",
                        "-i", str(decode_path),
                        str(wav_path),
                    ],
                    timeout=VOICE_TIMEOUT_SECONDS,
                )
                if not result.ok:
                    logger.warning("Voice ffmpeg wrap failed: %s", result.describe_failure())
                    return None
                if not _has_output(wav_path):
                    logger.warning("Voice ffmpeg wrap produced empty output")
                    return None

            wav = wav_path.read_bytes()
        if not wav:
            return None
        return DecodedVoice(buffer=wav)

    async def encode(self, source_path: str) -> EncodedVoice | None:
        """Encode an audio file to SILK; None when disabled or on failure."""
        if not self._config.voice_auto_convert:
            return None
        try:
            return await self._encode(source_path)
        except (VoiceEncodeError, OSError) as e:
            logger.warning("Voice convert failed: %s", e)
            return None

    async def _encode(self, source_path: str) -> EncodedVoice:
        sample_rate = self.encode_sample_rate
        candidates = await self.encode_candidates()

        with tempfile.TemporaryDirectory(prefix="gewe-voice-out-") as tmp:
            tmp_dir = Path(tmp)
            pcm_path = tmp_dir / "voice.pcm"
            silk_path = tmp_dir / "voice.silk"

            result = await run_command(
                [
                    self.ffmpeg_path, "-y",
                    "-i", source_path,
                    "-ac", "1", "-ar", str(sample_rate),
                    "-f", "s16le",
                    str(pcm_path),
                ],
                timeout=VOICE_TIMEOUT_SECONDS,
            )
            if not result.ok:
                raise VoiceEncodeError(f"ffmpeg failed: {result.describe_failure()}")

            size = pcm_path.stat().st_size
            frame_bytes = pcm_frame_bytes(sample_rate)
            if frame_bytes and size % frame_bytes:
                size -= size % frame_bytes
                if size <= 0:
                    raise VoiceEncodeError("ffmpeg produced empty PCM after frame trim")
                with pcm_path.open("r+b") as fh:
                    fh.truncate(size)
            duration_ms = pcm_duration_ms(size, sample_rate)

            encoded, last_error = await self._try_candidates(
                candidates, pcm_path, silk_path, sample_rate,
            )
            if not encoded:
                raise VoiceEncodeError(
                    f"silk encoder failed ({candidates[0][0]}): {last_error or 'unknown error'}",
                )
            buffer = silk_path.read_bytes()

        return EncodedVoice(buffer=buffer, duration_ms=duration_ms)
