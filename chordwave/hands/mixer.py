"""CHORDWAVE Mixer: renders note timelines to a stereo buffer.

Each NoteEvent becomes a Voice that is rendered on a worker thread and
summed into the shared stereo bus under a lock. The bus then goes
through the session's reverb, headroom and a hard clamp to [-1, 1].

If synthesis fails mid-render the mixer hands back a short fallback
sine instead of an empty or corrupt buffer.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
import structlog
from numpy.typing import NDArray

from chordwave.config import settings
from chordwave.errors import SynthesisError, ValidationError
from chordwave.grid.sequencer import DRUM_CHANNEL, NoteEvent, Timeline
from chordwave.hands.effects import ReverbConfig, ReverbEngine
from chordwave.hands.synth import PERCUSSION, InstrumentSettings, Voice, preset_for

logger = structlog.get_logger()

# MIDI channel → stereo position (-1 left .. +1 right)
CHANNEL_PAN: dict[int, float] = {
    0: -0.2,
    1: 0.0,
    DRUM_CHANNEL: 0.15,
}


# ── Data Types ───────────────────────────────────────────


@dataclass
class PanConfig:
    """Stereo panning."""

    position: float = 0.0  # -1 (left) to +1 (right)

    @property
    def left_gain(self) -> float:
        """Left channel gain (constant power panning)."""
        angle = (self.position + 1) * 0.25 * np.pi
        return float(np.cos(angle))

    @property
    def right_gain(self) -> float:
        """Right channel gain (constant power panning)."""
        angle = (self.position + 1) * 0.25 * np.pi
        return float(np.sin(angle))


def pan_for_channel(channel: int) -> PanConfig:
    return PanConfig(position=CHANNEL_PAN.get(channel, 0.0))


def fallback_tone(
    sr: int = settings.sample_rate,
    samples: int = settings.fallback_samples,
    freq: float = settings.fallback_tone_hz,
) -> NDArray[np.float64]:
    """Short 0.5-amplitude sine on both channels."""
    t = np.arange(samples, dtype=np.float64) / sr
    tone = 0.5 * np.sin(2 * np.pi * freq * t)
    return np.column_stack([tone, tone])


def finalize(
    bus: NDArray[np.float64],
    headroom: float = settings.headroom,
    normalize: bool = True,
) -> NDArray[np.float64]:
    """Headroom, clamp and NaN scrub for a stereo bus."""
    bus = np.nan_to_num(bus, nan=0.0, posinf=0.0, neginf=0.0)
    if normalize:
        peak = float(np.max(np.abs(bus))) if bus.size else 0.0
        if peak > 1.0:
            bus = bus / peak
    return np.clip(bus * headroom, -1.0, 1.0)


# ── Mixer Engine ─────────────────────────────────────────


class Mixer:
    """Timeline renderer with threaded voices and a locked stereo merge.

    Args:
        sample_rate: Output sample rate.
        headroom: Fixed attenuation applied before the clamp.
        workers: Voice rendering threads.
        reverb: Optional reverb for the bus. Each render builds fresh engines.
        seed: Seed for per-note vibrato jitter.
        normalize: Scale the bus down to unit peak before headroom.
        max_seconds: Longest timeline accepted for rendering.
    """

    def __init__(
        self,
        sample_rate: int = settings.sample_rate,
        headroom: float = settings.headroom,
        workers: int = settings.render_workers,
        reverb: ReverbConfig | None = None,
        seed: int | None = None,
        normalize: bool = True,
        max_seconds: float = settings.max_render_seconds,
    ) -> None:
        if sample_rate <= 0:
            raise ValidationError(f"sample rate must be positive, got {sample_rate}")
        self.sample_rate = sample_rate
        self.headroom = headroom
        self.workers = max(1, workers)
        self.reverb = reverb
        self.seed = seed
        self.normalize = normalize
        self.max_seconds = max_seconds

    def instrument_for(self, channel: int, timeline: Timeline, overrides: dict[int, InstrumentSettings]) -> InstrumentSettings:
        if channel in overrides:
            return overrides[channel]
        if channel == DRUM_CHANNEL:
            return PERCUSSION
        return preset_for(timeline.programs.get(channel, 0))

    def build_voices(
        self,
        timeline: Timeline,
        instruments: dict[int, InstrumentSettings] | None = None,
    ) -> list[Voice]:
        """One released Voice per event, timed by the timeline's tempo."""
        overrides = instruments or {}
        rng = np.random.default_rng(self.seed)
        voices: list[Voice] = []
        for event in timeline.events:
            start = timeline.ticks_to_seconds(event.start_tick)
            voice = Voice.from_note(
                event.pitch,
                event.velocity,
                self.instrument_for(event.channel, timeline, overrides),
                start_time=start,
                channel=event.channel,
                rng=rng,
            )
            voice.release(timeline.ticks_to_seconds(event.end_tick))
            voices.append(voice)
        return voices

    def render(
        self,
        timeline: Timeline,
        instruments: dict[int, InstrumentSettings] | None = None,
    ) -> NDArray[np.float64]:
        """Render ``timeline`` to stereo audio, shape (n, 2), values in [-1, 1].

        Args:
            timeline: Note events with tempo and programs.
            instruments: Per-channel instrument overrides.

        Returns:
            Stereo float64 buffer. Never empty: one second of silence for an
            empty timeline, a fallback tone if synthesis fails.

        Raises:
            ValidationError: Timeline longer than ``max_seconds``.
        """
        sr = self.sample_rate
        if not timeline.events:
            return np.zeros((sr, 2), dtype=np.float64)
        if timeline.duration_s > self.max_seconds:
            raise ValidationError(
                f"Timeline lasts {timeline.duration_s:.1f} s (limit {self.max_seconds:.0f} s)"
            )

        try:
            voices = self.build_voices(timeline, instruments)
            tail = self.reverb.tail_seconds if self.reverb is not None else 0.0
            bus = self._render_voices(voices, tail)
            if self.reverb is not None:
                for ch in range(2):
                    bus[:, ch] = ReverbEngine(self.reverb, sr).process(bus[:, ch])
        except ValidationError:
            raise
        except Exception as e:
            logger.error("mixer.render.fallback", error=str(e), error_type=type(e).__name__)
            return fallback_tone(sr)

        out = finalize(bus, self.headroom, self.normalize)
        logger.info("mixer.render.done", voices=len(voices), samples=len(out), sample_rate=sr)
        return out

    def render_events(
        self,
        events: list[NoteEvent],
        bpm: int = settings.default_bpm,
        ticks_per_quarter: int = settings.ticks_per_quarter,
        programs: dict[int, int] | None = None,
    ) -> NDArray[np.float64]:
        """Convenience wrapper for a bare event list."""
        timeline = Timeline(
            events=tuple(events),
            bpm=bpm,
            ticks_per_quarter=ticks_per_quarter,
            programs=programs or {},
        )
        return self.render(timeline)

    def _render_voices(self, voices: list[Voice], tail_s: float = 0.0) -> NDArray[np.float64]:
        sr = self.sample_rate
        end = max(v.end_time or v.start_time for v in voices) + tail_s
        total = max(1, int(np.ceil(end * sr)) + 1)
        bus = np.zeros((total, 2), dtype=np.float64)
        lock = threading.Lock()

        def work(voice: Voice) -> None:
            start = int(round(voice.start_time * sr))
            n = max(0, min(total - start, int(np.ceil(((voice.end_time or voice.start_time) - voice.start_time) * sr)) + 1))
            if n == 0:
                return
            mono = voice.render(n, sr)
            if not np.all(np.isfinite(mono)):
                raise SynthesisError(f"non-finite samples from voice at {voice.frequency:.1f} Hz")
            pan = pan_for_channel(voice.channel)
            with lock:
                bus[start:start + n, 0] += mono * pan.left_gain
                bus[start:start + n, 1] += mono * pan.right_gain

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            # list() re-raises the first worker exception
            list(pool.map(work, voices))

        return bus
