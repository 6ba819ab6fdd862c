"""CHORDWAVE Synthesis Engine: additive harmonic oscillators and voices.

numpy implementation; scipy only filters pink noise. Every timbre is a
list of Harmonics (frequency ratio, amplitude, phase) and the classic
waveforms are preset harmonic lists:
  - square:   odd harmonics, amplitude 1/n
  - sawtooth: harmonics 1..N, amplitude 1/n
  - triangle: odd harmonics, amplitude 1/n², alternating sign

Output is normalized by the summed absolute amplitude, so an oscillator
never leaves [-1, 1] before envelope and velocity are applied.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

import numpy as np
from numpy.typing import NDArray

from chordwave.errors import ValidationError
from chordwave.hands.envelope import VoiceEnvelope

WaveType = Literal["sine", "square", "sawtooth", "triangle", "composite"]

TWO_PI = 2.0 * math.pi


# ── Data Types ───────────────────────────────────────────


@dataclass(frozen=True)
class Harmonic:
    """One partial of an additive voice."""

    ratio: float = 1.0  # Multiple of the fundamental (may be non-integer)
    amplitude: float = 1.0
    phase: float = 0.0  # Radians

    def __post_init__(self) -> None:
        if self.ratio <= 0:
            raise ValidationError(f"harmonic ratio must be positive, got {self.ratio}")


# ── Harmonic Presets ─────────────────────────────────────


def sine_harmonics() -> tuple[Harmonic, ...]:
    return (Harmonic(1, 1.0),)


def square_harmonics(partials: int = 5) -> tuple[Harmonic, ...]:
    """Odd harmonics 1, 3, 5, ... at 1/n."""
    return tuple(Harmonic(n, 1.0 / n) for n in range(1, 2 * partials, 2))


def sawtooth_harmonics(partials: int = 10) -> tuple[Harmonic, ...]:
    """All harmonics 1..N at 1/n."""
    return tuple(Harmonic(n, 1.0 / n) for n in range(1, partials + 1))


def triangle_harmonics(partials: int = 5) -> tuple[Harmonic, ...]:
    """Odd harmonics at 1/n², sign flipping on every other one (+1, -3, +5, -7...)."""
    return tuple(
        Harmonic(n, (1.0 if n % 4 == 1 else -1.0) / (n * n))
        for n in range(1, 2 * partials, 2)
    )


WAVE_PRESETS: dict[str, Callable[[], tuple[Harmonic, ...]]] = {
    "sine": sine_harmonics,
    "square": square_harmonics,
    "sawtooth": sawtooth_harmonics,
    "triangle": triangle_harmonics,
}


def wave_harmonics(wave: WaveType, custom: tuple[Harmonic, ...] = ()) -> tuple[Harmonic, ...]:
    """Harmonic set for a wave tag. ``composite`` uses ``custom`` (sine if empty)."""
    if wave == "composite":
        return tuple(custom) or sine_harmonics()
    preset = WAVE_PRESETS.get(wave)
    if preset is None:
        raise ValidationError(f"Unknown wave type: {wave!r}")
    return preset()


# ── Instruments ──────────────────────────────────────────


@dataclass
class InstrumentSettings:
    """Timbre, envelope and vibrato for one GM program."""

    name: str = "Default Instrument"
    program: int = 0  # GM program 0-127
    wave: WaveType = "composite"
    attack_s: float = 0.05
    decay_s: float = 0.15
    sustain: float = 0.6  # Clamped to 0-1
    release_s: float = 0.2
    harmonics: tuple[Harmonic, ...] = field(default_factory=tuple)
    vibrato_depth: float = 0.0  # Fraction of the fundamental
    vibrato_rate: float = 5.0  # Hz

    def __post_init__(self) -> None:
        if not 0 <= self.program <= 127:
            raise ValidationError(f"Instrument must be between 0 and 127, got {self.program}")
        for label, value in (("attack", self.attack_s), ("decay", self.decay_s), ("release", self.release_s)):
            if value < 0:
                raise ValidationError(f"{label} time must be non-negative, got {value}")
        if self.wave != "composite" and self.wave not in WAVE_PRESETS:
            raise ValidationError(f"Unknown wave type: {self.wave!r}")
        self.sustain = min(1.0, max(0.0, self.sustain))
        self.harmonics = tuple(self.harmonics)

    def harmonic_set(self) -> tuple[Harmonic, ...]:
        return wave_harmonics(self.wave, self.harmonics)

    def envelope(self) -> VoiceEnvelope:
        return VoiceEnvelope(self.attack_s, self.decay_s, self.sustain, self.release_s)


INSTRUMENT_PRESETS: dict[int, InstrumentSettings] = {
    0: InstrumentSettings(
        name="Acoustic Grand Piano",
        program=0,
        attack_s=0.01, decay_s=0.1, sustain=0.5, release_s=0.2,
        harmonics=(Harmonic(1, 0.6), Harmonic(2, 0.3), Harmonic(3, 0.1)),
        vibrato_depth=0.002, vibrato_rate=5.0,
    ),
    25: InstrumentSettings(
        name="Steel String Guitar",
        program=25,
        attack_s=0.05, decay_s=0.2, sustain=0.4, release_s=0.3,
        harmonics=(Harmonic(1, 0.5), Harmonic(2, 0.25), Harmonic(3, 0.15), Harmonic(4, 0.1)),
        vibrato_depth=0.01, vibrato_rate=3.0,
    ),
    33: InstrumentSettings(
        name="Electric Bass",
        program=33,
        attack_s=0.01, decay_s=0.15, sustain=0.7, release_s=0.1,
        harmonics=(Harmonic(1, 0.8), Harmonic(2, 0.15), Harmonic(3, 0.05)),
    ),
    41: InstrumentSettings(
        name="Violin",
        program=41,
        wave="sawtooth",
        attack_s=0.1, decay_s=0.15, sustain=0.7, release_s=0.25,
        vibrato_depth=0.015, vibrato_rate=6.0,
    ),
    73: InstrumentSettings(
        name="Flute",
        program=73,
        wave="sine",
        attack_s=0.08, decay_s=0.12, sustain=0.8, release_s=0.15,
        vibrato_depth=0.015, vibrato_rate=4.0,
    ),
    80: InstrumentSettings(
        name="Square Lead",
        program=80,
        wave="square",
        attack_s=0.01, decay_s=0.1, sustain=0.8, release_s=0.1,
    ),
}

# Channel 10 kit: short inharmonic thump
PERCUSSION = InstrumentSettings(
    name="Percussion",
    program=0,
    attack_s=0.001, decay_s=0.12, sustain=0.0, release_s=0.05,
    harmonics=(Harmonic(1, 0.7), Harmonic(1.47, 0.2), Harmonic(2.09, 0.1)),
)


def preset_for(program: int) -> InstrumentSettings:
    """Instrument for a GM program, falling back to a generic composite voice."""
    preset = INSTRUMENT_PRESETS.get(program)
    if preset is not None:
        return preset
    return InstrumentSettings(
        name="Default Instrument",
        program=program,
        harmonics=(Harmonic(1, 0.8), Harmonic(2, 0.15), Harmonic(3, 0.05)),
        vibrato_depth=0.005,
    )


def midi_to_freq(note: float) -> float:
    """A4 = 440 Hz equal temperament."""
    return 440.0 * (2.0 ** ((note - 69) / 12.0))


# ── Vibrato ──────────────────────────────────────────────

MAX_VIBRATO_DEPTH = 0.03
VIBRATO_FADE_IN_S = 0.3


def vibrato_coefficients(program: int) -> tuple[float, float]:
    """(depth, rate) multipliers for an instrument family."""
    if program in (40, 41, 42):  # Bowed strings
        return 1.5, 0.9
    if program in (54, 55):  # Voice
        return 1.8, 0.8
    if program in (64, 65):  # Reeds
        return 1.2, 1.1
    if program == 16:  # Organ
        return 0.5, 1.2
    return 1.0, 1.0


@dataclass(frozen=True)
class Vibrato:
    """Frequency modulation: f_eff = f · (1 + depth · sin(2π · rate · t))."""

    depth: float
    rate: float  # Hz
    fade_in_s: float = VIBRATO_FADE_IN_S

    def modulation(self, t: NDArray[np.float64]) -> NDArray[np.float64]:
        if self.fade_in_s > 0:
            fade = np.clip(t / self.fade_in_s, 0.0, 1.0) ** 3
        else:
            fade = 1.0
        return self.depth * fade * np.sin(TWO_PI * self.rate * t)


def vibrato_for(
    instrument: InstrumentSettings,
    velocity: float = 1.0,
    note: int = 69,
    rng: np.random.Generator | None = None,
) -> Vibrato | None:
    """Vibrato for one note, or None when the instrument has none.

    Depth grows with velocity; rate speeds up for high notes and slows
    for low ones. With ``rng`` the rate gets a ±2.5% per-note jitter.
    """
    depth_k, rate_k = vibrato_coefficients(instrument.program)
    depth = instrument.vibrato_depth * depth_k * (0.8 + 0.4 * velocity)
    if depth <= 0:
        return None

    rate = instrument.vibrato_rate * rate_k
    if note > 72:
        rate *= 1.2
    elif note < 48:
        rate *= 0.8
    if rng is not None:
        rate *= 1.0 + rng.uniform(-0.025, 0.025)

    return Vibrato(depth=min(depth, MAX_VIBRATO_DEPTH), rate=rate)


# ── Oscillator Core ──────────────────────────────────────


class HarmonicOscillator:
    """Additive oscillator over a fixed harmonic set."""

    def __init__(self, harmonics: tuple[Harmonic, ...] | list[Harmonic]) -> None:
        if not harmonics:
            raise ValidationError("Oscillator needs at least one harmonic")
        self.harmonics = tuple(harmonics)
        self._ratios = np.array([h.ratio for h in self.harmonics], dtype=np.float64)
        self._amps = np.array([h.amplitude for h in self.harmonics], dtype=np.float64)
        self._phases = np.array([h.phase for h in self.harmonics], dtype=np.float64)
        total = float(np.sum(np.abs(self._amps)))
        self.norm = 1.0 / total if total > 0 else 1.0

    def phase(
        self,
        frequency: float,
        n: int,
        sr: int = 44100,
        start_s: float = 0.0,
        vibrato: Vibrato | None = None,
        phase0: float | None = None,
    ) -> tuple[NDArray[np.float64], float]:
        """Fundamental phase per sample, plus the phase the next block starts at."""
        base = TWO_PI * frequency * start_s if phase0 is None else phase0
        if vibrato is None or vibrato.depth <= 0:
            steps = np.arange(n + 1, dtype=np.float64) * (frequency / sr)
        else:
            t = start_s + np.arange(n, dtype=np.float64) / sr
            inst = frequency * (1.0 + vibrato.modulation(t))
            steps = np.concatenate(([0.0], np.cumsum(inst))) / sr
        phase = base + TWO_PI * steps
        return phase[:n], float(phase[n])

    def render(
        self,
        frequency: float,
        n: int,
        sr: int = 44100,
        start_s: float = 0.0,
        vibrato: Vibrato | None = None,
        phase0: float | None = None,
    ) -> NDArray[np.float64]:
        """Normalized additive waveform for ``n`` samples.

        Args:
            frequency: Fundamental in Hz.
            n: Number of samples.
            sr: Sample rate.
            start_s: Time of the first sample relative to note-on.
            vibrato: Optional frequency modulation.
            phase0: Continue from a previous block's end phase.

        Returns:
            Float64 array in [-1, 1].
        """
        return self.render_block(frequency, n, sr, start_s, vibrato, phase0)[0]

    def render_block(
        self,
        frequency: float,
        n: int,
        sr: int = 44100,
        start_s: float = 0.0,
        vibrato: Vibrato | None = None,
        phase0: float | None = None,
    ) -> tuple[NDArray[np.float64], float]:
        if n <= 0:
            return np.zeros(0, dtype=np.float64), phase0 or 0.0
        phase, next_phase = self.phase(frequency, n, sr, start_s, vibrato, phase0)
        # (partials, samples) → sum over partials
        partials = np.sin(np.outer(self._ratios, phase) + self._phases[:, None])
        out = (self._amps @ partials) * self.norm
        return out.astype(np.float64), next_phase


# ── Noise + Test Signals ─────────────────────────────────

# Paul Kellet's pink filter: (pole, white gain) per one-pole section
PINK_POLES: list[tuple[float, float]] = [
    (0.99886, 0.0555179),
    (0.99332, 0.0750759),
    (0.96900, 0.1538520),
    (0.86650, 0.3104856),
    (0.5, 0.5329522),
    (-0.192, 0.5362),
]
PINK_DIRECT_GAIN = 0.1156
PINK_SCALE = 0.11  # Brings the summed sections back to roughly unit range


def white_noise(n: int, rng: np.random.Generator) -> NDArray[np.float64]:
    """Uniform noise in [-1, 1)."""
    return rng.uniform(-1.0, 1.0, max(0, n))


def pink_noise(n: int, rng: np.random.Generator) -> NDArray[np.float64]:
    """-3 dB/octave noise from filtered white noise, clamped to [-1, 1]."""
    from scipy.signal import lfilter

    white = white_noise(n, rng)
    out = white * PINK_DIRECT_GAIN
    for pole, gain in PINK_POLES:
        out += lfilter([gain], [1.0, -pole], white)
    return np.clip(out * PINK_SCALE, -1.0, 1.0)


def sweep(
    start_hz: float,
    end_hz: float,
    n: int,
    sr: int = 44100,
) -> NDArray[np.float64]:
    """Sine whose frequency moves linearly from ``start_hz`` to ``end_hz``."""
    if start_hz < 0 or end_hz < 0:
        raise ValidationError(f"Sweep frequencies must be non-negative: {start_hz}, {end_hz}")
    if n <= 0:
        return np.zeros(0, dtype=np.float64)
    freqs = start_hz + (end_hz - start_hz) * np.arange(n, dtype=np.float64) / n
    # Phase starts at 0 and integrates the previous samples' frequency
    phase = np.concatenate(([0.0], np.cumsum(TWO_PI * freqs[:-1] / sr)))
    return np.sin(phase)


def pulse(
    frequency: float,
    duty_cycle: float,
    n: int,
    sr: int = 44100,
) -> NDArray[np.float64]:
    """±1 rectangle wave, high for ``duty_cycle`` of each period."""
    if frequency <= 0:
        raise ValidationError(f"Pulse frequency must be positive, got {frequency}")
    if not 0.0 <= duty_cycle <= 1.0:
        raise ValidationError(f"Duty cycle must be within [0, 1], got {duty_cycle}")
    period = sr / frequency
    position = np.arange(max(0, n), dtype=np.float64) % period
    return np.where(position < period * duty_cycle, 1.0, -1.0)


# ── Voices ───────────────────────────────────────────────


@dataclass
class Voice:
    """One sounding note: frequency, velocity and its own envelope state."""

    frequency: float
    velocity: float  # 0-1
    instrument: InstrumentSettings
    start_time: float = 0.0  # Session seconds at note-on
    note: int = 69
    channel: int = 0
    vibrato: Vibrato | None = None
    release_time: float | None = None
    active: bool = True
    envelope: VoiceEnvelope = field(init=False)
    oscillator: HarmonicOscillator = field(init=False, repr=False)
    _phase: float | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        self.velocity = min(1.0, max(0.0, self.velocity))
        self.envelope = self.instrument.envelope()
        self.oscillator = HarmonicOscillator(self.instrument.harmonic_set())

    @classmethod
    def from_note(
        cls,
        note: int,
        velocity: int,
        instrument: InstrumentSettings,
        start_time: float = 0.0,
        channel: int = 0,
        rng: np.random.Generator | None = None,
    ) -> Voice:
        """Voice for a MIDI note/velocity pair."""
        vel = velocity / 127.0
        return cls(
            frequency=midi_to_freq(note),
            velocity=vel,
            instrument=instrument,
            start_time=start_time,
            note=note,
            channel=channel,
            vibrato=vibrato_for(instrument, vel, note, rng),
        )

    @property
    def released(self) -> bool:
        return self.release_time is not None

    @property
    def end_time(self) -> float | None:
        """Session time at which the voice falls silent, once released."""
        finished = self.envelope.finished_at
        return None if finished is None else self.start_time + finished

    def release(self, at: float) -> None:
        if self.release_time is not None:
            return
        self.release_time = at
        self.envelope.trigger_release(at - self.start_time)

    def is_finished(self, now: float) -> bool:
        return self.envelope.is_finished(now - self.start_time)

    def render(self, n: int, sr: int = 44100, at: float | None = None) -> NDArray[np.float64]:
        """Render ``n`` samples starting at session time ``at`` (default: note-on).

        Consecutive calls continue the oscillator phase, so streaming a
        voice block by block stays click-free.
        """
        offset = 0.0 if at is None else at - self.start_time
        wave, self._phase = self.oscillator.render_block(
            self.frequency, n, sr, start_s=offset, vibrato=self.vibrato, phase0=self._phase,
        )
        env = self.envelope.render(n, sr, start_s=offset)
        return wave * env * self.velocity
