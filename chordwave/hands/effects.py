"""CHORDWAVE Effects Engine: delay-line reverb.

Parallel comb taps read from one ring buffer of dry input, then a fixed
three-stage all-pass chain diffuses the result into a smooth tail.

  dry ──► ring buffer ──► comb taps (averaged) ──► all-pass ×3 ──► wet
  out = dry·(1 − w) + wet·w·e^(−w/2)

Each ReverbEngine owns its buffer and filter state; one engine per
render session and per output channel.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
import structlog
from numpy.typing import NDArray
from scipy.signal import lfilter

from chordwave.config import settings
from chordwave.errors import ReverbConfigError

logger = structlog.get_logger()

# (delay seconds, gain) per all-pass stage
ALLPASS_STAGES: list[tuple[float, float]] = [
    (0.005, 0.7),
    (0.0017, 0.6),
    (0.0005, 0.5),
]

MAX_CHUNK = 4096


# ── Data Types ───────────────────────────────────────────


@dataclass(frozen=True)
class ReverbConfig:
    """Comb taps, wet amount and optional pre-delay."""

    delays: tuple[float, ...] = (0.03, 0.05, 0.07)  # Seconds per comb tap
    decays: tuple[float, ...] = (0.6, 0.4, 0.2)  # 0-1 per comb tap
    wet: float = 0.3  # 0-1
    pre_delay_enabled: bool = False
    pre_delay_s: float = 0.025

    def __post_init__(self) -> None:
        object.__setattr__(self, "delays", tuple(float(d) for d in self.delays))
        object.__setattr__(self, "decays", tuple(float(d) for d in self.decays))
        if not self.delays or not self.decays:
            raise ReverbConfigError("Reverb needs at least one delay/decay tap")
        if len(self.delays) != len(self.decays):
            raise ReverbConfigError(
                f"Reverb delays ({len(self.delays)}) and decays ({len(self.decays)}) differ in length"
            )
        if any(d < 0 for d in self.delays):
            raise ReverbConfigError(f"Reverb delay times must be non-negative: {self.delays}")
        if any(not 0.0 <= d <= 1.0 for d in self.decays):
            raise ReverbConfigError(f"Reverb decay factors must be within [0, 1]: {self.decays}")
        if not 0.0 <= self.wet <= 1.0:
            raise ReverbConfigError(f"Reverb wet amount must be within [0, 1]: {self.wet}")
        if self.pre_delay_s < 0:
            raise ReverbConfigError(f"Pre-delay must be non-negative: {self.pre_delay_s}")

    @property
    def active_pre_delay(self) -> float:
        return self.pre_delay_s if self.pre_delay_enabled else 0.0

    @property
    def tail_seconds(self) -> float:
        """How long the reverb keeps sounding after the input stops."""
        return self.active_pre_delay + max(self.delays) + sum(d for d, _ in ALLPASS_STAGES)


REVERB_PRESETS: dict[str, ReverbConfig] = {
    "default": ReverbConfig(),
    "small_room": ReverbConfig(
        delays=(0.02, 0.03, 0.04),
        decays=(0.5, 0.3, 0.1),
        wet=0.2,
        pre_delay_enabled=True,
        pre_delay_s=0.01,
    ),
    "large_hall": ReverbConfig(
        delays=(0.04, 0.06, 0.08),
        decays=(0.7, 0.5, 0.3),
        wet=0.5,
        pre_delay_enabled=True,
        pre_delay_s=0.02,
    ),
}


def reverb_preset(name: str) -> ReverbConfig:
    preset = REVERB_PRESETS.get(name.lower())
    if preset is None:
        raise ReverbConfigError(f"Unknown reverb preset: {name!r} (available: {sorted(REVERB_PRESETS)})")
    return preset


# ── Reverb Engine ────────────────────────────────────────


class ReverbEngine:
    """Comb + all-pass reverb over a fixed-capacity ring buffer.

    Args:
        config: Taps, wet amount and pre-delay.
        sample_rate: Session sample rate.
        buffer_seconds: Ring buffer length; longer tap delays are clamped.
    """

    def __init__(
        self,
        config: ReverbConfig | None = None,
        sample_rate: int = settings.sample_rate,
        buffer_seconds: float = settings.reverb_buffer_seconds,
    ) -> None:
        self.config = config or ReverbConfig()
        self.sample_rate = sample_rate
        self.capacity = max(4, int(sample_rate * buffer_seconds))
        # Interpolation reads one sample past the delay, and that sample
        # must not be the one just written.
        self.max_delay_samples = float(self.capacity - 2)

        self.buffer = np.zeros(self.capacity, dtype=np.float64)
        self.write_index = 0

        pre = self.config.active_pre_delay
        delays: list[float] = []
        for d in self.config.delays:
            samples = (pre + d) * sample_rate
            if samples > self.max_delay_samples:
                logger.warning(
                    "reverb.delay.clamped",
                    requested_s=pre + d,
                    max_s=self.max_delay_samples / sample_rate,
                )
                samples = self.max_delay_samples
            delays.append(samples)
        self.tap_delays = np.array(delays, dtype=np.float64)
        self.tap_gains = np.array(
            [math.exp(-d * 5.0) * decay for d, decay in zip(self.config.delays, self.config.decays)],
            dtype=np.float64,
        )

        self._allpass = []
        for delay_s, g in ALLPASS_STAGES:
            d = max(1, round(delay_s * sample_rate))
            b = np.zeros(d + 1)
            a = np.zeros(d + 1)
            b[0], b[d] = -g, 1.0
            a[0], a[d] = 1.0, -g
            self._allpass.append((b, a))
        self._allpass_state = [np.zeros(len(b) - 1) for b, _ in self._allpass]

        # Samples of history the deepest tap and its interpolation partner need
        self._history = math.floor(self.tap_delays.max()) + 1
        self.chunk_size = min(MAX_CHUNK, self.capacity)

    def reset(self) -> None:
        self.buffer[:] = 0.0
        self.write_index = 0
        self._allpass_state = [np.zeros(len(b) - 1) for b, _ in self._allpass]

    def read(self, delay_samples: float) -> float:
        """Sample ``delay_samples`` behind the newest write, linearly interpolated."""
        d = min(max(0.0, delay_samples), self.max_delay_samples)
        newest = (self.write_index - 1) % self.capacity
        i = math.floor(d)
        frac = d - i
        s0 = self.buffer[(newest - i) % self.capacity]
        s1 = self.buffer[(newest - i - 1) % self.capacity]
        return float(s0 * (1.0 - frac) + s1 * frac)

    def _comb(self, block: NDArray[np.float64]) -> NDArray[np.float64]:
        """Write ``block`` into the ring and return the averaged comb taps."""
        out = np.empty_like(block)
        h = self._history
        for start in range(0, len(block), self.chunk_size):
            chunk = block[start:start + self.chunk_size]
            n = len(chunk)
            # Taps read from history + chunk before the chunk overwrites the ring
            past = self.buffer[(self.write_index - h + np.arange(h)) % self.capacity]
            window = np.concatenate([past, chunk])
            idx = h + np.arange(n)

            acc = np.zeros(n, dtype=np.float64)
            for d, g in zip(self.tap_delays, self.tap_gains):
                i = math.floor(d)
                frac = d - i
                s0 = window[idx - i]
                s1 = window[idx - i - 1]
                acc += g * (s0 * (1.0 - frac) + s1 * frac)
            out[start:start + n] = acc / len(self.tap_delays)

            self.buffer[(self.write_index + np.arange(n)) % self.capacity] = chunk
            self.write_index = (self.write_index + n) % self.capacity
        return out

    def _diffuse(self, wet: NDArray[np.float64]) -> NDArray[np.float64]:
        # y[n] = -g·x[n] + x[n-D] + g·y[n-D]
        for k, (b, a) in enumerate(self._allpass):
            wet, self._allpass_state[k] = lfilter(b, a, wet, zi=self._allpass_state[k])
        return wet

    def process(self, block: NDArray[np.float64]) -> NDArray[np.float64]:
        """Reverberate a mono block. State carries over to the next call."""
        dry = np.asarray(block, dtype=np.float64)
        if dry.ndim != 1:
            raise ValueError(f"ReverbEngine.process expects mono audio, got shape {dry.shape}")
        if len(dry) == 0:
            return dry.copy()

        wet = self._diffuse(self._comb(dry))
        amount = self.config.wet
        return dry * (1.0 - amount) + wet * amount * math.exp(-amount * 0.5)

    def process_sample(self, sample: float) -> float:
        return float(self.process(np.array([sample], dtype=np.float64))[0])


def apply_reverb(
    audio: NDArray[np.float64],
    config: ReverbConfig | None = None,
    sr: int = settings.sample_rate,
) -> NDArray[np.float64]:
    """Reverb for mono (N,) or stereo (N, 2) audio with one engine per channel."""
    config = config or ReverbConfig()
    if audio.ndim == 1:
        return ReverbEngine(config, sr).process(audio)
    out = np.empty_like(audio, dtype=np.float64)
    for ch in range(audio.shape[1]):
        out[:, ch] = ReverbEngine(config, sr).process(audio[:, ch])
    return out
