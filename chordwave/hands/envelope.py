"""CHORDWAVE Envelope Engine: ADSR amplitude state machine.

Each voice owns one VoiceEnvelope. The envelope moves through
Attack → Decay → Sustain → Release → Finished. Attack and decay run on
elapsed time since note-on; the release starts from whatever level the
envelope had when it was triggered and falls linearly to silence.
"""

from __future__ import annotations

from typing import Literal

import numpy as np
from numpy.typing import NDArray

from chordwave.errors import ValidationError

EnvelopeStage = Literal["attack", "decay", "sustain", "release", "finished"]


def _clamp01(value: float) -> float:
    return min(1.0, max(0.0, value))


class VoiceEnvelope:
    """Attack-Decay-Sustain-Release envelope with a triggered release.

    Times are seconds since note-on. ``sustain`` is clamped to [0, 1]
    when assigned.
    """

    def __init__(
        self,
        attack_s: float = 0.01,
        decay_s: float = 0.05,
        sustain: float = 0.7,
        release_s: float = 0.2,
    ) -> None:
        for label, value in (("attack", attack_s), ("decay", decay_s), ("release", release_s)):
            if value < 0:
                raise ValidationError(f"{label} time must be non-negative, got {value}")
        self.attack_s = float(attack_s)
        self.decay_s = float(decay_s)
        self.release_s = float(release_s)
        self.sustain = sustain
        self.release_start: float | None = None
        self.release_level = 0.0

    def __repr__(self) -> str:
        return (
            f"VoiceEnvelope(attack_s={self.attack_s}, decay_s={self.decay_s}, "
            f"sustain={self.sustain}, release_s={self.release_s})"
        )

    @property
    def sustain(self) -> float:
        return self._sustain

    @sustain.setter
    def sustain(self, value: float) -> None:
        self._sustain = _clamp01(float(value))

    @property
    def released(self) -> bool:
        return self.release_start is not None

    @property
    def finished_at(self) -> float | None:
        """Elapsed time at which the envelope reaches silence, once released."""
        if self.release_start is None:
            return None
        return self.release_start + self.release_s

    def _held(self, t: float) -> float:
        if t < 0:
            return 0.0
        if t < self.attack_s:
            return t / self.attack_s
        t -= self.attack_s
        if t < self.decay_s:
            return 1.0 + (self.sustain - 1.0) * (t / self.decay_s)
        return self.sustain

    def level(self, t: float) -> float:
        """Envelope value at ``t`` seconds after note-on."""
        if self.release_start is None or t < self.release_start:
            return _clamp01(self._held(t))
        dt = t - self.release_start
        if self.release_s <= 0 or dt >= self.release_s:
            return 0.0
        return _clamp01(self.release_level * (1.0 - dt / self.release_s))

    def stage(self, t: float) -> EnvelopeStage:
        if self.release_start is not None and t >= self.release_start:
            return "finished" if t - self.release_start > self.release_s else "release"
        if t < self.attack_s:
            return "attack"
        if t < self.attack_s + self.decay_s:
            return "decay"
        return "sustain"

    def trigger_release(self, t: float) -> None:
        """Start the release at ``t``, fading from the level held at that moment."""
        if self.release_start is not None:
            return
        self.release_level = _clamp01(self._held(t))
        self.release_start = max(0.0, t)

    def is_finished(self, t: float) -> bool:
        return self.stage(t) == "finished"

    def render(self, n: int, sr: int = 44100, start_s: float = 0.0) -> NDArray[np.float64]:
        """Envelope curve for ``n`` samples starting ``start_s`` after note-on."""
        t = start_s + np.arange(n, dtype=np.float64) / sr

        env = np.full(n, self.sustain, dtype=np.float64)
        if self.decay_s > 0:
            in_decay = t < self.attack_s + self.decay_s
            env[in_decay] = 1.0 + (self.sustain - 1.0) * (t[in_decay] - self.attack_s) / self.decay_s
        if self.attack_s > 0:
            in_attack = t < self.attack_s
            env[in_attack] = t[in_attack] / self.attack_s
        env[t < 0] = 0.0

        if self.release_start is not None:
            dt = t - self.release_start
            releasing = dt >= 0
            if self.release_s > 0:
                tail = self.release_level * np.maximum(0.0, 1.0 - dt[releasing] / self.release_s)
            else:
                tail = np.zeros(int(releasing.sum()))
            env[releasing] = tail

        return np.clip(env, 0.0, 1.0)
