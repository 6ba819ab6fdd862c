"""CHORDWAVE Voice Arena: live note-on/note-off synthesis.

Active voices live in a fixed set of slots. A VoiceHandle names a slot
plus the generation it was issued for; once a slot is reaped or stolen
its generation moves on, so stale handles are ignored instead of
touching whatever voice lives there now.

One lock guards note-on, note-off, reaping and the mixing pass.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

import mido
import numpy as np
import structlog
from numpy.typing import NDArray

from chordwave.config import settings
from chordwave.grid.sequencer import DRUM_CHANNEL
from chordwave.hands.effects import ReverbConfig, ReverbEngine
from chordwave.hands.mixer import finalize, pan_for_channel
from chordwave.hands.synth import PERCUSSION, InstrumentSettings, Voice, preset_for

logger = structlog.get_logger()


@dataclass(frozen=True)
class VoiceHandle:
    index: int
    generation: int


class VoicePool:
    """Fixed-capacity arena of voices addressed by generation-checked handles."""

    def __init__(self, capacity: int = settings.voice_capacity) -> None:
        if capacity < 1:
            raise ValueError(f"voice capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._slots: list[Voice | None] = [None] * capacity
        self._generations = [0] * capacity
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for v in self._slots if v is not None)

    def _free(self, index: int) -> None:
        voice = self._slots[index]
        if voice is not None:
            voice.active = False
        self._slots[index] = None
        self._generations[index] += 1

    def note_on(self, voice: Voice) -> VoiceHandle:
        """Place ``voice`` in a free slot, stealing the oldest voice when full."""
        with self._lock:
            index = next((i for i, v in enumerate(self._slots) if v is None), None)
            if index is None:
                index = min(
                    range(self.capacity),
                    key=lambda i: self._slots[i].start_time,  # type: ignore[union-attr]
                )
                logger.warning("voices.pool.steal", slot=index, capacity=self.capacity)
                self._free(index)
            self._slots[index] = voice
            return VoiceHandle(index, self._generations[index])

    def get(self, handle: VoiceHandle) -> Voice | None:
        with self._lock:
            return self._lookup(handle)

    def _lookup(self, handle: VoiceHandle) -> Voice | None:
        if not 0 <= handle.index < self.capacity:
            return None
        if self._generations[handle.index] != handle.generation:
            return None
        return self._slots[handle.index]

    def note_off(self, handle: VoiceHandle, at: float) -> bool:
        """Release the voice behind ``handle``. False for stale handles."""
        with self._lock:
            voice = self._lookup(handle)
            if voice is None:
                return False
            voice.release(at)
            return True

    def release_note(self, channel: int, note: int, at: float) -> int:
        """Release every held voice playing ``note`` on ``channel``."""
        released = 0
        with self._lock:
            for voice in self._slots:
                if voice is not None and not voice.released and voice.channel == channel and voice.note == note:
                    voice.release(at)
                    released += 1
        return released

    def release_all(self, at: float) -> None:
        with self._lock:
            for voice in self._slots:
                if voice is not None:
                    voice.release(at)

    def active(self) -> list[Voice]:
        """Snapshot of the voices currently in the arena."""
        with self._lock:
            return [v for v in self._slots if v is not None]

    def reap(self, now: float) -> int:
        """Free the slots of voices whose release has run out."""
        with self._lock:
            finished = [i for i, v in enumerate(self._slots) if v is not None and v.is_finished(now)]
            for i in finished:
                self._free(i)
        return len(finished)

    def mix(self, n: int, sr: int, at: float) -> NDArray[np.float64]:
        """Sum every voice into a stereo block starting at session time ``at``."""
        block = np.zeros((n, 2), dtype=np.float64)
        with self._lock:
            for voice in self._slots:
                if voice is None:
                    continue
                mono = voice.render(n, sr, at=at)
                pan = pan_for_channel(voice.channel)
                block[:, 0] += mono * pan.left_gain
                block[:, 1] += mono * pan.right_gain
        return block


class LiveSynthesizer:
    """Streaming synthesizer driven by mido messages.

    ``send`` takes note_on / note_off / program_change / all-notes-off
    messages; ``read`` pulls the next block of stereo audio and advances
    the session clock.
    """

    def __init__(
        self,
        sample_rate: int = settings.sample_rate,
        capacity: int = settings.voice_capacity,
        reverb: ReverbConfig | None = None,
        headroom: float = settings.headroom,
        seed: int | None = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.headroom = headroom
        self.pool = VoicePool(capacity)
        self.programs: dict[int, int] = {}
        self.rng = np.random.default_rng(seed)
        self.time = 0.0
        self._reverbs = (
            [ReverbEngine(reverb, sample_rate), ReverbEngine(reverb, sample_rate)]
            if reverb is not None
            else None
        )

    def instrument(self, channel: int) -> InstrumentSettings:
        if channel == DRUM_CHANNEL:
            return PERCUSSION
        return preset_for(self.programs.get(channel, 0))

    def send(self, msg: mido.Message) -> None:
        if msg.type == "note_on" and msg.velocity > 0:
            voice = Voice.from_note(
                msg.note,
                msg.velocity,
                self.instrument(msg.channel),
                start_time=self.time,
                channel=msg.channel,
                rng=self.rng,
            )
            self.pool.note_on(voice)
        elif msg.type == "note_off" or (msg.type == "note_on" and msg.velocity == 0):
            self.pool.release_note(msg.channel, msg.note, self.time)
        elif msg.type == "program_change":
            self.programs[msg.channel] = msg.program
        elif msg.type == "control_change" and msg.control == 123:
            self.pool.release_all(self.time)

    def read(self, frames: int) -> NDArray[np.float64]:
        """Next ``frames`` samples of stereo audio, shape (frames, 2)."""
        block = self.pool.mix(frames, self.sample_rate, self.time)
        if self._reverbs is not None:
            for ch, engine in enumerate(self._reverbs):
                block[:, ch] = engine.process(block[:, ch])
        self.time += frames / self.sample_rate
        self.pool.reap(self.time)
        return finalize(block, self.headroom, normalize=False)
