"""CHORDWAVE Note Sequencer: chord progressions to timed note events.

Expands a ChordProgression into NoteEvents at tick resolution. The
performance pattern (block chord, arpeggio or rhythmic strum) is a pure
function of the style; bass and drum parts are added per the
instrumentation flags.

Timing:
  - ticks_per_quarter (default 480) is the tick resolution
  - a chord of N beats spans N × ticks_per_quarter ticks
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Literal

import structlog

from chordwave.config import settings
from chordwave.errors import ValidationError
from chordwave.grid.theory import Chord, ChordProgression

logger = structlog.get_logger()

PatternKind = Literal["block", "arpeggio", "rhythmic"]

MIN_BPM = 1
MAX_BPM = 300

CHORD_CHANNEL = 0
BASS_CHANNEL = 1
DRUM_CHANNEL = 9

# GM drum map
KICK = 36
SNARE = 38
CLOSED_HAT = 42

STYLE_PATTERNS: dict[str, PatternKind] = {
    "pop": "block",
    "rock": "rhythmic",
    "jazz": "arpeggio",
    "classical": "arpeggio",
    "electronic": "rhythmic",
    "blues": "rhythmic",
}

# (length in quarters, velocity, play_chord, play_bass)
RhythmStep = tuple[float, int, bool, bool]

RHYTHM_STEPS: dict[str, list[RhythmStep]] = {
    "rock": [
        (0.5, 85, True, True),
        (0.5, 75, False, False),
    ],
    "electronic": [
        (0.25, 95, True, True),
        (0.25, 0, False, False),
        (0.25, 85, False, True),
        (0.25, 0, False, False),
        (0.25, 90, True, False),
        (0.25, 0, False, False),
    ],
    "blues": [
        (0.375, 75, True, True),
        (0.375, 65, False, False),
        (0.375, 70, True, False),
        (0.375, 60, False, False),
        (0.375, 68, False, True),
        (0.375, 58, False, False),
    ],
    "default": [
        (0.5, 80, True, True),
        (0.5, 70, False, False),
    ],
}

# (length in quarters, semitones above the chord root)
# Offsets 4 and 7 follow the chord's own third and fifth.
BASS_PATTERNS: dict[str, list[tuple[float, int]]] = {
    "pop": [(0.75, 0), (0.75, 7), (0.75, 0), (0.75, 4)],
    "jazz": [(0.25, 0), (0.25, 2), (0.25, 4), (0.25, 5), (0.25, 7), (0.25, 9), (0.25, 11), (0.25, 12)],
    "classical": [(2.0, 0)],
    "default": [(1.0, 0)],
}

BLOCK_VELOCITY = 60
ARPEGGIO_VELOCITY = 70
BASS_VELOCITY = 80


# ── Data Types ───────────────────────────────────────────


@dataclass(frozen=True)
class NoteEvent:
    """A single note on the tick timeline."""

    pitch: int  # MIDI note number (0-127)
    start_tick: int
    duration_ticks: int
    velocity: int = 64  # 0-127
    channel: int = 0  # 0-15

    def __post_init__(self) -> None:
        if not 0 <= self.pitch <= 127:
            raise ValidationError(f"pitch out of range: {self.pitch}")
        if self.start_tick < 0:
            raise ValidationError(f"start tick must be non-negative: {self.start_tick}")
        if self.duration_ticks < 1:
            raise ValidationError(f"duration must be at least one tick: {self.duration_ticks}")
        if not 0 <= self.velocity <= 127:
            raise ValidationError(f"velocity out of range: {self.velocity}")
        if not 0 <= self.channel <= 15:
            raise ValidationError(f"channel out of range: {self.channel}")

    @property
    def end_tick(self) -> int:
        return self.start_tick + self.duration_ticks


@dataclass(frozen=True)
class Timeline:
    """Generated note events plus the tempo/instrument meta they play with."""

    events: tuple[NoteEvent, ...]
    bpm: int = 120
    ticks_per_quarter: int = 480
    programs: dict[int, int] = field(default_factory=dict)  # channel → GM program

    @property
    def tempo(self) -> int:
        """Microseconds per quarter note."""
        return 60_000_000 // self.bpm

    @property
    def length_ticks(self) -> int:
        return max((e.end_tick for e in self.events), default=0)

    def ticks_to_seconds(self, ticks: int) -> float:
        return ticks * self.tempo / (self.ticks_per_quarter * 1_000_000)

    @property
    def duration_s(self) -> float:
        """Seconds until the last note ends."""
        return self.ticks_to_seconds(self.length_ticks)

    def channel_events(self, channel: int) -> list[NoteEvent]:
        return [e for e in self.events if e.channel == channel]


@dataclass
class Instrumentation:
    """Which parts to generate."""

    keyboards: bool = True
    bass: bool = True
    drums: bool = False


# ── Helpers ──────────────────────────────────────────────


def validate_bpm(bpm: int) -> int:
    if not MIN_BPM <= bpm <= MAX_BPM:
        raise ValidationError(f"bpm must be between {MIN_BPM} and {MAX_BPM}, got {bpm}")
    return int(bpm)


def pattern_for_style(style: str) -> PatternKind:
    """Map a style name to its performance pattern."""
    pattern = STYLE_PATTERNS.get(style.lower())
    if pattern is None:
        logger.warning("sequencer.style.unknown", style=style, fallback="block")
        return "block"
    return pattern


def chord_pitches(chord: Chord, octave: int) -> list[int]:
    """Stack chord tones upward from the root in ``octave`` (C4 = 60)."""
    base = (octave + 1) * 12 + chord.root
    return [base + (pc - chord.root) % 12 for pc in chord.pitch_classes]


def _clamp_pitch(pitch: int) -> int:
    while pitch > 127:
        pitch -= 12
    while pitch < 0:
        pitch += 12
    return pitch


def _bass_offset(chord: Chord, offset: int) -> int:
    if offset == 4:
        return (chord.third - chord.root) % 12
    if offset == 7:
        return (chord.fifth - chord.root) % 12
    return offset


# ── Sequencer ────────────────────────────────────────────


class NoteEventSequencer:
    """Expand chord progressions into NoteEvent timelines.

    Args:
        ticks_per_quarter: Tick resolution of the output timeline.
        seed: Seed for drum velocity jitter. Same seed, same timeline.
    """

    def __init__(self, ticks_per_quarter: int = settings.ticks_per_quarter, seed: int | None = None) -> None:
        if ticks_per_quarter < 4:
            raise ValidationError(f"ticks_per_quarter too small: {ticks_per_quarter}")
        self.tpq = ticks_per_quarter
        self.rng = random.Random(seed)

    def sequence(
        self,
        progression: ChordProgression,
        style: str = "pop",
        bpm: int = settings.default_bpm,
        octave: int = 4,
        instrumentation: Instrumentation | None = None,
    ) -> Timeline:
        """Generate a Timeline for ``progression`` in ``style``.

        Args:
            progression: Resolved chords with beat durations.
            style: pop, rock, jazz, classical, electronic or blues.
            bpm: Tempo, 1-300.
            octave: Octave of the chord voicing (bass sits two below).
            instrumentation: Parts to generate (keyboards + bass by default).

        Returns:
            Timeline with events sorted by start tick.
        """
        bpm = validate_bpm(bpm)
        parts = instrumentation or Instrumentation()
        style = style.lower()
        pattern = pattern_for_style(style)

        events: list[NoteEvent] = []
        tick = 0
        for chord, beats in zip(progression.chords, progression.durations):
            span = beats * self.tpq
            if parts.keyboards:
                events.extend(self._chord_part(chord, tick, span, pattern, style, octave))
            if parts.bass:
                events.extend(self._bass_part(chord, tick, span, pattern, style, octave - 2))
            if parts.drums:
                events.extend(self._drum_part(tick, span))
            tick += span

        events.sort(key=lambda e: (e.start_tick, e.channel, e.pitch))

        programs: dict[int, int] = {}
        if parts.keyboards:
            programs[CHORD_CHANNEL] = 0
        if parts.bass:
            programs[BASS_CHANNEL] = 33
        if parts.drums:
            programs[DRUM_CHANNEL] = 0

        logger.info(
            "sequencer.timeline.generated",
            style=style,
            pattern=pattern,
            chords=len(progression),
            events=len(events),
            ticks=tick,
        )
        return Timeline(events=tuple(events), bpm=bpm, ticks_per_quarter=self.tpq, programs=programs)

    # ── Chord patterns ──

    def _chord_part(
        self,
        chord: Chord,
        start: int,
        span: int,
        pattern: PatternKind,
        style: str,
        octave: int,
    ) -> list[NoteEvent]:
        pitches = [_clamp_pitch(p) for p in chord_pitches(chord, octave)]
        if pattern == "arpeggio":
            return self._arpeggio(pitches, start, span)
        if pattern == "rhythmic":
            return [
                NoteEvent(p, t, length, vel, CHORD_CHANNEL)
                for t, length, vel in self._rhythm_hits(start, span, style, bass=False)
                for p in pitches
            ]
        return [NoteEvent(p, start, span, BLOCK_VELOCITY, CHORD_CHANNEL) for p in pitches]

    def _arpeggio(self, pitches: list[int], start: int, span: int) -> list[NoteEvent]:
        step = self.tpq // 4
        events: list[NoteEvent] = []
        t, i = start, 0
        end = start + span
        while t < end:
            length = min(step, end - t)
            events.append(NoteEvent(pitches[i % len(pitches)], t, length, ARPEGGIO_VELOCITY, CHORD_CHANNEL))
            t += step
            i += 1
        return events

    def _rhythm_hits(self, start: int, span: int, style: str, bass: bool) -> list[tuple[int, int, int]]:
        """(tick, length, velocity) for each sounding step of the style's rhythm."""
        steps = RHYTHM_STEPS.get(style, RHYTHM_STEPS["default"])
        hits: list[tuple[int, int, int]] = []
        t, i = start, 0
        end = start + span
        while t < end:
            quarters, velocity, play_chord, play_bass = steps[i % len(steps)]
            length = max(1, int(quarters * self.tpq))
            sounding = play_bass if bass else play_chord
            if sounding and velocity > 0:
                hits.append((t, min(length, end - t), velocity))
            t += length
            i += 1
        return hits

    # ── Bass ──

    def _bass_part(
        self,
        chord: Chord,
        start: int,
        span: int,
        pattern: PatternKind,
        style: str,
        octave: int,
    ) -> list[NoteEvent]:
        root = (octave + 1) * 12 + chord.root
        if pattern == "rhythmic":
            return [
                NoteEvent(_clamp_pitch(root), t, length, vel, BASS_CHANNEL)
                for t, length, vel in self._rhythm_hits(start, span, style, bass=True)
            ]

        steps = BASS_PATTERNS.get(style, BASS_PATTERNS["default"])
        events: list[NoteEvent] = []
        t, i = start, 0
        end = start + span
        while t < end:
            quarters, offset = steps[i % len(steps)]
            length = max(1, int(quarters * self.tpq))
            pitch = _clamp_pitch(root + _bass_offset(chord, offset))
            events.append(NoteEvent(pitch, t, min(length, end - t), BASS_VELOCITY, BASS_CHANNEL))
            t += length
            i += 1
        return events

    # ── Drums ──

    def _drum_part(self, start: int, span: int) -> list[NoteEvent]:
        events: list[NoteEvent] = []
        eighth = self.tpq // 2
        hit = max(1, self.tpq // 4)
        for t in range(start, start + span, eighth):
            beat, offbeat = divmod(t - start, self.tpq)
            if offbeat == 0:
                drum = KICK if beat % 2 == 0 else SNARE
                events.append(NoteEvent(drum, t, hit, self._jitter(100), DRUM_CHANNEL))
            events.append(NoteEvent(CLOSED_HAT, t, hit, self._jitter(70), DRUM_CHANNEL))
        return events

    def _jitter(self, velocity: int) -> int:
        return max(1, min(127, velocity + self.rng.randint(-8, 8)))
