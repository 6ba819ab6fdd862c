"""CHORDWAVE Chord Theory Engine: progression strings to typed chords.

Turns chord-progression notation into pitched chord structures relative
to a key and mode.

Supported token forms:
  - Roman numerals: I, IV, V7, vi, vii°, bracketed durations like IV(2)
  - Note names: C, F#m, Bbaug, G7, Ebdim(8)

Malformed tokens never abort a progression. Each one is replaced by a
default chord picked from its position (I, IV, V, vi cycle) and reported
through ``ChordProgression.substituted``.
"""

from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Literal

import structlog

from chordwave.config import settings
from chordwave.errors import ValidationError

logger = structlog.get_logger()

Mode = Literal["major", "minor"]
ChordQuality = Literal["major", "minor", "diminished", "augmented", "seventh"]

# ── Scale + Chord Constants ──────────────────────────────

SCALE_INTERVALS: dict[str, list[int]] = {
    "major": [0, 2, 4, 5, 7, 9, 11],
    "minor": [0, 2, 3, 5, 7, 8, 10],
}

NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]

# Upper-cased spellings accepted as keys
KEY_PITCH_CLASSES: dict[str, int] = {
    "C": 0, "B#": 0,
    "C#": 1, "DB": 1,
    "D": 2,
    "D#": 3, "EB": 3,
    "E": 4, "FB": 4,
    "F": 5, "E#": 5,
    "F#": 6, "GB": 6,
    "G": 7,
    "G#": 8, "AB": 8,
    "A": 9,
    "A#": 10, "BB": 10,
    "B": 11, "CB": 11,
}

ROMAN_DEGREES: dict[str, int] = {
    "I": 1, "II": 2, "III": 3, "IV": 4, "V": 5, "VI": 6, "VII": 7,
}

# Suffix after the chord head → quality override
QUALITY_SUFFIXES: dict[str, ChordQuality | None] = {
    "": None,
    "m": "minor",
    "min": "minor",
    "maj": "major",
    "dim": "diminished",
    "°": "diminished",
    "o": "diminished",
    "aug": "augmented",
    "+": "augmented",
    "7": "seventh",
    "dom7": "seventh",
    "maj7": "seventh",
    "m7": "minor",
    "min7": "minor",
}

# Position-cycled fallback: (scale degree, quality) → I, IV, V, vi
DEFAULT_CYCLE: list[tuple[int, ChordQuality]] = [
    (1, "major"),
    (4, "major"),
    (5, "major"),
    (6, "minor"),
]

DEFAULT_DURATION = 4
MAX_DURATION = 16
MAX_PROGRESSION_SECONDS = settings.max_render_seconds

_SPLIT_RE = re.compile(r"[-\s,;]+")
_DURATION_RE = re.compile(r"\((\d+)\)")
_ROMAN_RE = re.compile(r"^(?:[IV]+|[iv]+)")
_NOTE_RE = re.compile(r"^[A-Ga-g][#b]?")


def third_interval(quality: ChordQuality) -> int:
    return 3 if quality in ("minor", "diminished") else 4


def fifth_interval(quality: ChordQuality) -> int:
    if quality == "diminished":
        return 6
    if quality == "augmented":
        return 8
    return 7


# ── Data Types ───────────────────────────────────────────


@dataclass(frozen=True)
class Chord:
    """A triad (or dominant seventh) as pitch classes."""

    root: int  # 0-11
    third: int  # 0-11
    fifth: int  # 0-11
    quality: ChordQuality = "major"
    duration_beats: int = DEFAULT_DURATION

    def __post_init__(self) -> None:
        if not 0 <= self.root < 12:
            raise ValueError(f"root pitch class out of range: {self.root}")
        if self.third != (self.root + third_interval(self.quality)) % 12:
            raise ValueError(f"third {self.third} does not match {self.quality} chord on {self.root}")
        if self.fifth != (self.root + fifth_interval(self.quality)) % 12:
            raise ValueError(f"fifth {self.fifth} does not match {self.quality} chord on {self.root}")
        if self.duration_beats < 1:
            raise ValueError(f"duration must be at least one beat: {self.duration_beats}")

    @classmethod
    def build(cls, root: int, quality: ChordQuality = "major", duration_beats: int = DEFAULT_DURATION) -> Chord:
        root %= 12
        return cls(
            root=root,
            third=(root + third_interval(quality)) % 12,
            fifth=(root + fifth_interval(quality)) % 12,
            quality=quality,
            duration_beats=duration_beats,
        )

    @property
    def pitch_classes(self) -> list[int]:
        """Chord tones in stacking order, seventh included for seventh chords."""
        tones = [self.root, self.third, self.fifth]
        if self.quality == "seventh":
            tones.append((self.root + 10) % 12)
        return tones

    @property
    def name(self) -> str:
        suffix = {"major": "", "minor": "m", "diminished": "dim", "augmented": "aug", "seventh": "7"}
        return f"{NOTE_NAMES[self.root]}{suffix[self.quality]}"


@dataclass(frozen=True)
class ChordProgression:
    """Ordered chords in a key, with a parallel list of beat durations."""

    key: int
    mode: Mode
    chords: tuple[Chord, ...]
    durations: tuple[int, ...]
    time_signature: int = 4
    substituted: tuple[int, ...] = field(default=())  # indexes filled with default chords

    def __post_init__(self) -> None:
        if len(self.chords) != len(self.durations):
            raise ValueError(
                f"chord/duration length mismatch: {len(self.chords)} chords, {len(self.durations)} durations"
            )
        for chord, beats in zip(self.chords, self.durations):
            if chord.duration_beats != beats:
                raise ValueError(f"duration {beats} disagrees with chord {chord.name}")

    @classmethod
    def from_chords(
        cls,
        chords: list[Chord],
        key: int = 0,
        mode: Mode = "major",
        time_signature: int = 4,
        substituted: tuple[int, ...] = (),
    ) -> ChordProgression:
        return cls(
            key=key,
            mode=mode,
            chords=tuple(chords),
            durations=tuple(c.duration_beats for c in chords),
            time_signature=time_signature,
            substituted=substituted,
        )

    def __len__(self) -> int:
        return len(self.chords)

    @property
    def total_beats(self) -> int:
        return sum(self.durations)

    def duration_seconds(self, bpm: float) -> float:
        """Playing time at ``bpm``, capped at one hour."""
        if bpm <= 0:
            raise ValidationError(f"bpm must be positive, got {bpm}")
        return min(self.total_beats * 60.0 / bpm, MAX_PROGRESSION_SECONDS)


@dataclass(frozen=True)
class ChordResolution:
    """Outcome of resolving one token: a chord, possibly a stand-in."""

    chord: Chord
    used_default: bool
    token: str
    index: int


# ── Parsing Helpers ──────────────────────────────────────


def note_name_to_pitch_class(name: str) -> int:
    """Parse a key or note name like 'Eb' or 'F#' to a pitch class."""
    pc = KEY_PITCH_CLASSES.get(name.strip().upper())
    if pc is None:
        raise ValidationError(f"Unknown key: {name!r}")
    return pc


def parse_mode(mode: str) -> Mode:
    normalized = mode.strip().lower()
    if normalized not in SCALE_INTERVALS:
        raise ValidationError(f"Unknown mode: {mode!r} (expected 'major' or 'minor')")
    return normalized  # type: ignore[return-value]


def split_progression(progression: str) -> list[str]:
    """Split a progression string on hyphens, whitespace, commas and semicolons."""
    normalized = " ".join(progression.split())
    return [t for t in _SPLIT_RE.split(normalized) if t]


def parse_duration(token: str) -> tuple[str, int]:
    """Strip a '(n)' beat count from ``token``. Out-of-range counts fall back to 4."""
    match = _DURATION_RE.search(token)
    if match is None:
        return token, DEFAULT_DURATION
    beats = int(match.group(1))
    if not 1 <= beats <= MAX_DURATION:
        beats = DEFAULT_DURATION
    return token[: match.start()] + token[match.end():], beats


def default_chord(index: int, key: int) -> Chord:
    """Deterministic stand-in for the chord at ``index`` (I, IV, V, vi cycle)."""
    degree, quality = DEFAULT_CYCLE[index % len(DEFAULT_CYCLE)]
    root = key + SCALE_INTERVALS["major"][degree - 1]
    return Chord.build(root, quality, DEFAULT_DURATION)


def _parse_roman(head: str, rest: str, key: int, mode: Mode, beats: int) -> Chord | None:
    degree = ROMAN_DEGREES.get(head.upper())
    if degree is None:
        return None
    if rest.lower() not in QUALITY_SUFFIXES:
        return None
    quality: ChordQuality = "minor" if head.islower() else "major"
    override = QUALITY_SUFFIXES[rest.lower()]
    if override is not None:
        quality = override
    root = key + SCALE_INTERVALS[mode][degree - 1]
    return Chord.build(root, quality, beats)


def _parse_note_name(head: str, rest: str, beats: int) -> Chord | None:
    root = KEY_PITCH_CLASSES.get(head.upper())
    if root is None or rest.lower() not in QUALITY_SUFFIXES:
        return None
    quality = QUALITY_SUFFIXES[rest.lower()] or "major"
    return Chord.build(root, quality, beats)


def resolve_token(token: str, index: int, key: int, mode: Mode) -> ChordResolution:
    """Resolve one chord token. Never raises: bad tokens get a default chord."""
    body, beats = parse_duration(token.strip())
    chord: Chord | None = None

    roman = _ROMAN_RE.match(body)
    if roman:
        chord = _parse_roman(roman.group(0), body[roman.end():], key, mode, beats)
    else:
        note = _NOTE_RE.match(body)
        if note:
            chord = _parse_note_name(note.group(0), body[note.end():], beats)

    if chord is None:
        return ChordResolution(default_chord(index, key), used_default=True, token=token, index=index)
    return ChordResolution(chord, used_default=False, token=token, index=index)


# ── Resolver ─────────────────────────────────────────────


class ChordTheoryResolver:
    """Resolve progression strings into ChordProgressions.

    Args:
        max_tokens: Reject progressions with more tokens than this.
        parallel_threshold: Above this many tokens, resolve on a thread pool.
        workers: Thread pool size for parallel resolution.
    """

    def __init__(
        self,
        max_tokens: int = settings.max_chord_tokens,
        parallel_threshold: int = settings.parallel_threshold,
        workers: int = 8,
    ) -> None:
        self.max_tokens = max_tokens
        self.parallel_threshold = parallel_threshold
        self.workers = workers

    def resolve(self, progression: str, key: str = "C", mode: str = "major") -> ChordProgression:
        """Parse a progression string in ``key``/``mode``.

        Args:
            progression: e.g. "I-V-vi-IV" or "C G(2) Am(2) F".
            key: Tonic name, e.g. "C", "F#", "Bb".
            mode: "major" or "minor".

        Returns:
            ChordProgression with one chord per token.

        Raises:
            ValidationError: Empty input, too many tokens, unknown key/mode,
                or no token could be parsed at all.
        """
        key_pc = note_name_to_pitch_class(key)
        scale_mode = parse_mode(mode)
        tokens = split_progression(progression or "")

        if not tokens:
            raise ValidationError("Chord progression is empty")
        if len(tokens) > self.max_tokens:
            raise ValidationError(
                f"Chord progression has {len(tokens)} tokens (limit {self.max_tokens})"
            )

        if len(tokens) > self.parallel_threshold:
            results = self._resolve_parallel(tokens, key_pc, scale_mode)
        else:
            results = [resolve_token(t, i, key_pc, scale_mode) for i, t in enumerate(tokens)]

        substituted = tuple(r.index for r in results if r.used_default)
        for r in results:
            if r.used_default:
                logger.warning(
                    "chord.token.defaulted",
                    token=r.token,
                    index=r.index,
                    replacement=r.chord.name,
                )

        if len(substituted) == len(results):
            raise ValidationError(f"No parseable chords in progression: {progression!r}")

        logger.debug("chord.progression.resolved", chords=len(results), key=key, mode=scale_mode)
        return ChordProgression.from_chords(
            [r.chord for r in results],
            key=key_pc,
            mode=scale_mode,
            substituted=substituted,
        )

    def _resolve_parallel(self, tokens: list[str], key: int, mode: Mode) -> list[ChordResolution]:
        slots: list[ChordResolution | None] = [None] * len(tokens)
        with ThreadPoolExecutor(max_workers=min(self.workers, len(tokens))) as pool:
            futures = {
                pool.submit(resolve_token, token, i, key, mode): i
                for i, token in enumerate(tokens)
            }
            for future in as_completed(futures):
                slots[futures[future]] = future.result()
        return [s for s in slots if s is not None]


# ── Melody Harmonization ─────────────────────────────────

PREFERRED_DEGREES = [0, 3, 4]  # I, IV, V (0-based scale degrees)


def _diatonic_triad(degree: int, scale: list[int]) -> list[int]:
    return [scale[(degree + step) % len(scale)] for step in (0, 2, 4)]


def harmonize_melody(
    pitches: list[int],
    key: str = "C",
    mode: str = "major",
    bars: int = 4,
    weights: list[float] | None = None,
) -> ChordProgression:
    """Pick a I, IV or V chord for each bar of a melody.

    Each bar's notes vote for the diatonic triads that contain them
    (weighted by ``weights``, e.g. duration × velocity). Preferred
    degrees get a 0.5 bonus, so empty bars settle on the tonic.

    Args:
        pitches: MIDI note numbers of the melody in order.
        key: Tonic name.
        mode: "major" or "minor".
        bars: Number of bars to split the melody into.
        weights: Optional per-note weights, same length as ``pitches``.

    Returns:
        ChordProgression of ``bars`` four-beat chords.
    """
    if bars < 1:
        raise ValidationError(f"bars must be at least 1, got {bars}")
    if weights is not None and len(weights) != len(pitches):
        raise ValidationError("weights must match pitches in length")

    key_pc = note_name_to_pitch_class(key)
    scale_mode = parse_mode(mode)
    scale = [(key_pc + i) % 12 for i in SCALE_INTERVALS[scale_mode]]
    note_weights = weights if weights is not None else [1.0] * len(pitches)
    per_bar = max(1, len(pitches) // bars) if pitches else 0

    chords: list[Chord] = []
    for bar in range(bars):
        bar_weights: dict[int, float] = {}
        if per_bar:
            start = bar * per_bar
            for pitch, w in zip(pitches[start:start + per_bar], note_weights[start:start + per_bar]):
                bar_weights[pitch % 12] = bar_weights.get(pitch % 12, 0.0) + w

        def fitness(degree: int) -> float:
            tones = _diatonic_triad(degree, scale)
            return sum(bar_weights.get(t, 0.0) for t in tones) + 0.5

        best = max(PREFERRED_DEGREES, key=fitness)
        triad = _diatonic_triad(best, scale)
        quality: ChordQuality = "minor" if (triad[1] - triad[0]) % 12 == 3 else "major"
        chords.append(Chord.build(triad[0], quality, DEFAULT_DURATION))

    return ChordProgression.from_chords(chords, key=key_pc, mode=scale_mode)
