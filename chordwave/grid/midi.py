"""CHORDWAVE MIDI Engine: timeline packaging and editing.

Uses mido for the in-memory MIDI model. Generated Timelines are
packaged as ``mido.MidiFile`` objects; externally decoded files can be
inspected and edited (tempo, instruments) without touching any note
timing.

Every editing function validates its arguments first and returns an
edited copy. The input file is never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import mido
import structlog

from chordwave.errors import ValidationError
from chordwave.grid.sequencer import NoteEvent, Timeline, validate_bpm

logger = structlog.get_logger()

DEFAULT_TEMPO = 500_000  # 120 bpm
MAX_MIDI_TEMPO = 0xFFFFFF  # set_tempo is a 24-bit field, about 3.58 bpm


# ── Data Types ───────────────────────────────────────────


@dataclass
class MidiSummary:
    """Overview of a MIDI file's structure."""

    track_count: int
    ticks_per_beat: int
    tempos_bpm: list[float] = field(default_factory=list)
    programs: list[int] = field(default_factory=list)
    notes_per_track: list[int] = field(default_factory=list)
    duration_s: float = 0.0

    @property
    def bpm(self) -> float:
        """First tempo in the file, 120 when none is set."""
        return self.tempos_bpm[0] if self.tempos_bpm else mido.tempo2bpm(DEFAULT_TEMPO)


# ── Validation ───────────────────────────────────────────


def _check_track(midi: mido.MidiFile, track_index: int) -> None:
    if not 0 <= track_index < len(midi.tracks):
        raise ValidationError(
            f"Track index {track_index} out of range (file has {len(midi.tracks)} tracks)"
        )


def _check_channel(channel: int) -> None:
    if not 0 <= channel <= 15:
        raise ValidationError(f"Channel must be between 0 and 15, got {channel}")


def _check_program(program: int) -> None:
    if not 0 <= program <= 127:
        raise ValidationError(f"Instrument must be between 0 and 127, got {program}")


def _copy_midi(midi: mido.MidiFile) -> mido.MidiFile:
    out = mido.MidiFile(type=midi.type, ticks_per_beat=midi.ticks_per_beat)
    for track in midi.tracks:
        copied = mido.MidiTrack()
        copied.extend(msg.copy() for msg in track)
        out.tracks.append(copied)
    return out


def midi_tempo(bpm: int) -> int:
    """Microseconds per quarter for a set_tempo message.

    bpm 1-3 overflow the 24-bit field and are written as the slowest
    MIDI tempo. A Timeline keeps its own bpm for rendering.

    Raises:
        ValidationError: bpm outside 1-300.
    """
    return min(60_000_000 // validate_bpm(bpm), MAX_MIDI_TEMPO)


# ── Editing ──────────────────────────────────────────────


def change_tempo(midi: mido.MidiFile, bpm: int) -> mido.MidiFile:
    """Set every tempo event to ``bpm``; add one at tick 0 if there is none.

    Delta times are kept as they are, so no note moves in ticks. bpm 1-3
    are written as the slowest tempo MIDI can hold (see ``midi_tempo``).

    Raises:
        ValidationError: bpm outside 1-300.
    """
    tempo = midi_tempo(bpm)
    out = _copy_midi(midi)

    replaced = 0
    for track in out.tracks:
        for i, msg in enumerate(track):
            if msg.type == "set_tempo":
                track[i] = msg.copy(tempo=tempo)
                replaced += 1

    if replaced == 0:
        if not out.tracks:
            out.tracks.append(mido.MidiTrack())
        out.tracks[0].insert(0, mido.MetaMessage("set_tempo", tempo=tempo, time=0))

    logger.info("midi.tempo.changed", bpm=bpm, tempo=tempo, replaced=replaced)
    return out


def change_instrument(midi: mido.MidiFile, track_index: int, channel: int, program: int) -> mido.MidiFile:
    """Switch the instrument on one track/channel.

    Replaces the first program change on ``channel`` in the track, or
    inserts one at tick 0.

    Raises:
        ValidationError: Unknown track, channel outside 0-15 or program
            outside 0-127.
    """
    _check_track(midi, track_index)
    _check_channel(channel)
    _check_program(program)

    out = _copy_midi(midi)
    track = out.tracks[track_index]
    for i, msg in enumerate(track):
        if msg.type == "program_change" and msg.channel == channel:
            track[i] = msg.copy(program=program)
            break
    else:
        track.insert(0, mido.Message("program_change", channel=channel, program=program, time=0))

    logger.info("midi.instrument.changed", track=track_index, channel=channel, program=program)
    return out


def _first_channel(track: mido.MidiTrack) -> int:
    for msg in track:
        if not msg.is_meta and hasattr(msg, "channel"):
            return msg.channel
    return 0


def change_instruments(midi: mido.MidiFile, programs: dict[int, int]) -> mido.MidiFile:
    """Batch instrument change: ``{track_index: program}`` in one pass.

    All pairs are validated before anything is edited. In each listed
    track the first program change is replaced; tracks without one get
    a new program change at tick 0 on the track's first channel.
    """
    if not programs:
        raise ValidationError("No instrument changes given")
    for track_index, program in programs.items():
        _check_track(midi, track_index)
        _check_program(program)

    out = _copy_midi(midi)
    for track_index, program in programs.items():
        track = out.tracks[track_index]
        for i, msg in enumerate(track):
            if msg.type == "program_change":
                track[i] = msg.copy(program=program)
                break
        else:
            channel = _first_channel(track)
            track.insert(0, mido.Message("program_change", channel=channel, program=program, time=0))

    logger.info("midi.instruments.changed", tracks=sorted(programs))
    return out


# ── Conversion ───────────────────────────────────────────


def timeline_to_midi(timeline: Timeline) -> mido.MidiFile:
    """Package a Timeline as a type-1 MIDI file.

    Track 0 carries the tempo; each channel gets its own track with its
    program change at tick 0.
    """
    mid = mido.MidiFile(type=1, ticks_per_beat=timeline.ticks_per_quarter)
    conductor = mido.MidiTrack()
    conductor.append(mido.MetaMessage("set_tempo", tempo=midi_tempo(timeline.bpm), time=0))
    mid.tracks.append(conductor)

    channels = sorted({e.channel for e in timeline.events} | set(timeline.programs))
    for channel in channels:
        track = mido.MidiTrack()
        if channel in timeline.programs:
            track.append(mido.Message("program_change", channel=channel, program=timeline.programs[channel], time=0))

        # Offs sort before ons at the same tick so repeated notes retrigger
        events: list[tuple[int, int, mido.Message]] = []
        for e in timeline.channel_events(channel):
            events.append((e.start_tick, 1, mido.Message("note_on", note=e.pitch, velocity=e.velocity, channel=channel)))
            events.append((e.end_tick, 0, mido.Message("note_off", note=e.pitch, velocity=0, channel=channel)))
        events.sort(key=lambda x: (x[0], x[1]))

        last_tick = 0
        for tick, _, msg in events:
            msg.time = tick - last_tick
            track.append(msg)
            last_tick = tick
        mid.tracks.append(track)

    return mid


def midi_to_events(midi: mido.MidiFile) -> list[NoteEvent]:
    """Pair note on/off messages into NoteEvents (absolute ticks)."""
    events: list[NoteEvent] = []
    for track in midi.tracks:
        tick = 0
        active: dict[tuple[int, int], tuple[int, int]] = {}  # (channel, pitch) -> (start, velocity)
        for msg in track:
            tick += msg.time
            if msg.type == "note_on" and msg.velocity > 0:
                active[(msg.channel, msg.note)] = (tick, msg.velocity)
            elif msg.type == "note_off" or (msg.type == "note_on" and msg.velocity == 0):
                start = active.pop((msg.channel, msg.note), None)
                if start is not None:
                    events.append(NoteEvent(
                        pitch=msg.note,
                        start_tick=start[0],
                        duration_ticks=max(1, tick - start[0]),
                        velocity=start[1],
                        channel=msg.channel,
                    ))
    events.sort(key=lambda e: (e.start_tick, e.channel, e.pitch))
    return events


def midi_to_timeline(midi: mido.MidiFile) -> Timeline:
    """Decode a MIDI file into a Timeline using its first tempo and programs."""
    summary = describe_midi(midi)
    programs: dict[int, int] = {}
    for track in midi.tracks:
        for msg in track:
            if msg.type == "program_change" and msg.channel not in programs:
                programs[msg.channel] = msg.program
    bpm = max(1, min(300, round(summary.bpm)))
    return Timeline(
        events=tuple(midi_to_events(midi)),
        bpm=bpm,
        ticks_per_quarter=midi.ticks_per_beat,
        programs=programs,
    )


def describe_midi(midi: mido.MidiFile) -> MidiSummary:
    """Summarize tracks, tempos, instruments and note counts."""
    tempos: list[float] = []
    programs: set[int] = set()
    notes_per_track: list[int] = []

    for track in midi.tracks:
        notes = 0
        for msg in track:
            if msg.type == "set_tempo":
                tempos.append(round(mido.tempo2bpm(msg.tempo), 3))
            elif msg.type == "program_change":
                programs.add(msg.program)
            elif msg.type == "note_on" and msg.velocity > 0:
                notes += 1
        notes_per_track.append(notes)

    # mido cannot compute a single length for asynchronous (type 2) files
    duration = midi.length if midi.type != 2 else 0.0

    return MidiSummary(
        track_count=len(midi.tracks),
        ticks_per_beat=midi.ticks_per_beat,
        tempos_bpm=tempos,
        programs=sorted(programs),
        notes_per_track=notes_per_track,
        duration_s=duration,
    )
