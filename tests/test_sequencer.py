"""CHORDWAVE Sequencer Tests: chords to note-event timelines."""

import pytest


def _progression(text: str = "I-IV", key: str = "C"):
    from chordwave.grid.theory import ChordTheoryResolver

    return ChordTheoryResolver().resolve(text, key=key)


def _keys_only():
    from chordwave.grid.sequencer import Instrumentation

    return Instrumentation(keyboards=True, bass=False, drums=False)


# ── Pattern selection ────────────────────────────────────

def test_pattern_for_style():
    """Pattern choice is a fixed mapping of style."""
    from chordwave.grid.sequencer import pattern_for_style

    assert pattern_for_style("pop") == "block"
    assert pattern_for_style("Rock") == "rhythmic"
    assert pattern_for_style("jazz") == "arpeggio"
    assert pattern_for_style("classical") == "arpeggio"
    assert pattern_for_style("electronic") == "rhythmic"
    assert pattern_for_style("blues") == "rhythmic"
    assert pattern_for_style("polka") == "block", "Unknown styles fall back to block chords"


# ── Chord patterns ───────────────────────────────────────

def test_block_chords_fill_each_chord():
    """Pop: every chord tone sustained for the chord's full span."""
    from chordwave.grid.sequencer import NoteEventSequencer

    tl = NoteEventSequencer(ticks_per_quarter=480).sequence(
        _progression("I-IV"), style="pop", instrumentation=_keys_only(),
    )

    assert len(tl.events) == 6
    first = [e for e in tl.events if e.start_tick == 0]
    second = [e for e in tl.events if e.start_tick == 1920]
    assert sorted(e.pitch for e in first) == [60, 64, 67], "C major at octave 4"
    assert sorted(e.pitch for e in second) == [65, 69, 72], "F major at octave 4"
    assert all(e.duration_ticks == 1920 for e in tl.events)
    assert all(e.velocity == 60 and e.channel == 0 for e in tl.events)


def test_arpeggio_cycles_chord_tones():
    """Jazz: sixteenth steps cycling through the triad."""
    from chordwave.grid.sequencer import NoteEventSequencer

    tl = NoteEventSequencer(ticks_per_quarter=480).sequence(
        _progression("I"), style="jazz", instrumentation=_keys_only(),
    )

    assert len(tl.events) == 16
    assert [e.pitch for e in tl.events[:4]] == [60, 64, 67, 60]
    assert [e.start_tick for e in tl.events[:3]] == [0, 120, 240]
    assert all(e.velocity == 70 for e in tl.events)


def test_rhythmic_strum_follows_step_table():
    """Rock: chord hits on every other eighth, truncated at the chord end."""
    from chordwave.grid.sequencer import NoteEventSequencer

    tl = NoteEventSequencer(ticks_per_quarter=480).sequence(
        _progression("I"), style="rock", instrumentation=_keys_only(),
    )

    starts = sorted({e.start_tick for e in tl.events})
    assert starts == [0, 480, 960, 1440]
    assert len(tl.events) == 12
    assert all(e.duration_ticks == 240 and e.velocity == 85 for e in tl.events)


def test_seventh_chords_voice_four_notes():
    from chordwave.grid.sequencer import NoteEventSequencer

    tl = NoteEventSequencer().sequence(_progression("V7"), style="pop", instrumentation=_keys_only())
    assert sorted(e.pitch for e in tl.events) == [67, 71, 74, 77]


# ── Bass + drums ─────────────────────────────────────────

def test_pop_bass_pattern():
    """Bass walks root, fifth, root, third two octaves down."""
    from chordwave.grid.sequencer import BASS_CHANNEL, Instrumentation, NoteEventSequencer

    tl = NoteEventSequencer(ticks_per_quarter=480).sequence(
        _progression("I"), style="pop", instrumentation=Instrumentation(keyboards=False, bass=True),
    )
    bass = tl.channel_events(BASS_CHANNEL)

    assert [e.pitch for e in bass[:4]] == [36, 43, 36, 40]
    assert [e.start_tick for e in bass[:4]] == [0, 360, 720, 1080]
    assert bass[-1].end_tick == 1920, "Last bass note is cut at the chord boundary"


def test_bass_third_follows_chord_quality():
    """On a minor chord the bass third is the minor third."""
    from chordwave.grid.sequencer import BASS_CHANNEL, Instrumentation, NoteEventSequencer

    tl = NoteEventSequencer().sequence(
        _progression("vi"), style="pop", instrumentation=Instrumentation(keyboards=False, bass=True),
    )
    bass = tl.channel_events(BASS_CHANNEL)
    assert bass[3].pitch - bass[0].pitch == 3


def test_drums_are_seeded():
    """Same seed, same drum velocities; kick on the downbeat."""
    from chordwave.grid.sequencer import DRUM_CHANNEL, KICK, Instrumentation, NoteEventSequencer

    parts = Instrumentation(keyboards=False, bass=False, drums=True)
    a = NoteEventSequencer(seed=7).sequence(_progression("I-IV"), instrumentation=parts)
    b = NoteEventSequencer(seed=7).sequence(_progression("I-IV"), instrumentation=parts)

    assert a.events == b.events, "Seeded timelines must be identical"
    assert all(e.channel == DRUM_CHANNEL for e in a.events)
    assert any(e.pitch == KICK and e.start_tick == 0 for e in a.events)
    assert a.programs == {DRUM_CHANNEL: 0}


# ── Timeline meta ────────────────────────────────────────

def test_tempo_meta():
    """120 bpm is 500,000 microseconds per quarter."""
    from chordwave.grid.sequencer import NoteEventSequencer

    tl = NoteEventSequencer().sequence(_progression(), bpm=120)
    assert tl.tempo == 500_000
    assert tl.ticks_to_seconds(480) == pytest.approx(0.5)


def test_events_sorted_and_within_progression():
    from chordwave.grid.sequencer import Instrumentation, NoteEventSequencer

    prog = _progression("I(2) V(3) vi IV(1)")
    tl = NoteEventSequencer().sequence(
        prog, style="blues", instrumentation=Instrumentation(drums=True), bpm=90,
    )

    starts = [e.start_tick for e in tl.events]
    assert starts == sorted(starts)
    assert tl.length_ticks <= prog.total_beats * tl.ticks_per_quarter


def test_bpm_range_validated():
    from chordwave.errors import ValidationError
    from chordwave.grid.sequencer import NoteEventSequencer

    seq = NoteEventSequencer()
    for bpm in (0, 301, -5):
        with pytest.raises(ValidationError):
            seq.sequence(_progression(), bpm=bpm)
    assert seq.sequence(_progression(), bpm=300).bpm == 300
    assert seq.sequence(_progression(), bpm=1).tempo == 60_000_000


def test_note_event_ranges():
    from chordwave.errors import ValidationError
    from chordwave.grid.sequencer import NoteEvent

    with pytest.raises(ValidationError):
        NoteEvent(pitch=60, start_tick=0, duration_ticks=10, velocity=200)
    with pytest.raises(ValidationError):
        NoteEvent(pitch=60, start_tick=0, duration_ticks=10, channel=16)
    with pytest.raises(ValidationError):
        NoteEvent(pitch=128, start_tick=0, duration_ticks=10)
