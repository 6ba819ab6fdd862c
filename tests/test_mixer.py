"""CHORDWAVE Mixer Tests: stereo rendering, fallback tone, voice arena.

Renders use a low sample rate to keep the suite fast.
"""

import threading

import mido
import numpy as np
import pytest

SR = 8000


def _timeline(style: str = "pop", progression: str = "I-IV", drums: bool = False):
    from chordwave.grid.sequencer import Instrumentation, NoteEventSequencer
    from chordwave.grid.theory import ChordTheoryResolver

    prog = ChordTheoryResolver().resolve(progression)
    return NoteEventSequencer(seed=1).sequence(
        prog, style=style, bpm=120, instrumentation=Instrumentation(drums=drums),
    )


# ── Rendering ────────────────────────────────────────────

def test_render_is_clamped_stereo():
    from chordwave.hands.mixer import Mixer

    tl = _timeline()
    out = Mixer(sample_rate=SR).render(tl)

    assert out.ndim == 2 and out.shape[1] == 2, "Output must be (n, 2)"
    assert len(out) >= int(tl.ticks_to_seconds(tl.length_ticks) * SR)
    assert np.max(np.abs(out)) <= 0.8 + 1e-12, "Headroom caps the peak at 0.8"
    assert np.max(np.abs(out)) > 0.01, "Render should not be silent"
    assert not np.any(np.isnan(out))


def test_empty_timeline_gives_silence():
    from chordwave.grid.sequencer import Timeline
    from chordwave.hands.mixer import Mixer

    out = Mixer(sample_rate=SR).render(Timeline(events=()))
    assert out.shape == (SR, 2)
    assert np.all(out == 0.0)


def test_seeded_render_is_reproducible():
    from chordwave.hands.mixer import Mixer
    from chordwave.hands.synth import preset_for

    tl = _timeline(style="jazz")
    violin = {0: preset_for(41)}
    a = Mixer(sample_rate=SR, seed=9, workers=1).render(tl, instruments=violin)
    b = Mixer(sample_rate=SR, seed=9, workers=1).render(tl, instruments=violin)

    np.testing.assert_array_equal(a, b)


def test_worker_count_does_not_change_mix():
    """The locked merge gives the same bus for one or many workers."""
    from chordwave.hands.mixer import Mixer

    tl = _timeline(style="rock", drums=True)
    single = Mixer(sample_rate=SR, workers=1, seed=0).render(tl)
    many = Mixer(sample_rate=SR, workers=6, seed=0).render(tl)

    np.testing.assert_allclose(single, many, atol=1e-9)


def test_reverb_changes_output():
    from chordwave.hands.effects import reverb_preset
    from chordwave.hands.mixer import Mixer

    tl = _timeline()
    dry = Mixer(sample_rate=SR, seed=0).render(tl)
    wet = Mixer(sample_rate=SR, seed=0, reverb=reverb_preset("large_hall")).render(tl)

    assert not np.allclose(dry, wet[: len(dry)])
    assert np.max(np.abs(wet)) <= 1.0


def test_reverb_tail_extends_render():
    """The bus runs past the last release by the reverb's tail."""
    from chordwave.hands.effects import reverb_preset
    from chordwave.hands.mixer import Mixer

    hall = reverb_preset("large_hall")
    tl = _timeline()
    dry = Mixer(sample_rate=SR, seed=0).render(tl)
    wet = Mixer(sample_rate=SR, seed=0, reverb=hall).render(tl)

    assert len(wet) - len(dry) == pytest.approx(hall.tail_seconds * SR, abs=2)
    assert np.max(np.abs(wet[len(dry):])) > 0.0, "Tail should not be silent"


def test_overlong_timeline_rejected_before_render(monkeypatch):
    from chordwave.errors import ValidationError
    from chordwave.grid.sequencer import NoteEvent, Timeline
    from chordwave.hands import mixer as mixer_mod
    from chordwave.hands.mixer import Mixer

    def no_voices(self, *args, **kwargs):
        raise AssertionError("voices built for a rejected timeline")

    monkeypatch.setattr(mixer_mod.Mixer, "build_voices", no_voices)
    # 70 quarters at 1 bpm = 4200 s
    tl = Timeline(events=(NoteEvent(60, 0, 480 * 70),), bpm=1)
    with pytest.raises(ValidationError):
        Mixer(sample_rate=SR).render(tl)
    with pytest.raises(ValidationError):
        Mixer(sample_rate=SR, max_seconds=1.0).render(_timeline())


def test_fallback_tone_on_synthesis_fault(monkeypatch):
    """A crash inside a voice yields the 440 Hz safety tone, not an error."""
    from chordwave.config import settings
    from chordwave.hands import synth
    from chordwave.hands.mixer import Mixer

    def broken(self, n, sr=44100, at=None):
        raise RuntimeError("oscillator exploded")

    monkeypatch.setattr(synth.Voice, "render", broken)
    out = Mixer(sample_rate=SR).render(_timeline())

    assert out.shape == (settings.fallback_samples, 2)
    assert np.max(np.abs(out)) == pytest.approx(0.5, abs=1e-3)
    np.testing.assert_array_equal(out[:, 0], out[:, 1])


def test_render_events_wrapper():
    from chordwave.grid.sequencer import NoteEvent
    from chordwave.hands.mixer import Mixer

    events = [NoteEvent(69, 0, 480, 100, 0), NoteEvent(45, 480, 480, 90, 1)]
    out = Mixer(sample_rate=SR, seed=0).render_events(events, bpm=60, programs={1: 33})

    assert out.shape[1] == 2
    assert len(out) >= 2 * SR, "Two quarters at 60 bpm"
    assert np.max(np.abs(out[: SR // 2])) > 0.01


def test_pan_is_constant_power():
    from chordwave.hands.mixer import PanConfig

    for position in (-1.0, -0.3, 0.0, 0.5, 1.0):
        pan = PanConfig(position=position)
        assert pan.left_gain ** 2 + pan.right_gain ** 2 == pytest.approx(1.0)


def test_finalize_normalizes_and_clamps():
    from chordwave.hands.mixer import finalize

    bus = np.array([[2.0, -4.0], [np.nan, 1.0]])
    out = finalize(bus, headroom=0.8)
    assert np.max(np.abs(out)) == pytest.approx(0.8)
    assert out[1, 0] == 0.0


# ── Voice arena ──────────────────────────────────────────

def _voice(note: int = 60, start: float = 0.0, channel: int = 0):
    from chordwave.hands.synth import Voice, preset_for

    return Voice.from_note(note, 100, preset_for(0), start_time=start, channel=channel)


def test_pool_handles_and_reap():
    from chordwave.hands.voices import VoicePool

    pool = VoicePool(capacity=4)
    handle = pool.note_on(_voice())
    assert pool.get(handle) is not None
    assert pool.note_off(handle, at=0.5)

    assert pool.reap(0.6) == 0, "Still releasing"
    assert pool.reap(0.75) == 1, "Piano release is 0.2 s"
    assert pool.get(handle) is None
    assert not pool.note_off(handle, at=1.0), "Stale handle after reap"
    assert len(pool) == 0


def test_pool_steals_oldest_when_full():
    from chordwave.hands.voices import VoicePool

    pool = VoicePool(capacity=2)
    oldest = _voice(start=0.0)
    h_old = pool.note_on(oldest)
    pool.note_on(_voice(start=1.0))
    h_new = pool.note_on(_voice(start=2.0))

    assert len(pool) == 2
    assert not oldest.active
    assert pool.get(h_old) is None, "Stolen slot invalidates the old handle"
    assert h_new.index == h_old.index
    assert h_new.generation == h_old.generation + 1


def test_release_note_matches_channel_and_pitch():
    from chordwave.hands.voices import VoicePool

    pool = VoicePool()
    pool.note_on(_voice(note=60, channel=0))
    pool.note_on(_voice(note=60, channel=1))
    pool.note_on(_voice(note=64, channel=0))

    assert pool.release_note(0, 60, at=0.1) == 1
    assert sum(v.released for v in pool.active()) == 1


def test_pool_concurrent_note_on():
    from chordwave.hands.voices import VoicePool

    pool = VoicePool(capacity=64)

    def play(offset: int) -> None:
        for i in range(8):
            pool.note_on(_voice(note=40 + offset + i))

    threads = [threading.Thread(target=play, args=(k * 8,)) for k in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(pool) == 64
    assert len({v.note for v in pool.active()}) == 64


# ── Live synthesizer ─────────────────────────────────────

def test_live_synth_note_cycle():
    from chordwave.hands.voices import LiveSynthesizer

    synth = LiveSynthesizer(sample_rate=SR, seed=0)
    synth.send(mido.Message("note_on", note=69, velocity=100, channel=0))
    block = synth.read(800)

    assert block.shape == (800, 2)
    assert np.max(np.abs(block)) > 0.01
    assert len(synth.pool) == 1

    synth.send(mido.Message("note_off", note=69, velocity=0, channel=0))
    synth.read(2400)
    assert len(synth.pool) == 0, "Voice reaped once its release ends"
    assert np.all(synth.read(100) == 0.0)


def test_live_synth_program_change():
    from chordwave.hands.voices import LiveSynthesizer

    synth = LiveSynthesizer(sample_rate=SR)
    synth.send(mido.Message("program_change", program=41, channel=3))
    synth.send(mido.Message("note_on", note=72, velocity=90, channel=3))

    assert synth.pool.active()[0].instrument.name == "Violin"
    synth.send(mido.Message("control_change", control=123, value=0, channel=3))
    assert synth.pool.active()[0].released
