"""CHORDWAVE Envelope Tests: ADSR state machine and release law."""

import numpy as np
import pytest


def test_envelope_endpoints():
    """Envelope(0) = 0 and Envelope(attack) ≈ 1."""
    from chordwave.hands.envelope import VoiceEnvelope

    env = VoiceEnvelope(attack_s=0.05, decay_s=0.1, sustain=0.6, release_s=0.2)

    assert env.level(0.0) == 0.0
    assert env.level(0.05) == pytest.approx(1.0)
    assert env.level(0.025) == pytest.approx(0.5)
    assert env.level(0.10) == pytest.approx(0.8), "Halfway through decay"
    assert env.level(5.0) == pytest.approx(0.6), "Sustain holds until release"


def test_envelope_stays_in_unit_range():
    from chordwave.hands.envelope import VoiceEnvelope

    env = VoiceEnvelope(attack_s=0.01, decay_s=0.02, sustain=0.9, release_s=0.05)
    env.trigger_release(0.5)
    levels = [env.level(t) for t in np.linspace(-0.1, 1.0, 500)]

    assert min(levels) >= 0.0
    assert max(levels) <= 1.0


def test_sustain_clamped_on_assignment():
    from chordwave.hands.envelope import VoiceEnvelope

    assert VoiceEnvelope(sustain=1.5).sustain == 1.0
    assert VoiceEnvelope(sustain=-0.2).sustain == 0.0
    env = VoiceEnvelope()
    env.sustain = 3.0
    assert env.sustain == 1.0


def test_stage_sequence():
    from chordwave.hands.envelope import VoiceEnvelope

    env = VoiceEnvelope(attack_s=0.1, decay_s=0.1, sustain=0.5, release_s=0.2)
    assert env.stage(0.05) == "attack"
    assert env.stage(0.15) == "decay"
    assert env.stage(1.0) == "sustain"

    env.trigger_release(1.0)
    assert env.stage(1.1) == "release"
    assert not env.is_finished(1.2)
    assert env.stage(1.25) == "finished"
    assert env.is_finished(1.25)


def test_linear_release_from_captured_level():
    """Release fades linearly from the level held at the trigger."""
    from chordwave.hands.envelope import VoiceEnvelope

    env = VoiceEnvelope(attack_s=0.01, decay_s=0.05, sustain=0.7, release_s=0.2)
    env.trigger_release(1.0)

    assert env.release_level == pytest.approx(0.7)
    assert env.level(1.1) == pytest.approx(0.35)
    assert env.level(1.2) == pytest.approx(0.0, abs=1e-9)
    assert env.level(1.3) == 0.0
    assert env.finished_at == pytest.approx(1.2)


def test_release_during_attack():
    """An early release starts from the partial attack level, not sustain."""
    from chordwave.hands.envelope import VoiceEnvelope

    env = VoiceEnvelope(attack_s=0.1, decay_s=0.1, sustain=0.8, release_s=0.1)
    env.trigger_release(0.05)

    assert env.release_level == pytest.approx(0.5)
    assert env.level(0.1) == pytest.approx(0.25)


def test_zero_attack_starts_at_peak():
    from chordwave.hands.envelope import VoiceEnvelope

    env = VoiceEnvelope(attack_s=0.0, decay_s=0.1, sustain=0.5, release_s=0.1)
    assert env.level(0.0) == 1.0
    assert VoiceEnvelope(attack_s=0.0, decay_s=0.0, sustain=0.5).level(0.0) == 0.5


def test_render_matches_level():
    """The vectorized curve agrees with the per-sample state machine."""
    from chordwave.hands.envelope import VoiceEnvelope

    sr = 1000
    env = VoiceEnvelope(attack_s=0.02, decay_s=0.05, sustain=0.4, release_s=0.1)
    env.trigger_release(0.3)

    curve = env.render(500, sr)
    expected = np.array([env.level(i / sr) for i in range(500)])
    np.testing.assert_allclose(curve, expected, atol=1e-9)

    tail = env.render(100, sr, start_s=0.35)
    np.testing.assert_allclose(tail, [env.level(0.35 + i / sr) for i in range(100)], atol=1e-9)


def test_negative_times_rejected():
    from chordwave.errors import ValidationError
    from chordwave.hands.envelope import VoiceEnvelope

    with pytest.raises(ValidationError):
        VoiceEnvelope(attack_s=-0.1)
    with pytest.raises(ValidationError):
        VoiceEnvelope(release_s=-1.0)
