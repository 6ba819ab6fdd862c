"""CHORDWAVE Pipeline: generation request to stereo audio.

  request → ChordTheoryResolver → ChordProgression
          → NoteEventSequencer → Timeline
          → Mixer (voices × envelope × oscillator → reverb) → stereo buffer

All validation happens before any rendering starts.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import structlog
from numpy.typing import NDArray
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from chordwave.config import settings
from chordwave.errors import ValidationError
from chordwave.grid.sequencer import Instrumentation, NoteEventSequencer, Timeline
from chordwave.grid.theory import ChordProgression, ChordTheoryResolver
from chordwave.hands.effects import reverb_preset
from chordwave.hands.mixer import Mixer

logger = structlog.get_logger()


class GenerationRequest(BaseModel):
    """Parameters for one accompaniment render."""

    style: str = "pop"
    progression: str = "I-V-vi-IV"
    key: str = "C"
    mode: str = "major"
    bpm: int = Field(default=settings.default_bpm, ge=1, le=300)
    octave: int = Field(default=4, ge=1, le=7)
    keyboards: bool = True
    bass: bool = True
    drums: bool = False
    reverb: str | None = None  # Preset name: default, small_room, large_hall
    seed: int | None = None

    @classmethod
    def build(cls, **params: object) -> GenerationRequest:
        """Construct from raw parameters, raising our ValidationError on bad input."""
        try:
            return cls(**params)
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

    @property
    def instrumentation(self) -> Instrumentation:
        return Instrumentation(keyboards=self.keyboards, bass=self.bass, drums=self.drums)


@dataclass
class RenderResult:
    """Everything produced for one request."""

    progression: ChordProgression
    timeline: Timeline
    audio: NDArray[np.float64]  # (n, 2) in [-1, 1]
    sample_rate: int

    @property
    def duration_s(self) -> float:
        return len(self.audio) / self.sample_rate


def generate_timeline(request: GenerationRequest) -> tuple[ChordProgression, Timeline]:
    """Resolve the chords and sequence them into note events."""
    progression = ChordTheoryResolver().resolve(request.progression, request.key, request.mode)
    sequencer = NoteEventSequencer(seed=request.seed)
    timeline = sequencer.sequence(
        progression,
        style=request.style,
        bpm=request.bpm,
        octave=request.octave,
        instrumentation=request.instrumentation,
    )
    return progression, timeline


def render_accompaniment(
    request: GenerationRequest,
    sample_rate: int = settings.sample_rate,
) -> RenderResult:
    """Run the full chain for ``request``.

    Raises:
        ValidationError: Bad chords, key, mode, bpm or reverb preset, or a
            timeline longer than the render limit.
    """
    reverb = reverb_preset(request.reverb) if request.reverb else None
    progression, timeline = generate_timeline(request)

    mixer = Mixer(sample_rate=sample_rate, reverb=reverb, seed=request.seed)
    audio = mixer.render(timeline)

    logger.info(
        "pipeline.render.done",
        style=request.style,
        chords=len(progression),
        substituted=len(progression.substituted),
        events=len(timeline.events),
        duration_s=round(len(audio) / sample_rate, 3),
    )
    return RenderResult(progression=progression, timeline=timeline, audio=audio, sample_rate=sample_rate)
