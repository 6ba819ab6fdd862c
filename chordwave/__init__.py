"""CHORDWAVE: chord progressions in, stereo audio out."""

__version__ = "0.1.0"
