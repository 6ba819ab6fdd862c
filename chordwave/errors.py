"""CHORDWAVE error types.

Validation errors are raised before any work begins. Everything a caller
can fix by changing its input is a ``ValidationError``.
"""

from __future__ import annotations


class ChordwaveError(Exception):
    """Base error for the CHORDWAVE engine."""


class ValidationError(ChordwaveError, ValueError):
    """Raised when request parameters are rejected before rendering."""


class ReverbConfigError(ValidationError):
    """Raised when a reverb configuration is inconsistent."""


class SynthesisError(ChordwaveError):
    """Raised when a voice fails to render mid-buffer."""
