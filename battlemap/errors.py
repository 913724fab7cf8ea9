# battlemap/errors.py
# Error taxonomy for mask editing, encoding, sync and the upload pipeline


class BattlemapError(Exception):
    """Base class for all domain errors."""


class ValidationError(BattlemapError):
    """Malformed or accidental input (tiny rectangle, bad coordinates). Ignored by callers."""


class OversizeError(BattlemapError):
    """Mask still exceeds the hard cap after the whole compression ladder."""

    def __init__(self, message, byte_length=None):
        super().__init__(message)
        self.byte_length = byte_length


class DecodeError(BattlemapError):
    """Encoded mask or image could not be decoded."""


class StaleReferenceError(BattlemapError):
    """Map or layer id no longer exists (a delete raced with an edit)."""


# --- Upload pipeline stages ---

class StageError(BattlemapError):
    stage = None

    def __init__(self, message, cause=None):
        super().__init__(f"{self.stage}: {message}")
        self.cause = cause


class UploadingError(StageError):
    stage = 'Uploading'


class ScalingError(StageError):
    stage = 'Scaling'


class RotatingError(StageError):
    stage = 'Rotating'


class PersistingError(StageError):
    stage = 'Persisting'
