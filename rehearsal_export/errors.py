"""Error types for the rehearsal export engine."""


class ExportError(Exception):
    """Base class for export errors.

    Carries the failing segment index (0-based, None when not tied to a
    segment) and the export stage so callers can report precisely.
    """

    def __init__(self, message: str, segment_index: int | None = None, stage: str | None = None):
        super().__init__(message)
        self.segment_index = segment_index
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        context = []
        if self.stage:
            context.append(f"stage={self.stage}")
        if self.segment_index is not None:
            context.append(f"segment={self.segment_index + 1}")
        if context:
            return f"{message} ({', '.join(context)})"
        return message


class AssetLoadError(ExportError):
    """An audio, video or image source could not be opened. Fatal."""

    def __init__(self, message: str, asset: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.asset = asset


class NormalizationError(ExportError):
    """Voice conversion failed. Recoverable per segment."""

    def __init__(self, message: str, status_code: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ExtractionError(ExportError):
    """Every audio-track extraction strategy failed."""

    pass


class CodecNegotiationError(ExportError):
    """No output container/codec in the preference list is supported. Fatal."""

    pass


class CaptureError(ExportError):
    """The recording sink failed mid-session. Fatal, output discarded."""

    pass


class ExportBusyError(ExportError):
    """Another export is already running in this process."""

    pass


class ProgrammingError(Exception):
    """Engine misuse: rewiring a handle, reading a duration before load."""

    pass
