"""
Error types and the per-dataset diagnostic log used by the LatticeScope tools.

Error handling
--------------
- FormatMismatch: filename or content does not have the LatticeScope shape.
    Type-detection code turns this into a plain ``False``.
- MalformedField: the filename has the right shape but a positional numeric
    field (channel, stack, wavelength, times) could not be parsed. Fatal for
    the file, not for the experiment.
- MissingCompanion: ``<experimentName>_Settings.txt`` is not where it should be.
- IOFailure: reading a directory or the settings file failed.

AmbiguousLookup is not raised. Unknown wavelengths/detectors end up as
warnings in a DiagnosticLog next to malformed files and duplicate planes.
"""

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class LatticeError(Exception):
    """Base class for all LatticeScope reader errors."""


class FormatMismatch(LatticeError, ValueError):
    pass


class MalformedField(LatticeError, ValueError):
    def __init__(self, filename: str, field: str, token: str | None = None):
        self.filename = filename
        self.field = field
        self.token = token
        msg = f"Malformed {field} field in {filename}"
        if token is not None:
            msg += f": {token!r}"
        super().__init__(msg)


class MissingCompanion(LatticeError, FileNotFoundError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Could not find settings file for lattice experiment: {path}")


class IOFailure(LatticeError, OSError):
    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"Error reading {path}: {reason}")


class DiagnosticKind(str, Enum):
    MALFORMED_FIELD = "malformed_field"
    AMBIGUOUS_LOOKUP = "ambiguous_lookup"
    DUPLICATE_PLANE = "duplicate_plane"
    SETTINGS_VALUE = "settings_value"


class DiagnosticLog:
    """Warnings collected while opening one dataset.

    Every entry is also sent to the module logger at warning level, so
    nothing recorded here is hidden from a caller that only watches logs.
    """

    def __init__(self):
        self.entries: list[tuple[DiagnosticKind, str]] = []
        self.skipped_files: list[str] = []
        self.duplicate_planes: list[tuple[int, int]] = []

    def warn(self, kind: DiagnosticKind, message: str) -> None:
        self.entries.append((kind, message))
        logger.warning("[%s] %s", kind.value, message)

    def skip_file(self, filename: str, error: Exception) -> None:
        self.skipped_files.append(filename)
        self.warn(DiagnosticKind.MALFORMED_FIELD, f"Skipping {filename}: {error}")

    def duplicate(self, channel: int, stack: int, kept: str, dropped: str) -> None:
        self.duplicate_planes.append((channel, stack))
        self.warn(DiagnosticKind.DUPLICATE_PLANE,
                  f"ch{channel}/stack{stack} listed twice: keeping {kept}, dropping {dropped}")

    @property
    def skipped_count(self) -> int:
        return len(self.skipped_files)

    def messages(self, kind: DiagnosticKind | None = None) -> list[str]:
        return [msg for k, msg in self.entries if kind is None or k == kind]

    def __len__(self) -> int:
        return len(self.entries)
