import os
import logging

import numpy as np

from ci_lattice_errors import DiagnosticLog, FormatMismatch, MalformedField
from ci_lattice_helpers import ExperimentIdentity, SETTINGS_FILE
from ParseLatticeFileName import Detector, ParsedFilenameFields, parse_file_name

logger = logging.getLogger(__name__)


class DimensionMatrix:
    """
    channel -> stack -> filename for one experiment variant.

    channel_count and stack_count are max(index) + 1, so gaps count as
    missing acquisitions. An empty matrix reports 1 x 1.
    """

    def __init__(self, identity: ExperimentIdentity):
        self.identity = identity
        self.planes: dict[int, dict[int, str]] = {}
        self.channel_fields: dict[int, ParsedFilenameFields] = {}
        self.detectors: set[Detector] = set()
        self.skipped_files: list[str] = []

    def add(self, fields: ParsedFilenameFields, diagnostics: DiagnosticLog) -> None:
        stacks = self.planes.setdefault(fields.channel_index, {})
        previous = stacks.get(fields.stack_index)
        if previous is not None and previous != fields.filename:
            diagnostics.duplicate(fields.channel_index, fields.stack_index,
                                  kept=fields.filename, dropped=previous)
        stacks[fields.stack_index] = fields.filename
        self.channel_fields.setdefault(fields.channel_index, fields)
        self.detectors.add(fields.detector)

    @property
    def channel_count(self) -> int:
        return max(self.planes) + 1 if self.planes else 1

    @property
    def stack_count(self) -> int:
        stacks = [s for chmap in self.planes.values() for s in chmap]
        return max(stacks) + 1 if stacks else 1

    @property
    def detector_count(self) -> int:
        return 2 if Detector.CAM_B in self.detectors else 1

    @property
    def skipped_count(self) -> int:
        return len(self.skipped_files)

    def is_empty(self) -> bool:
        return not self.planes

    def channels(self) -> list[int]:
        return sorted(self.planes)

    def stacks(self, channel: int) -> list[int]:
        return sorted(self.planes.get(channel, {}))

    def filename(self, channel: int, stack: int) -> str | None:
        return self.planes.get(channel, {}).get(stack)

    def items(self):
        """(channel, stack, filename) in channel-major order."""
        for c in self.channels():
            for s in self.stacks(c):
                yield c, s, self.planes[c][s]

    def filenames(self) -> list[str]:
        return [name for _, _, name in self.items()]

    @property
    def plane_count(self) -> int:
        return sum(len(chmap) for chmap in self.planes.values())

    def presence(self) -> np.ndarray:
        """Boolean (channel_count, stack_count) grid of acquired planes."""
        grid = np.zeros((self.channel_count, self.stack_count), dtype=bool)
        for c, s, _ in self.items():
            grid[c, s] = True
        return grid

    def missing(self) -> list[tuple[int, int]]:
        if self.is_empty():
            return []
        return [(int(c), int(s)) for c, s in np.argwhere(~self.presence())]

    def representative(self, channel: int | None = None) -> ParsedFilenameFields | None:
        if not self.channel_fields:
            return None
        if channel is None:
            channel = self.channels()[0]
        return self.channel_fields.get(channel)


def _is_settings_file(name: str) -> bool:
    return name.endswith(SETTINGS_FILE)


def build_dimension_matrix(sibling_files, identity: ExperimentIdentity,
                           diagnostics: DiagnosticLog | None = None) -> DimensionMatrix:
    """
    Parse every sibling filename and fold it into a DimensionMatrix.

    Files that fail filename parsing are left out and listed in
    ``matrix.skipped_files`` (and in ``diagnostics``).
    """
    diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
    matrix = DimensionMatrix(identity)

    for path in sibling_files:
        name = os.path.basename(path)
        if _is_settings_file(name):
            continue
        try:
            fields = parse_file_name(name)
            if fields.experiment_name != identity.experiment_name:
                raise FormatMismatch(f"{name} belongs to experiment {fields.experiment_name!r}")
        except (FormatMismatch, MalformedField) as e:
            matrix.skipped_files.append(name)
            diagnostics.skip_file(name, e)
            continue
        matrix.add(fields, diagnostics)

    missing = matrix.missing()
    if missing:
        logger.info("%s: %d of %d planes not acquired", identity.experiment_name,
                    len(missing), matrix.channel_count * matrix.stack_count)
    logger.info("%s: %d channel(s), %d stack(s), %d detector(s), %d file(s) skipped",
                identity.experiment_name, matrix.channel_count, matrix.stack_count,
                matrix.detector_count, matrix.skipped_count)
    return matrix
