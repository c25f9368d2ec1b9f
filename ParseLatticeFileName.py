import os
import re
import logging
from dataclasses import dataclass
from enum import Enum

from ci_lattice_errors import FormatMismatch, MalformedField

logger = logging.getLogger(__name__)

###############################################################################
# LatticeScope filename grammar
#
#   <expName>[_CamA|_CamB]_ch<N>_stack<NNNN>_<wavelength>nm_<rel>msec_<abs>msecAbs[_deskewed|_decon].tif
#
# The camera token is optional (CamA when absent). Everything after the
# channel marker is positional: stack, wavelength, relative time, absolute time.
###############################################################################

FILENAME_PATTERN_RAW = re.compile(r".*_ch.*_stack.*_.*nm_.*msec_.*msecAbs\.tif")
FILENAME_PATTERN_DESKEWED = re.compile(r".*_ch.*_stack.*_.*nm_.*msec_.*msecAbs_.*deskewed.*\.tif")
FILENAME_PATTERN_DECON = re.compile(r".*_ch.*_stack.*_.*nm_.*msec_.*msecAbs_.*decon.*\.tif")

_DIGITS = re.compile(r"\d+")

CAMERA_MARKER = "_Cam"
CHANNEL_MARKER = "_ch"
ABS_TIME_MARKER = "msecAbs"
TIF_EXTENSION = ".tif"


class Detector(str, Enum):
    CAM_A = "CamA"
    CAM_B = "CamB"


class ProcessingStage(str, Enum):
    RAW = "raw"
    DESKEWED = "deskewed"
    DECON = "decon"


@dataclass(frozen=True)
class ParsedFilenameFields:
    filename: str
    experiment_name: str
    detector: Detector
    channel_index: int
    stack_index: int
    excitation_wavelength_nm: float
    relative_time_ms: int | None
    absolute_time_ms: int | None
    processing_stage: ProcessingStage

    @property
    def variant_suffix(self) -> str:
        return get_variant_suffix(self.filename)


def match_processing_stage(name: str) -> ProcessingStage | None:
    """Return the stage whose filename shape ``name`` has, or None.

    Raw is tried first, then decon, then deskewed, so a name carrying both
    processing tags is reported as decon.
    """
    name = os.path.basename(name)
    if FILENAME_PATTERN_RAW.fullmatch(name):
        return ProcessingStage.RAW
    if FILENAME_PATTERN_DECON.fullmatch(name):
        return ProcessingStage.DECON
    if FILENAME_PATTERN_DESKEWED.fullmatch(name):
        return ProcessingStage.DESKEWED
    return None


def is_lattice_file_name(name: str) -> bool:
    return match_processing_stage(name) is not None


def get_experiment_name(base_name: str) -> str:
    """
    Experiment name of a LatticeScope file: everything before the first
    ``_Cam`` or, without a camera token, before the first ``_ch``.

    Only ever apply this to a base filename; directory names may contain
    the markers too.
    """
    idx = base_name.find(CAMERA_MARKER)
    if idx == -1:
        idx = base_name.find(CHANNEL_MARKER)
    if idx <= 0:
        raise FormatMismatch(f"No experiment name in {base_name!r}")
    return base_name[:idx]


def get_variant_suffix(name: str) -> str:
    """Text after the last ``msecAbs`` token, e.g. '.tif' or '_deskewed.tif'."""
    name = os.path.basename(name)
    idx = name.rfind(ABS_TIME_MARKER)
    if idx == -1:
        return ""
    return name[idx + len(ABS_TIME_MARKER):]


def _find_channel_marker(tokens: list[str]) -> int:
    for i, token in enumerate(tokens[:-1]):
        if token.startswith("ch") and tokens[i + 1].startswith("stack"):
            return i
    return -1


def _positional(tokens: list[str], idx: int, filename: str, field: str) -> str:
    if idx >= len(tokens):
        raise MalformedField(filename, field)
    return tokens[idx]


def _parse_index(token: str, prefix: str, filename: str, field: str) -> int:
    digits = token[len(prefix):]
    if not _DIGITS.fullmatch(digits):
        raise MalformedField(filename, field, token)
    return int(digits)


def _parse_time(token: str, unit: str, filename: str, field: str) -> int | None:
    if not token.endswith(unit):
        raise MalformedField(filename, field, token)
    digits = token[:-len(unit)]
    if digits == "":
        return None
    if not _DIGITS.fullmatch(digits):
        raise MalformedField(filename, field, token)
    return int(digits)


def parse_file_name(filename: str) -> ParsedFilenameFields:
    """
    Decode one LatticeScope filename into its typed fields.

    Args:
        filename: Base name or full path of a .tif file.

    Returns:
        ParsedFilenameFields

    Raises:
        FormatMismatch: the name has none of the raw/deskewed/decon shapes.
        MalformedField: a positional numeric field could not be parsed.
    """
    name = os.path.basename(filename)
    stage = match_processing_stage(name)
    if stage is None:
        raise FormatMismatch(f"No valid LatticeScope file name: {name}")

    experiment_name = get_experiment_name(name)
    tokens = name[:-len(TIF_EXTENSION)].split("_")

    ch_idx = _find_channel_marker(tokens)
    if ch_idx == -1:
        raise FormatMismatch(f"No ch<N>_stack<N> marker in {name}")

    # cam comes before channel
    detector = Detector.CAM_A
    for token in tokens[:ch_idx]:
        if token == Detector.CAM_B.value:
            detector = Detector.CAM_B
        elif token == Detector.CAM_A.value:
            detector = Detector.CAM_A

    channel = _parse_index(tokens[ch_idx], "ch", name, "channel")
    stack = _parse_index(tokens[ch_idx + 1], "stack", name, "stack")

    wl_token = _positional(tokens, ch_idx + 2, name, "excitation wavelength")
    if not wl_token.endswith("nm"):
        raise MalformedField(name, "excitation wavelength", wl_token)
    try:
        wavelength = float(wl_token[:-2])
    except ValueError:
        raise MalformedField(name, "excitation wavelength", wl_token) from None

    rel_time = _parse_time(_positional(tokens, ch_idx + 3, name, "relative time"),
                           "msec", name, "relative time")
    abs_time = _parse_time(_positional(tokens, ch_idx + 4, name, "absolute time"),
                           ABS_TIME_MARKER, name, "absolute time")

    fields = ParsedFilenameFields(
        filename=name,
        experiment_name=experiment_name,
        detector=detector,
        channel_index=channel,
        stack_index=stack,
        excitation_wavelength_nm=wavelength,
        relative_time_ms=rel_time,
        absolute_time_ms=abs_time,
        processing_stage=stage,
    )
    logger.debug("Parsed %s -> ch%d stack%d %snm %s", name, channel, stack, wavelength, detector.value)
    return fields


def build_file_name(experiment_name: str, channel: int, stack: int, wavelength_nm: float,
                    relative_time_ms: int = 0, absolute_time_ms: int | None = 0, *,
                    detector: Detector | str | None = None, stage_tag: str | None = None) -> str:
    """Compose a filename in acquisition-software form (inverse of parse_file_name)."""
    parts = [experiment_name]
    if detector is not None:
        parts.append(Detector(detector).value)
    wl = int(wavelength_nm) if float(wavelength_nm).is_integer() else wavelength_nm
    parts += [
        f"ch{channel}",
        f"stack{stack:04d}",
        f"{wl}nm",
        f"{relative_time_ms}msec",
        f"{'' if absolute_time_ms is None else absolute_time_ms}msecAbs",
    ]
    if stage_tag:
        parts.append(stage_tag)
    return "_".join(parts) + TIF_EXTENSION
