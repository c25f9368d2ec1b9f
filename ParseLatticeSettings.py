import re
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ci_lattice_errors import IOFailure, DiagnosticKind, DiagnosticLog

logger = logging.getLogger(__name__)

###############################################################################
# Parser for the <experimentName>_Settings.txt file written by the
# LatticeScope acquisition software.
#
# Line kinds, in priority order:
#   key: value                          -> data line
#   key=value                           -> data line
#   ***** ***** ***** Label ***** ***** *****  -> new tag class
#   [Label]                             -> new parent tag
#   (empty)                             -> ignored
###############################################################################

# Search for <***** ***** ***** some label ***** ***** *****>
HEADER_PATTERN = re.compile(r"[*]{5}\s+[*]{5}\s+[*]{5}.*[*]{5}\s+[*]{5}\s+[*]{5}.*")
HEADER_SPLIT = re.compile(r"\*{5} \*{5} \*{5}")

# MM/dd/yyyy hh:mm:ss a; AM/PM is matched literally, independent of the process locale
DATE_PATTERN = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4}) (\d{1,2}):(\d{2}):(\d{2}) ?([AaPp][Mm])")
LASER_POWER_KEY = "Excitation Filter, Laser, Power (%), Exp(ms)"


@dataclass(frozen=True)
class SettingsEntry:
    tag_class: str | None
    parent_tag: str | None
    key: str
    raw_value: str

    @property
    def metadata_key(self) -> str:
        """Key as used in the original-metadata table: [class]::parent::key"""
        prefix = f"[{self.tag_class}]::" if self.tag_class else ""
        if self.parent_tag:
            prefix += f"{self.parent_tag}::"
        return prefix + self.key


@dataclass
class _Cursor:
    """State of one parse call. Section labels are sticky until the next banner/bracket."""
    diagnostics: DiagnosticLog
    excitation_wavelength: float | None = None
    tag_class: str | None = None
    parent_tag: str | None = None


@dataclass
class SettingsValues:
    """Values picked out of the settings file by the keyed side-effect table."""
    image_description: str | None = None
    magnification: float | None = None
    acquisition_date: datetime | None = None
    channel_attenuation: float | None = None
    attenuations: dict[float, float] = field(default_factory=dict)
    original_metadata: dict[str, str] = field(default_factory=dict)


def _split_data_line(line: str) -> tuple[str, str] | None:
    index = line.find(":")
    if index == -1:
        index = line.find("=")
    if index == -1:
        return None
    return line[:index], line[index + 1:]


def _banner_label(line: str) -> str | None:
    label = None
    for part in HEADER_SPLIT.split(line):
        if part.strip():
            label = part.strip()
    return label


def _bracket_label(line: str) -> str | None:
    start = line.find("[")
    end = line.rfind("]")
    if start == -1 or end < start:
        return None
    return line[start:end + 1]


# -----------------------------------------------------------------------------
# Keyed side effects. Keys are matched exactly, trailing whitespace included.
# -----------------------------------------------------------------------------

def _on_z_motion(value: str, values: SettingsValues, cursor: _Cursor) -> None:
    values.image_description = value.strip()


def _on_magnification(value: str, values: SettingsValues, cursor: _Cursor) -> None:
    try:
        values.magnification = float(value)
    except ValueError:
        cursor.diagnostics.warn(DiagnosticKind.SETTINGS_VALUE,
                                f"Unparsable magnification {value.strip()!r}")


def parse_acquisition_date(text: str) -> datetime:
    """MM/dd/yyyy hh:mm:ss AM|PM as a UTC datetime; ValueError when it does not fit."""
    match = DATE_PATTERN.fullmatch(text.strip())
    if match is None:
        raise ValueError(f"Date does not match MM/dd/yyyy hh:mm:ss a: {text!r}")
    month, day, year, hour, minute, second = (int(g) for g in match.groups()[:6])
    if not 1 <= hour <= 12:
        raise ValueError(f"Hour out of range for a 12-hour clock: {hour}")
    hour = hour % 12 + (12 if match.group(7).upper() == "PM" else 0)
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


def _on_date(value: str, values: SettingsValues, cursor: _Cursor) -> None:
    try:
        date = parse_acquisition_date(value)
    except ValueError:
        cursor.diagnostics.warn(DiagnosticKind.SETTINGS_VALUE,
                                f"Unparsable acquisition date {value.strip()!r}")
        return
    values.acquisition_date = date


def _parse_fraction(text: str) -> float | None:
    """Laser power as 0-1 fraction; percentages (1 < p <= 100) are scaled."""
    try:
        power = float(text)
    except ValueError:
        return None
    if 0.0 <= power <= 1.0:
        return power
    if 1.0 < power <= 100.0:
        return power / 100.0
    return None


def _on_laser_power(value: str, values: SettingsValues, cursor: _Cursor) -> None:
    # <filter>\t<laser nm>\t<power %>\t<exposure ms> after the separator
    val = value.split("\t")
    if len(val) < 4:
        cursor.diagnostics.warn(DiagnosticKind.SETTINGS_VALUE,
                                f"Laser power line has {len(val)} tab fields: {value.strip()!r}")
        return
    try:
        wavelength = float(val[2])
    except ValueError:
        logger.debug("Laser power line without wavelength: %r", value)
        return
    fraction = _parse_fraction(val[3].strip())
    if fraction is None:
        cursor.diagnostics.warn(DiagnosticKind.SETTINGS_VALUE,
                                f"Laser power {val[3].strip()!r} at {wavelength}nm is not a fraction")
        return
    values.attenuations[wavelength] = fraction
    current = cursor.excitation_wavelength
    if current is not None and wavelength == float(current):
        values.channel_attenuation = fraction


KEY_HANDLERS = {
    "Z motion ": _on_z_motion,
    "Magnification ": _on_magnification,
    "Date ": _on_date,
}


def _dispatch(key: str, value: str, values: SettingsValues, cursor: _Cursor) -> None:
    handler = KEY_HANDLERS.get(key)
    if handler is not None:
        handler(value, values, cursor)
    if LASER_POWER_KEY in key:
        _on_laser_power(value, values, cursor)


def parse_settings_lines(lines, *, excitation_wavelength: float | None = None,
                         diagnostics: DiagnosticLog | None = None) -> tuple[list[SettingsEntry], SettingsValues]:
    """
    Parse settings-file lines in one forward pass.

    Args:
        lines: Iterable of text lines (trailing newlines are stripped).
        excitation_wavelength: Wavelength (nm) of the channel being opened;
            selects which laser-power line sets ``channel_attenuation``.
        diagnostics: Log receiving unparsable-value warnings. A private one is
            used when omitted.

    Returns:
        (entries, values): every data line as a SettingsEntry carrying the
        section context in effect, plus the values gathered from known keys.
    """
    diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
    cursor = _Cursor(diagnostics=diagnostics, excitation_wavelength=excitation_wavelength)
    values = SettingsValues()
    entries = []

    for line in lines:
        line = line.rstrip("\r\n")
        pair = _split_data_line(line)
        if pair is not None:
            key, value = pair
            entry = SettingsEntry(cursor.tag_class, cursor.parent_tag, key, value)
            entries.append(entry)
            values.original_metadata[entry.metadata_key] = value
            _dispatch(key, value, values, cursor)
        elif not line:
            continue
        elif HEADER_PATTERN.fullmatch(line):
            label = _banner_label(line)
            if label is not None:
                cursor.tag_class = label
        else:
            label = _bracket_label(line)
            if label is None:
                logger.debug("Ignoring settings line without section brackets: %r", line)
            else:
                cursor.parent_tag = label

    return entries, values


def read_settings_file(path: str, *, excitation_wavelength: float | None = None,
                       diagnostics: DiagnosticLog | None = None) -> tuple[list[SettingsEntry], SettingsValues]:
    """Read and parse a settings file. Any I/O problem aborts with IOFailure."""
    logger.info("Reading metadata from settings file: %s", path)
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as fh:
            lines = fh.readlines()
    except OSError as e:
        raise IOFailure(path, str(e)) from e
    return parse_settings_lines(lines, excitation_wavelength=excitation_wavelength,
                                diagnostics=diagnostics)
