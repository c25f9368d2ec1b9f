"""
Helpers for locating the files of a LatticeScope experiment and for reading
the few TIFF header facts the metadata needs.

Overview
--------
- Experiment resolution: resolve_experiment(...), find_settings_file(...)
    A file path is mapped to the experiment root directory, the experiment
    name and the sibling files of the same processing variant.
- TIFF headers: read_tiff_info(...): page count, first-page size, dtype,
    ImageDescription, Artist/HostComputer tags and EXIF exposure time.
    Pixel data is never decoded.
- Type sniffing: is_imagej_tiff(...): does the first page comment start
    with ``ImageJ=``.
- Pixel types: ome_pixel_type(...) maps numpy dtypes to OME names.

Directory layout
----------------
<root>/<exp>_Settings.txt
<root>/<exp>[_CamX]_ch0_stack0000_488nm_..._msecAbs.tif          raw
<root>/Deskewed/<exp>..._msecAbs_deskewed.tif                      deskewed
<root>/GPUDecon/<exp>..._msecAbs_decon.tif                         deconvolved

Error handling
--------------
- resolve_experiment: FormatMismatch for foreign filenames, MissingCompanion
    when the settings file is absent, IOFailure when the directory cannot
    be listed.
- read_tiff_info: IOFailure when the file cannot be opened as TIFF.
- is_imagej_tiff: never raises.
"""

import os
import logging
from dataclasses import dataclass

import numpy as np
import tifffile

from ci_lattice_errors import FormatMismatch, MissingCompanion, IOFailure
from ParseLatticeFileName import (
    ProcessingStage,
    get_experiment_name,
    get_variant_suffix,
    match_processing_stage,
)

logger = logging.getLogger(__name__)

SETTINGS_FILE = "_Settings.txt"
DESKEWED_DIR = "Deskewed"
DECON_DIR = "GPUDecon"
COMPANION_EXTENSION = ".companion.ome"

OME_PIXEL_TYPES = {
    np.dtype(np.uint8): "uint8",
    np.dtype(np.int8): "int8",
    np.dtype(np.uint16): "uint16",
    np.dtype(np.int16): "int16",
    np.dtype(np.uint32): "uint32",
    np.dtype(np.int32): "int32",
    np.dtype(np.float32): "float",
    np.dtype(np.float64): "double",
}


def ome_pixel_type(dtype) -> str | None:
    if dtype is None:
        return None
    return OME_PIXEL_TYPES.get(np.dtype(dtype))


@dataclass(frozen=True)
class ExperimentIdentity:
    root_directory: str
    experiment_name: str

    @property
    def settings_file(self) -> str:
        return os.path.join(self.root_directory, self.experiment_name + SETTINGS_FILE)


def identify_experiment(path: str) -> ExperimentIdentity:
    """Experiment root + name for a dataset file, without touching the disk.

    Deskewed and decon files live one directory below the experiment root,
    so for them the grandparent directory is the root.
    """
    base_file = os.path.abspath(path)
    parent = os.path.dirname(base_file)
    if match_processing_stage(base_file) != ProcessingStage.RAW:
        parent = os.path.dirname(parent)
    return ExperimentIdentity(parent, get_experiment_name(os.path.basename(base_file)))


def find_settings_file(path: str) -> str:
    return identify_experiment(path).settings_file


def list_directory(directory: str) -> list[str]:
    try:
        return sorted(os.listdir(directory))
    except OSError as e:
        raise IOFailure(directory, str(e)) from e


def belongs_to_experiment(name: str, experiment_name: str) -> bool:
    if not name.startswith(experiment_name):
        return False
    try:
        return get_experiment_name(name) == experiment_name
    except FormatMismatch:
        return False


@dataclass(frozen=True)
class ExperimentFileSet:
    identity: ExperimentIdentity
    input_file: str
    image_directory: str
    stage: ProcessingStage
    variant_suffix: str

    @property
    def settings_file(self) -> str:
        return self.identity.settings_file

    def pixel_files(self) -> list[str]:
        """Pixel-bearing .tif files of this experiment and processing variant."""
        files = []
        for name in list_directory(self.image_directory):
            if not name.lower().endswith(".tif"):
                continue
            if not belongs_to_experiment(name, self.identity.experiment_name):
                continue
            if get_variant_suffix(name) != self.variant_suffix:
                continue
            files.append(os.path.join(self.image_directory, name))
        return files

    def related_files(self) -> list[str]:
        """Pixel files plus the settings file."""
        return self.pixel_files() + [self.settings_file]


def resolve_experiment(path: str, *, require_settings: bool = True) -> ExperimentFileSet:
    """
    Resolve the experiment a LatticeScope file belongs to.

    Args:
        path: Any raw, deskewed or decon file of the experiment.
        require_settings: Raise MissingCompanion when the settings file is absent.

    Returns:
        ExperimentFileSet
    """
    stage = match_processing_stage(path)
    if stage is None:
        raise FormatMismatch(f"No valid LatticeScope file name: {os.path.basename(path)}")

    identity = identify_experiment(path)
    if require_settings and not os.path.exists(identity.settings_file):
        logger.info("Can not find settings file at %s", identity.settings_file)
        raise MissingCompanion(identity.settings_file)

    abs_path = os.path.abspath(path)
    fileset = ExperimentFileSet(
        identity=identity,
        input_file=abs_path,
        image_directory=os.path.dirname(abs_path),
        stage=stage,
        variant_suffix=get_variant_suffix(abs_path),
    )
    logger.debug("Resolved %s -> experiment %r in %s (%s)", path, identity.experiment_name,
                 identity.root_directory, stage.value)
    return fileset


def variant_suffixes(directory: str, experiment_name: str) -> list[str]:
    """Distinct text after ``msecAbs`` among the experiment's .tif files in ``directory``."""
    suffixes = []
    for name in list_directory(directory):
        if not name.lower().endswith(".tif") or not belongs_to_experiment(name, experiment_name):
            continue
        suffix = get_variant_suffix(name)
        if suffix and suffix not in suffixes:
            suffixes.append(suffix)
    return suffixes


# -----------------------------------------------------------------------------
# TIFF header access (tifffile)
# -----------------------------------------------------------------------------

def _tag_value(page, name: str):
    tag = page.tags.get(name)
    return None if tag is None else tag.value


def _exposure_seconds(page) -> float | None:
    exif = _tag_value(page, "ExifTag")
    if not isinstance(exif, dict):
        return None
    exposure = exif.get("ExposureTime")
    if isinstance(exposure, (tuple, list)) and len(exposure) == 2 and exposure[1]:
        return exposure[0] / exposure[1]
    if isinstance(exposure, (int, float)):
        return float(exposure)
    return None


def read_tiff_info(path: str) -> dict:
    """
    Read header facts from a TIFF file.

    Returns:
        dict with keys xs, ys, zs, pages, bits, dtype, comment, artist,
        host_computer, exposure_time_s.
    """
    try:
        with tifffile.TiffFile(path) as tif:
            page = tif.pages[0]
            pages = len(tif.pages)
            ij = tif.imagej_metadata or {}
            zs = ij.get("slices") or ij.get("images") or pages
            info = {
                "xs": int(page.imagewidth),
                "ys": int(page.imagelength),
                "zs": int(zs),
                "pages": pages,
                "bits": int(page.bitspersample),
                "dtype": page.dtype,
                "comment": page.description or None,
                "artist": _tag_value(page, "Artist"),
                "host_computer": _tag_value(page, "HostComputer"),
                "exposure_time_s": _exposure_seconds(page),
            }
    except (tifffile.TiffFileError, OSError, ValueError) as e:
        raise IOFailure(path, str(e)) from e
    logger.debug("TIFF %s: %dx%d, %d planes, %s", os.path.basename(path),
                 info["xs"], info["ys"], info["zs"], info["dtype"])
    return info


def is_imagej_tiff(stream) -> bool:
    """True when the first page comment of ``stream`` starts with 'ImageJ='."""
    try:
        pos = stream.tell()
    except (AttributeError, OSError):
        pos = None
    try:
        with tifffile.TiffFile(stream) as tif:
            comment = tif.pages[0].description
    except Exception as e:
        logger.debug("Not a readable TIFF stream: %s", e)
        return False
    finally:
        if pos is not None:
            try:
                stream.seek(pos)
            except (OSError, ValueError):
                pass
    if not comment:
        return False
    return comment.strip().startswith("ImageJ=")
