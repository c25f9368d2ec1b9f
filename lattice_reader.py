import os
import logging
from dataclasses import dataclass, field, fields

from ci_lattice_companion import (
    CompanionDocument,
    companion_file_name,
    generate_ome_xml,
    synthesize_companion,
    validate_companion,
    write_companion_file,
)
from ci_lattice_dimensions import DimensionMatrix, build_dimension_matrix
from ci_lattice_errors import DiagnosticLog, FormatMismatch, MalformedField
from ci_lattice_helpers import (
    DECON_DIR,
    DESKEWED_DIR,
    ExperimentFileSet,
    belongs_to_experiment,
    find_settings_file,
    get_variant_suffix,
    is_imagej_tiff,
    list_directory,
    ome_pixel_type,
    read_tiff_info,
    resolve_experiment,
    variant_suffixes,
)
from ci_lattice_instrument import InstrumentMetadata, create_lsid, merge_settings, resolve_instrument_metadata
from ci_lattice_metadata_store import MetadataStore
from ParseLatticeFileName import match_processing_stage, parse_file_name
from ParseLatticeSettings import SettingsEntry, SettingsValues, read_settings_file

logger = logging.getLogger(__name__)

CREATE_COMPANION_KEY = "latticescope.createcompanion"
RAW_SUFFIX = ".tif"


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass
class ReaderOptions:
    create_companion: bool = True
    overwrite_companion: bool = False
    include_processed: bool = True
    include_original_metadata: bool = False

    @classmethod
    def from_mapping(cls, mapping: dict) -> "ReaderOptions":
        """Options from host-framework style keys, e.g. {'latticescope.createcompanion': 'false'}."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in mapping.items():
            name = key[len("latticescope."):] if key.startswith("latticescope.") else key
            if key == CREATE_COMPANION_KEY:
                name = "create_companion"
            if name in known:
                kwargs[name] = _as_bool(value)
            else:
                logger.debug("Ignoring unknown reader option %r", key)
        return cls(**kwargs)


@dataclass
class LatticeDataset:
    fileset: ExperimentFileSet
    matrix: DimensionMatrix
    instrument: InstrumentMetadata
    core: dict
    settings_entries: list[SettingsEntry]
    settings_values: SettingsValues
    companion: CompanionDocument
    companion_xml: str
    store: MetadataStore
    diagnostics: DiagnosticLog
    companion_files: list[str] = field(default_factory=list)

    @property
    def channel_count(self) -> int:
        return self.matrix.channel_count

    @property
    def stack_count(self) -> int:
        return self.matrix.stack_count

    @property
    def detector_count(self) -> int:
        return self.matrix.detector_count

    @property
    def skipped_count(self) -> int:
        return self.matrix.skipped_count

    @property
    def original_metadata(self) -> dict[str, str]:
        return self.settings_values.original_metadata


# -----------------------------------------------------------------------------
# Type detection
# -----------------------------------------------------------------------------

def is_this_type(name: str, open: bool = True) -> bool:
    """
    Does ``name`` look like a LatticeScope file: raw, deskewed or decon
    filename shape plus an existing <experimentName>_Settings.txt.

    Never raises; with ``open=False`` the file system is off limits, so the
    answer is always False.
    """
    if not open:
        return False
    stage = match_processing_stage(name)
    if stage is None:
        logger.info("No valid LatticeScope file name: %s", name)
        return False
    try:
        parse_file_name(name)
    except FormatMismatch as e:
        logger.info("Not a LatticeScope file name %s: %s", name, e)
        return False
    except MalformedField as e:
        # open_lattice_dataset falls back to a sibling for malformed fields
        logger.debug("Malformed field in %s: %s", name, e)
    try:
        return os.path.exists(find_settings_file(name))
    except (FormatMismatch, OSError, ValueError) as e:
        logger.debug("Type check failed for %s: %s", name, e)
        return False


def is_this_type_stream(stream) -> bool:
    return is_imagej_tiff(stream)


# -----------------------------------------------------------------------------
# Dataset open
# -----------------------------------------------------------------------------

def _experimenter_from_tiff(core: dict) -> dict | None:
    artist = core.get("artist")
    if not artist:
        return None
    first_name, _, last_name = artist.partition(" ")
    if not last_name:
        first_name, last_name = None, artist
    return {
        "id": create_lsid("Experimenter", 0),
        "first_name": first_name,
        "last_name": last_name,
        "email": core.get("host_computer"),
    }


def populate_metadata_store(store: MetadataStore, doc: CompanionDocument, core: dict) -> MetadataStore:
    """Push the companion description of image 0 into ``store``."""
    instrument = doc.instrument
    store.set_instrument_id(instrument.instrument_id, 0)
    store.set_image_instrument_ref(instrument.instrument_id, 0)
    store.set_pixels_dimensions(0, xs=doc.xs, ys=doc.ys, zs=doc.zs, cs=doc.size_c, ts=doc.size_t,
                                dimension_order=doc.dimension_order, pixel_type=doc.pixel_type)
    store.set_pixels_physical_size_x(doc.physical_size_x_um, 0)
    store.set_pixels_physical_size_y(doc.physical_size_y_um, 0)
    store.set_pixels_physical_size_z(None, 0)

    for i, objective in enumerate(instrument.objectives):
        store.set_objective(objective, 0, i)
    store.set_objective_settings_id(instrument.objectives[0].id, 0)
    if instrument.magnification is not None:
        store.set_objective_calibrated_magnification(instrument.magnification, 0, 0)

    lasers = doc.lasers or ([instrument.laser] if instrument.laser is not None else [])
    for i, laser in enumerate(lasers):
        store.set_laser(laser, 0, i)
    detectors = doc.detectors or [instrument.detector]
    for i, detector in enumerate(detectors):
        store.set_detector(detector, 0, i)

    if doc.channels:
        for i, channel in enumerate(doc.channels):
            store.set_channel_id(channel.id, 0, i)
            store.set_channel_name(channel.name, 0, i)
            store.set_channel_excitation_wavelength(channel.excitation_wavelength_nm, 0, i)
            if channel.light_source_id:
                store.set_channel_light_source_settings_id(channel.light_source_id, 0, i)
            if channel.detector_id:
                store.set_channel_detector_settings_id(channel.detector_id, 0, i)
            if channel.attenuation is not None:
                store.set_channel_light_source_settings_attenuation(channel.attenuation, 0, i)
    else:
        store.set_channel_id(create_lsid("Channel", 0, 0), 0, 0)
        store.set_channel_excitation_wavelength(instrument.excitation_wavelength_nm, 0, 0)
        if instrument.laser is not None:
            store.set_channel_light_source_settings_id(instrument.laser.id, 0, 0)
        store.set_channel_detector_settings_id(instrument.detector.id, 0, 0)
        if instrument.channel_attenuation is not None:
            store.set_channel_light_source_settings_attenuation(instrument.channel_attenuation, 0, 0)

    if instrument.image_description is not None:
        store.set_image_description(instrument.image_description, 0)
    if instrument.acquisition_date is not None:
        store.set_image_acquisition_date(instrument.acquisition_date, 0)

    if doc.experimenter:
        store.set_experimenter(0, experimenter_id=doc.experimenter["id"],
                               first_name=doc.experimenter["first_name"],
                               last_name=doc.experimenter["last_name"],
                               email=doc.experimenter["email"])
        store.set_image_experimenter_ref(doc.experimenter["id"], 0)

    exposure = core.get("exposure_time_s")
    if exposure is not None:
        for plane in range(doc.zs):
            store.set_plane_exposure_time(exposure, 0, plane)
    return store


def _variant_files(directory: str, experiment_name: str, suffix: str) -> list[str]:
    return [os.path.join(directory, name) for name in list_directory(directory)
            if name.lower().endswith(".tif")
            and belongs_to_experiment(name, experiment_name)
            and get_variant_suffix(name) == suffix]


def _variant_targets(fileset: ExperimentFileSet, options: ReaderOptions) -> list[tuple[str, str]]:
    """(directory, variant suffix) pairs that get a companion file."""
    identity = fileset.identity
    targets = [(identity.root_directory, RAW_SUFFIX)]
    if options.include_processed:
        for sub_dir in (DESKEWED_DIR, DECON_DIR):
            directory = os.path.join(identity.root_directory, sub_dir)
            if os.path.isdir(directory):
                for suffix in variant_suffixes(directory, identity.experiment_name):
                    targets.append((directory, suffix))
    opened = (fileset.image_directory, fileset.variant_suffix)
    if opened not in targets:
        targets.append(opened)
    return targets


def _build_variant(files: list[str], fileset: ExperimentFileSet, instrument: InstrumentMetadata,
                   values: SettingsValues, options: ReaderOptions, diagnostics: DiagnosticLog):
    matrix = build_dimension_matrix(files, fileset.identity, diagnostics)
    if matrix.is_empty():
        return None, None
    core = read_tiff_info(os.path.join(os.path.dirname(files[0]), matrix.filenames()[0]))
    doc = synthesize_companion(
        matrix, instrument, core,
        attenuations=values.attenuations,
        experimenter=_experimenter_from_tiff(core),
        original_metadata=values.original_metadata if options.include_original_metadata else None,
        diagnostics=diagnostics,
    )
    validate_companion(doc, matrix, files)
    return matrix, doc


def generate_companion_files(dataset: LatticeDataset, options: ReaderOptions | None = None) -> list[str]:
    """
    Write companion OME files for the raw acquisition and, when enabled,
    for every deskewed/decon variant found under the experiment root.
    Existing companion files are kept unless ``overwrite_companion`` is set.
    """
    options = options or ReaderOptions()
    fileset = dataset.fileset
    written = []
    for directory, suffix in _variant_targets(fileset, options):
        path = os.path.join(directory, companion_file_name(fileset.identity.experiment_name, suffix))
        if os.path.exists(path) and not options.overwrite_companion:
            logger.info("Companion file already exists, keeping it: %s", path)
            continue
        if (directory, suffix) == (fileset.image_directory, fileset.variant_suffix):
            ome_xml = dataset.companion_xml
        else:
            files = _variant_files(directory, fileset.identity.experiment_name, suffix)
            _, doc = _build_variant(files, fileset, dataset.instrument, dataset.settings_values,
                                    options, dataset.diagnostics)
            if doc is None:
                continue
            ome_xml = generate_ome_xml(doc)
        if write_companion_file(ome_xml, path, overwrite=options.overwrite_companion):
            written.append(path)
    return written


def open_lattice_dataset(inputfile: str, *, options: ReaderOptions | None = None,
                         store: MetadataStore | None = None, show_progress: bool = False) -> LatticeDataset:
    """
    Open a LatticeScope experiment from any one of its TIFF files.

    Resolves the experiment, parses every sibling filename into the
    channel x stack matrix, reads the settings file, resolves the instrument
    and synthesizes the companion OME description. Companion files are
    written when ``options.create_companion`` is set.

    Raises:
        FormatMismatch: ``inputfile`` is not a LatticeScope filename.
        MissingCompanion: the experiment settings file does not exist.
        IOFailure: a directory, TIFF header or the settings file could not be read.
    """
    options = options or ReaderOptions()
    store = store if store is not None else MetadataStore()
    diagnostics = DiagnosticLog()

    fileset = resolve_experiment(inputfile)
    if show_progress:
        print(f"Opening LatticeScope experiment '{fileset.identity.experiment_name}' "
              f"({fileset.stage.value}) in {fileset.identity.root_directory}")

    siblings = fileset.pixel_files()
    matrix = build_dimension_matrix(siblings, fileset.identity, diagnostics)

    # the input file was already reported by the matrix builder if malformed
    try:
        parsed = parse_file_name(inputfile)
    except (FormatMismatch, MalformedField) as e:
        logger.debug("Using first matrix entry instead of %s: %s", inputfile, e)
        parsed = matrix.representative()
    detector = parsed.detector if parsed is not None else None
    wavelength = parsed.excitation_wavelength_nm if parsed is not None else None

    core = read_tiff_info(inputfile)
    pixel_type = ome_pixel_type(core.get("dtype"))
    if pixel_type is not None and pixel_type != "uint16":
        logger.warning("%s stores %s pixels; companion declares uint16",
                       os.path.basename(inputfile), pixel_type)

    instrument = resolve_instrument_metadata(detector, wavelength, diagnostics)
    entries, values = read_settings_file(fileset.settings_file, excitation_wavelength=wavelength,
                                         diagnostics=diagnostics)
    instrument = merge_settings(instrument, values)
    if show_progress:
        print(f"  {matrix.channel_count} channel(s), {matrix.stack_count} stack(s), "
              f"{len(entries)} settings entries, {matrix.skipped_count} file(s) skipped")

    doc = synthesize_companion(
        matrix, instrument, core,
        attenuations=values.attenuations,
        experimenter=_experimenter_from_tiff(core),
        original_metadata=values.original_metadata if options.include_original_metadata else None,
        diagnostics=diagnostics,
    )
    validate_companion(doc, matrix, siblings)
    ome_xml = generate_ome_xml(doc)
    populate_metadata_store(store, doc, core)

    dataset = LatticeDataset(
        fileset=fileset,
        matrix=matrix,
        instrument=instrument,
        core=core,
        settings_entries=entries,
        settings_values=values,
        companion=doc,
        companion_xml=ome_xml,
        store=store,
        diagnostics=diagnostics,
    )

    if options.create_companion:
        dataset.companion_files = generate_companion_files(dataset, options)
        if show_progress:
            for path in dataset.companion_files:
                print(f"  Created {path}")

    logger.info("Opened %s with %d warning(s)", fileset.identity.experiment_name, len(diagnostics))
    return dataset
