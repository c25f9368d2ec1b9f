import os
import uuid
import logging
from dataclasses import dataclass, field
from html import escape as escape_xml_chars

from ci_lattice_dimensions import DimensionMatrix
from ci_lattice_errors import DiagnosticLog, IOFailure, LatticeError
from ci_lattice_helpers import COMPANION_EXTENSION
from ci_lattice_instrument import (
    DetectorDescriptor,
    InstrumentMetadata,
    LaserDescriptor,
    create_lsid,
    detector_descriptor,
    laser_descriptor,
    wavelength_key,
)

logger = logging.getLogger(__name__)

PHYSICAL_SIZE_XY_UM = 103.5 / 1000
DIMENSION_ORDER = "XYZCT"
PIXEL_TYPE = "uint16"
ORIGINAL_METADATA_NS = "openmicroscopy.org/OriginalMetadata"


@dataclass
class CompanionChannel:
    index: int
    id: str
    name: str
    excitation_wavelength_nm: float | None = None
    light_source_id: str | None = None
    detector_id: str | None = None
    attenuation: float | None = None


@dataclass
class CompanionPlane:
    channel: int
    stack: int
    filename: str
    plane_count: int

    @property
    def uuid(self) -> str:
        return f"urn:uuid:{uuid.uuid5(uuid.NAMESPACE_URL, self.filename)}"


@dataclass
class CompanionDocument:
    """One logical XYZCT image spanning every TIFF file of an experiment variant."""
    name: str
    xs: int
    ys: int
    zs: int
    size_c: int
    size_t: int
    instrument: InstrumentMetadata
    channels: list[CompanionChannel] = field(default_factory=list)
    planes: list[CompanionPlane] = field(default_factory=list)
    lasers: list[LaserDescriptor] = field(default_factory=list)
    detectors: list[DetectorDescriptor] = field(default_factory=list)
    experimenter: dict | None = None
    original_metadata: dict[str, str] | None = None
    physical_size_x_um: float = PHYSICAL_SIZE_XY_UM
    physical_size_y_um: float = PHYSICAL_SIZE_XY_UM
    dimension_order: str = DIMENSION_ORDER
    pixel_type: str = PIXEL_TYPE

    def filenames(self) -> list[str]:
        return [p.filename for p in self.planes]


def synthesize_companion(matrix: DimensionMatrix, instrument: InstrumentMetadata, core: dict, *,
                         attenuations: dict[float, float] | None = None,
                         experimenter: dict | None = None,
                         original_metadata: dict[str, str] | None = None,
                         diagnostics: DiagnosticLog | None = None) -> CompanionDocument:
    """
    Build the companion description of one experiment variant.

    Args:
        matrix: channel/stack -> filename mapping of the variant.
        instrument: Resolved instrument metadata (objectives, date, description).
        core: Core dimensions of a representative TIFF (xs, ys, zs).
        attenuations: Excitation wavelength -> light attenuation fraction.

    Returns:
        CompanionDocument
    """
    attenuations = attenuations or {}
    zs = int(core.get("zs") or 1)
    doc = CompanionDocument(
        name=matrix.identity.experiment_name,
        xs=int(core.get("xs") or 1),
        ys=int(core.get("ys") or 1),
        zs=zs,
        size_c=matrix.channel_count,
        size_t=matrix.stack_count,
        instrument=instrument,
        experimenter=experimenter,
        original_metadata=original_metadata,
    )

    laser_ids: dict[str, str] = {}
    detector_ids: dict[str, str] = {}
    for c in matrix.channels():
        rep = matrix.representative(c)
        channel = CompanionChannel(index=c, id=create_lsid("Channel", 0, c), name=f"ch{c}")

        key = wavelength_key(rep.excitation_wavelength_nm)
        if key not in laser_ids:
            laser = laser_descriptor(rep.excitation_wavelength_nm, len(doc.lasers), diagnostics)
            doc.lasers.append(laser)
            laser_ids[key] = laser.id
        channel.light_source_id = laser_ids[key]
        channel.excitation_wavelength_nm = rep.excitation_wavelength_nm
        channel.attenuation = attenuations.get(rep.excitation_wavelength_nm)
        if channel.attenuation is None and rep.excitation_wavelength_nm == instrument.excitation_wavelength_nm:
            channel.attenuation = instrument.channel_attenuation

        det_name = rep.detector.value
        if det_name not in detector_ids:
            detector = detector_descriptor(rep.detector, len(doc.detectors), diagnostics)
            doc.detectors.append(detector)
            detector_ids[det_name] = detector.id
        channel.detector_id = detector_ids[det_name]
        doc.channels.append(channel)

    for c, s, filename in matrix.items():
        doc.planes.append(CompanionPlane(channel=c, stack=s, filename=filename, plane_count=zs))

    logger.debug("Companion %s: %d channel(s), %d plane file(s), %d laser(s), %d detector(s)",
                 doc.name, len(doc.channels), len(doc.planes), len(doc.lasers), len(doc.detectors))
    return doc


def validate_companion(doc: CompanionDocument, matrix: DimensionMatrix, sibling_files) -> None:
    """Raise LatticeError unless the document agrees with the matrix and the file set."""
    if doc.size_c != matrix.channel_count or doc.size_t != matrix.stack_count:
        raise LatticeError(f"Companion declares C={doc.size_c} T={doc.size_t}, "
                           f"matrix has C={matrix.channel_count} T={matrix.stack_count}")
    available = {os.path.basename(f) for f in sibling_files}
    missing = [name for name in doc.filenames() if name not in available]
    if missing:
        raise LatticeError(f"Companion references files outside the experiment: {missing}")
    for plane in doc.planes:
        if not (0 <= plane.channel < doc.size_c and 0 <= plane.stack < doc.size_t):
            raise LatticeError(f"Plane {plane.filename} outside C={doc.size_c} T={doc.size_t}")


# -----------------------------------------------------------------------------
# OME-XML rendering
# -----------------------------------------------------------------------------

def _attrs(pairs) -> str:
    return " ".join(f"{k}=\"{escape_xml_chars(str(v))}\"" for k, v in pairs if v is not None)


def _laser_xml(laser: LaserDescriptor) -> str:
    pairs = [("ID", laser.id), ("Manufacturer", laser.manufacturer), ("Model", laser.model)]
    if laser.power_mw is not None:
        pairs += [("Power", laser.power_mw), ("PowerUnit", "mW")]
    pairs.append(("Type", laser.laser_type))
    if laser.wavelength_nm is not None:
        pairs += [("Wavelength", laser.wavelength_nm), ("WavelengthUnit", "nm")]
    return f"    <Laser {_attrs(pairs)}/>"


def _detector_xml(detector: DetectorDescriptor) -> str:
    pairs = [("ID", detector.id), ("Manufacturer", detector.manufacturer),
             ("Model", detector.model), ("Type", detector.detector_type)]
    return f"    <Detector {_attrs(pairs)}/>"


def _objective_xml(objective) -> str:
    pairs = [
        ("ID", objective.id),
        ("Manufacturer", objective.manufacturer),
        ("Model", objective.model),
        ("CalibratedMagnification", objective.calibrated_magnification),
        ("Correction", objective.correction),
        ("Immersion", objective.immersion),
        ("LensNA", objective.lens_na),
        ("WorkingDistance", objective.working_distance_mm),
        ("WorkingDistanceUnit", "mm"),
    ]
    return f"    <Objective {_attrs(pairs)}/>"


def generate_ome_xml(doc: CompanionDocument) -> str:
    """Return the companion OME-XML (XYZCT, one TiffData per file)."""
    instrument = doc.instrument
    ome_uuid = uuid.uuid4()
    xml = [
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>",
        "<OME xmlns=\"http://www.openmicroscopy.org/Schemas/OME/2016-06\"",
        "     xmlns:xsi=\"http://www.w3.org/2001/XMLSchema-instance\"",
        "     xsi:schemaLocation=\"http://www.openmicroscopy.org/Schemas/OME/2016-06 "
        "http://www.openmicroscopy.org/Schemas/OME/2016-06/ome.xsd\"",
        f"     UUID=\"urn:uuid:{ome_uuid}\">",
    ]

    experimenter_id = None
    if doc.experimenter:
        experimenter_id = doc.experimenter.get("id", create_lsid("Experimenter", 0))
        pairs = [("ID", experimenter_id), ("FirstName", doc.experimenter.get("first_name")),
                 ("LastName", doc.experimenter.get("last_name")), ("Email", doc.experimenter.get("email"))]
        xml.append(f"  <Experimenter {_attrs(pairs)}/>")

    # --- Instrument Block ---
    xml.append(f"  <Instrument ID=\"{instrument.instrument_id}\">")
    xml.extend(_laser_xml(laser) for laser in doc.lasers)
    xml.extend(_detector_xml(det) for det in doc.detectors)
    xml.extend(_objective_xml(obj) for obj in instrument.objectives)
    xml.append("  </Instrument>")

    xml.append(f"  <Image ID=\"Image:0\" Name=\"{escape_xml_chars(doc.name)}\">")
    if instrument.acquisition_date is not None:
        date = instrument.acquisition_date.strftime("%Y-%m-%dT%H:%M:%S")
        xml.append(f"    <AcquisitionDate>{date}</AcquisitionDate>")
    if experimenter_id:
        xml.append(f"    <ExperimenterRef ID=\"{escape_xml_chars(experimenter_id)}\"/>")
    if instrument.image_description:
        xml.append(f"    <Description>{escape_xml_chars(instrument.image_description)}</Description>")
    xml.append(f"    <InstrumentRef ID=\"{instrument.instrument_id}\"/>")
    xml.append(f"    <ObjectiveSettings ID=\"{instrument.objectives[0].id}\"/>")

    xml.extend([
        f"    <Pixels ID=\"Pixels:0\" DimensionOrder=\"{doc.dimension_order}\" Type=\"{doc.pixel_type}\"",
        f"            SizeX=\"{doc.xs}\" SizeY=\"{doc.ys}\" SizeZ=\"{doc.zs}\" SizeC=\"{doc.size_c}\" SizeT=\"{doc.size_t}\"",
        f"            PhysicalSizeX=\"{doc.physical_size_x_um}\" PhysicalSizeXUnit=\"µm\" "
        f"PhysicalSizeY=\"{doc.physical_size_y_um}\" PhysicalSizeYUnit=\"µm\">",
    ])

    for channel in doc.channels:
        pairs = [("ID", channel.id), ("Name", channel.name), ("SamplesPerPixel", 1)]
        if channel.excitation_wavelength_nm is not None:
            pairs += [("ExcitationWavelength", channel.excitation_wavelength_nm),
                      ("ExcitationWavelengthUnit", "nm")]
        xml.append(f"      <Channel {_attrs(pairs)}>")
        if channel.light_source_id:
            xml.append(f"        <LightSourceSettings {_attrs([('ID', channel.light_source_id), ('Attenuation', channel.attenuation)])}/>")
        if channel.detector_id:
            xml.append(f"        <DetectorSettings ID=\"{channel.detector_id}\"/>")
        xml.append("      </Channel>")

    # One <TiffData> per file; each file holds the whole Z stack of one C/T
    for plane in doc.planes:
        xml.append(f"      <TiffData FirstC=\"{plane.channel}\" FirstT=\"{plane.stack}\" FirstZ=\"0\" "
                   f"IFD=\"0\" PlaneCount=\"{plane.plane_count}\">")
        xml.append(f"        <UUID FileName=\"{escape_xml_chars(plane.filename)}\">{plane.uuid}</UUID>")
        xml.append("      </TiffData>")

    xml.append("    </Pixels>")
    # AnnotationRef is the last child of Image
    if doc.original_metadata:
        xml.append("    <AnnotationRef ID=\"Annotation:0\"/>")
    xml.append("  </Image>")

    if doc.original_metadata:
        xml.extend([
            "  <StructuredAnnotations>",
            f"    <MapAnnotation ID=\"Annotation:0\" Namespace=\"{ORIGINAL_METADATA_NS}\">",
            "      <Value>",
        ])
        for key, value in doc.original_metadata.items():
            xml.append(f"        <M K=\"{escape_xml_chars(key)}\">{escape_xml_chars(value.strip())}</M>")
        xml.extend([
            "      </Value>",
            "    </MapAnnotation>",
            "  </StructuredAnnotations>",
        ])

    xml.append("</OME>")
    return "\n".join(xml)


def companion_file_name(experiment_name: str, variant_suffix: str) -> str:
    """<exp>.companion.ome for raw files, <exp>_deskewed.companion.ome etc. for variants."""
    stem = variant_suffix[:-len(".tif")] if variant_suffix.lower().endswith(".tif") else variant_suffix
    return experiment_name + stem + COMPANION_EXTENSION


def write_companion_file(ome_xml: str, path: str, *, overwrite: bool = False) -> bool:
    """Write ``ome_xml`` to ``path``; returns False when an existing file was kept."""
    if os.path.exists(path) and not overwrite:
        logger.info("Companion file already exists, keeping it: %s", path)
        return False
    try:
        with open(path, "w", encoding="utf-8") as f:
            f.write(ome_xml)
    except OSError as e:
        raise IOFailure(path, str(e)) from e
    logger.info("Created companion file: %s", path)
    return True
