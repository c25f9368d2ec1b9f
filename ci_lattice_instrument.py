"""
Fixed hardware catalog of the LatticeScope and the resolver that turns a
detector token and an excitation wavelength into instrument metadata.

The catalogs are static data. Lasers are keyed by the wavelength rendered as
a float string ("488.0"), detectors by the camera token ("CamA"/"CamB").
Lookups that miss produce an identifier-only descriptor and an
``ambiguous_lookup`` warning, never an exception.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from types import MappingProxyType

from ci_lattice_errors import DiagnosticKind, DiagnosticLog
from ParseLatticeFileName import Detector

logger = logging.getLogger(__name__)


def create_lsid(kind: str, *indices: int) -> str:
    return ":".join([kind] + [str(i) for i in indices])


@dataclass(frozen=True)
class DetectorDescriptor:
    id: str | None = None
    model: str | None = None
    manufacturer: str | None = None
    detector_type: str | None = None


@dataclass(frozen=True)
class LaserDescriptor:
    id: str | None = None
    model: str | None = None
    manufacturer: str | None = None
    laser_type: str | None = None
    wavelength_nm: float | None = None
    power_mw: float | None = None


@dataclass(frozen=True)
class ObjectiveDescriptor:
    id: str
    model: str
    manufacturer: str
    lens_na: float
    immersion: str
    working_distance_mm: float
    correction: str | None = None
    calibrated_magnification: float | None = None


DETECTORS = MappingProxyType({
    "CamA": DetectorDescriptor(model="ORCAFlash 4.0 V2", manufacturer="Hamamatsu", detector_type="CMOS"),
    "CamB": DetectorDescriptor(model="ORCAFlash 4.0 V3", manufacturer="Hamamatsu", detector_type="CMOS"),
})

# 445.0 repeats the 405 nm Oxxius entry. TODO: confirm the installed 445 nm laser model.
LASERS = MappingProxyType({
    "405.0": LaserDescriptor(model="LBX-405-300-CSB-PP", manufacturer="Oxxius",
                             laser_type="Semiconductor", wavelength_nm=405.0, power_mw=300.0),
    "445.0": LaserDescriptor(model="LBX-405-300-CSB-PP", manufacturer="Oxxius",
                             laser_type="Semiconductor", wavelength_nm=405.0, power_mw=300.0),
    "488.0": LaserDescriptor(model="2RU-VFL-P-300-488-B1R", manufacturer="MPB Communications",
                             laser_type="Other", wavelength_nm=488.0, power_mw=300.0),
    "532.0": LaserDescriptor(model="2RU-VFL-P-500-532-B1R", manufacturer="MPB Communications",
                             laser_type="Other", wavelength_nm=532.0, power_mw=500.0),
    "560.0": LaserDescriptor(model="2RU-VFL-P-2000-560-B1R", manufacturer="MPB Communications",
                             laser_type="Other", wavelength_nm=560.0, power_mw=2000.0),
    "589.0": LaserDescriptor(model="2RU-VFL-P-500-589-B1R", manufacturer="MPB Communications",
                             laser_type="Other", wavelength_nm=589.0, power_mw=500.0),
    "642.0": LaserDescriptor(model="2RU-VFL-P-2000-642-B1R", manufacturer="MPB Communications",
                             laser_type="Other", wavelength_nm=642.0, power_mw=2000.0),
})

# Water-dipping detection objective and the long working distance excitation objective.
OBJECTIVES = (
    ObjectiveDescriptor(id=create_lsid("Objective", 0, 0), model="CFI-75 Apo 25x W MP",
                        manufacturer="Nikon", lens_na=1.1, immersion="WaterDipping",
                        working_distance_mm=2.0, correction="PlanApo"),
    ObjectiveDescriptor(id=create_lsid("Objective", 0, 1), model="54-10-7@488-910",
                        manufacturer="Special Optics", lens_na=0.66, immersion="WaterDipping",
                        working_distance_mm=3.74, calibrated_magnification=28.6),
)


def wavelength_key(wavelength_nm) -> str | None:
    if wavelength_nm is None:
        return None
    return str(float(wavelength_nm))


def detector_descriptor(detector, index: int = 0,
                        diagnostics: DiagnosticLog | None = None) -> DetectorDescriptor:
    detector_id = create_lsid("Detector", 0, index)
    key = detector.value if isinstance(detector, Detector) else detector
    template = DETECTORS.get(key) if key is not None else None
    if template is None:
        if key is not None and diagnostics is not None:
            diagnostics.warn(DiagnosticKind.AMBIGUOUS_LOOKUP, f"Unknown detector {key!r}")
        return DetectorDescriptor(id=detector_id)
    return replace(template, id=detector_id)


def laser_descriptor(wavelength_nm, index: int = 0,
                     diagnostics: DiagnosticLog | None = None) -> LaserDescriptor:
    laser_id = create_lsid("LightSource", 0, index)
    key = wavelength_key(wavelength_nm)
    template = LASERS.get(key) if key is not None else None
    if template is None:
        if key is not None and diagnostics is not None:
            diagnostics.warn(DiagnosticKind.AMBIGUOUS_LOOKUP, f"No laser in catalog for {key} nm")
        return LaserDescriptor(id=laser_id)
    return replace(template, id=laser_id)


@dataclass(frozen=True)
class InstrumentMetadata:
    detector: DetectorDescriptor
    laser: LaserDescriptor | None
    objectives: tuple
    detector_name: str | None = None
    excitation_wavelength_nm: float | None = None
    magnification: float | None = None
    acquisition_date: datetime | None = None
    image_description: str | None = None
    channel_attenuation: float | None = None

    @property
    def instrument_id(self) -> str:
        return create_lsid("Instrument", 0)


def resolve_instrument_metadata(detector, wavelength_nm,
                                diagnostics: DiagnosticLog | None = None) -> InstrumentMetadata:
    """Instrument metadata for one detector token and excitation wavelength."""
    detector_name = detector.value if isinstance(detector, Detector) else detector
    return InstrumentMetadata(
        detector=detector_descriptor(detector, 0, diagnostics),
        laser=laser_descriptor(wavelength_nm, 0, diagnostics) if wavelength_nm is not None else None,
        objectives=OBJECTIVES,
        detector_name=detector_name,
        excitation_wavelength_nm=None if wavelength_nm is None else float(wavelength_nm),
    )


def merge_settings(metadata: InstrumentMetadata, values) -> InstrumentMetadata:
    """
    Overlay settings-file values (a ParseLatticeSettings.SettingsValues) on
    filename-derived metadata. Settings win where they are set; detector and
    wavelength stay as the filename says.
    """
    magnification = values.magnification if values.magnification is not None else metadata.magnification
    objectives = metadata.objectives
    if magnification is not None:
        objectives = (replace(objectives[0], calibrated_magnification=magnification),) + tuple(objectives[1:])
    return replace(
        metadata,
        objectives=objectives,
        magnification=magnification,
        acquisition_date=values.acquisition_date or metadata.acquisition_date,
        image_description=(values.image_description if values.image_description is not None
                           else metadata.image_description),
        channel_attenuation=(values.channel_attenuation if values.channel_attenuation is not None
                             else metadata.channel_attenuation),
    )
