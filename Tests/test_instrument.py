from datetime import datetime, timezone

from ci_lattice_errors import DiagnosticKind, DiagnosticLog
from ci_lattice_instrument import (
    LASERS,
    OBJECTIVES,
    detector_descriptor,
    laser_descriptor,
    merge_settings,
    resolve_instrument_metadata,
)
from ParseLatticeFileName import Detector
from ParseLatticeSettings import SettingsValues


def test_known_laser():
    laser = laser_descriptor(488.0)
    assert laser.id == "LightSource:0:0"
    assert laser.manufacturer == "MPB Communications"
    assert laser.model == "2RU-VFL-P-300-488-B1R"
    assert laser.wavelength_nm == 488.0


def test_unknown_laser_is_identifier_only():
    log = DiagnosticLog()
    laser = laser_descriptor(999.0, 3, log)
    assert laser.id == "LightSource:0:3"
    assert laser.manufacturer is None
    assert laser.model is None
    assert laser.power_mw is None
    assert log.messages(DiagnosticKind.AMBIGUOUS_LOOKUP)


def test_445_reuses_the_405_entry():
    assert LASERS["445.0"].model == LASERS["405.0"].model
    assert laser_descriptor(445).wavelength_nm == 405.0


def test_catalog_has_seven_wavelengths():
    assert sorted(LASERS) == ["405.0", "445.0", "488.0", "532.0", "560.0", "589.0", "642.0"]


def test_detectors():
    assert detector_descriptor(Detector.CAM_A).model == "ORCAFlash 4.0 V2"
    assert detector_descriptor("CamB", 1).model == "ORCAFlash 4.0 V3"
    assert detector_descriptor("CamB", 1).id == "Detector:0:1"

    log = DiagnosticLog()
    unknown = detector_descriptor("CamC", 0, log)
    assert unknown.model is None and unknown.id == "Detector:0:0"
    assert len(log) == 1

    assert detector_descriptor(None).manufacturer is None


def test_objectives_are_fixed():
    metadata = resolve_instrument_metadata(Detector.CAM_A, 488.0)
    assert metadata.objectives == OBJECTIVES
    assert [o.manufacturer for o in metadata.objectives] == ["Nikon", "Special Optics"]
    assert metadata.objectives[0].immersion == "WaterDipping"


def test_merge_settings_overrides_but_keeps_filename_fields():
    metadata = resolve_instrument_metadata(Detector.CAM_B, 560.0)
    date = datetime(2020, 1, 2, 15, 4, 5, tzinfo=timezone.utc)
    values = SettingsValues(image_description="moving", magnification=25.0,
                            acquisition_date=date, channel_attenuation=0.3)

    merged = merge_settings(metadata, values)

    assert merged.magnification == 25.0
    assert merged.objectives[0].calibrated_magnification == 25.0
    assert merged.objectives[1].calibrated_magnification == 28.6
    assert merged.acquisition_date == date
    assert merged.image_description == "moving"
    assert merged.channel_attenuation == 0.3
    assert merged.detector_name == "CamB"
    assert merged.excitation_wavelength_nm == 560.0
    # the original record is untouched
    assert metadata.magnification is None
    assert metadata.objectives[0].calibrated_magnification is None
