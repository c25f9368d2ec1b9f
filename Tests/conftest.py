"""Shared fixtures: LatticeScope experiment folders built in tmp_path."""

import xml.etree.ElementTree as ET

import numpy as np
import pytest
import tifffile

OME_NS = {"ome": "http://www.openmicroscopy.org/Schemas/OME/2016-06"}

DEFAULT_SETTINGS = [
    "***** ***** ***** General ***** ***** *****",
    "Date : 01/02/2020 03:04:05 PM",
    "Magnification : 25",
    "",
    "***** ***** ***** Motion ***** ***** *****",
    "Z motion : Sample piezo",
    "",
    "***** ***** ***** Waveform ***** ***** *****",
    "Excitation Filter, Laser, Power (%), Exp(ms) (0) :\tN/A\t405\t0.25\t20",
    "Excitation Filter, Laser, Power (%), Exp(ms) (1) :\tN/A\t488\t0.5\t20",
    "[Timing]",
    "Cycle lasers=per Z",
]


def write_tiff(path, planes=3, shape=(16, 12), dtype=np.uint16, imagej=True, **kwargs):
    data = np.zeros((planes,) + tuple(shape), dtype=dtype)
    tifffile.imwrite(str(path), data, imagej=imagej, **kwargs)
    return path


def parse_companion(ome_xml: str) -> ET.Element:
    return ET.fromstring(ome_xml.encode("utf-8"))


@pytest.fixture
def make_experiment(tmp_path):
    """Factory: make_experiment(files, settings=..., name=..., subdir=None) -> root path.

    ``files`` are filenames written as small ImageJ TIFFs. With ``subdir``
    they go into that sub-directory of the root instead. Pass
    ``settings=None`` to leave the settings file out.
    """
    def _make(files, *, settings=DEFAULT_SETTINGS, name="Exp", subdir=None, planes=3):
        root = tmp_path / "experiment"
        root.mkdir(exist_ok=True)
        target = root / subdir if subdir else root
        target.mkdir(exist_ok=True)
        for filename in files:
            write_tiff(target / filename, planes=planes)
        if settings is not None:
            (root / f"{name}_Settings.txt").write_text("\n".join(settings) + "\n", encoding="utf-8")
        return root
    return _make


@pytest.fixture
def basic_files():
    return [
        "Exp_ch0_stack0000_405nm_0msec_0msecAbs.tif",
        "Exp_ch0_stack0001_405nm_100msec_100msecAbs.tif",
        "Exp_ch1_stack0000_488nm_0msec_0msecAbs.tif",
    ]
