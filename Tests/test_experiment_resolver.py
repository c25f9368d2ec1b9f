import io
import os

import numpy as np
import pytest
import tifffile

from ci_lattice_errors import FormatMismatch, IOFailure, MissingCompanion
from ci_lattice_helpers import (
    identify_experiment,
    is_imagej_tiff,
    ome_pixel_type,
    read_tiff_info,
    resolve_experiment,
    variant_suffixes,
)
from ParseLatticeFileName import ProcessingStage
from conftest import write_tiff


def test_raw_file_resolves_to_its_directory(make_experiment, basic_files):
    root = make_experiment(basic_files)
    fileset = resolve_experiment(str(root / basic_files[0]))

    assert fileset.identity.root_directory == str(root)
    assert fileset.identity.experiment_name == "Exp"
    assert fileset.settings_file == str(root / "Exp_Settings.txt")
    assert fileset.stage is ProcessingStage.RAW
    assert [os.path.basename(f) for f in fileset.pixel_files()] == sorted(basic_files)


def test_related_files_add_settings(make_experiment, basic_files):
    root = make_experiment(basic_files)
    fileset = resolve_experiment(str(root / basic_files[0]))
    related = fileset.related_files()
    assert len(related) == len(basic_files) + 1
    assert related[-1] == str(root / "Exp_Settings.txt")


def test_deskewed_file_uses_grandparent_as_root(make_experiment):
    name = "Exp_ch0_stack0000_488nm_0msec_0msecAbs_deskewed.tif"
    root = make_experiment([name], subdir="Deskewed")
    fileset = resolve_experiment(str(root / "Deskewed" / name))

    assert fileset.identity.root_directory == str(root)
    assert fileset.image_directory == str(root / "Deskewed")
    assert fileset.stage is ProcessingStage.DESKEWED
    assert fileset.variant_suffix == "_deskewed.tif"


def test_identity_is_the_same_from_every_sibling(make_experiment, basic_files):
    root = make_experiment(basic_files)
    identities = {identify_experiment(str(root / f)) for f in basic_files}
    assert len(identities) == 1


def test_pixel_files_ignore_other_experiments_and_variants(make_experiment, basic_files):
    others = [
        "Exp2_ch0_stack0000_405nm_0msec_0msecAbs.tif",
        "Exp_ch0_stack0000_405nm_0msec_0msecAbs_deskewed.tif",
    ]
    root = make_experiment(basic_files + others)
    (root / "notes.txt").write_text("x")
    fileset = resolve_experiment(str(root / basic_files[0]))
    assert sorted(os.path.basename(f) for f in fileset.pixel_files()) == sorted(basic_files)
    assert variant_suffixes(str(root), "Exp") == [".tif", "_deskewed.tif"]


def test_missing_settings_file(make_experiment, basic_files):
    root = make_experiment(basic_files, settings=None)
    with pytest.raises(MissingCompanion) as excinfo:
        resolve_experiment(str(root / basic_files[0]))
    assert excinfo.value.path == str(root / "Exp_Settings.txt")

    fileset = resolve_experiment(str(root / basic_files[0]), require_settings=False)
    assert fileset.identity.experiment_name == "Exp"


def test_foreign_file_is_format_mismatch(tmp_path):
    with pytest.raises(FormatMismatch):
        resolve_experiment(str(tmp_path / "image.tif"))


def test_unlistable_directory_is_io_failure(tmp_path):
    fileset = resolve_experiment(str(tmp_path / "gone" / "Exp_ch0_stack0000_405nm_0msec_0msecAbs.tif"),
                                 require_settings=False)
    with pytest.raises(IOFailure):
        fileset.pixel_files()


def test_read_tiff_info(tmp_path):
    path = write_tiff(tmp_path / "a.tif", planes=5, shape=(10, 20))
    info = read_tiff_info(str(path))
    assert (info["xs"], info["ys"], info["zs"]) == (20, 10, 5)
    assert info["bits"] == 16
    assert ome_pixel_type(info["dtype"]) == "uint16"
    assert info["comment"].startswith("ImageJ=")


def test_read_tiff_info_rejects_non_tiff(tmp_path):
    path = tmp_path / "fake.tif"
    path.write_bytes(b"not a tiff at all")
    with pytest.raises(IOFailure):
        read_tiff_info(str(path))


def test_imagej_stream_sniffing(tmp_path):
    imagej = write_tiff(tmp_path / "ij.tif")
    with open(imagej, "rb") as fh:
        assert is_imagej_tiff(fh)
        assert fh.tell() == 0

    plain = tmp_path / "plain.tif"
    tifffile.imwrite(str(plain), np.zeros((4, 4), dtype=np.uint16), description="acquired")
    with open(plain, "rb") as fh:
        assert not is_imagej_tiff(fh)

    assert not is_imagej_tiff(io.BytesIO(b"garbage bytes"))
