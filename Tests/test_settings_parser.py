from datetime import datetime, timezone

import pytest

from ci_lattice_errors import DiagnosticKind, DiagnosticLog, IOFailure
from ParseLatticeSettings import parse_acquisition_date, parse_settings_lines, read_settings_file


def test_sticky_section_context():
    lines = [
        "***** ***** ***** Motion ***** ***** *****",
        "Z motion : moving",
        "[Timing]",
        "Date : 01/02/2020 03:04:05 PM",
    ]
    entries, values = parse_settings_lines(lines)

    assert len(entries) == 2
    assert entries[0].tag_class == "Motion"
    assert entries[0].parent_tag is None
    assert entries[0].key == "Z motion "
    assert entries[1].tag_class == "Motion"
    assert entries[1].parent_tag == "[Timing]"

    assert values.image_description == "moving"
    assert values.acquisition_date == datetime(2020, 1, 2, 15, 4, 5, tzinfo=timezone.utc)


def test_equals_lines_and_first_separator_wins():
    entries, _ = parse_settings_lines(["Cycle lasers=per Z", "Note : a=b"])
    assert (entries[0].key, entries[0].raw_value) == ("Cycle lasers", "per Z")
    assert (entries[1].key, entries[1].raw_value) == ("Note ", " a=b")


def test_banner_replaces_previous_class():
    lines = [
        "***** ***** ***** General ***** ***** *****",
        "A : 1",
        "***** ***** ***** Waveform ***** ***** *****",
        "B : 2",
    ]
    entries, _ = parse_settings_lines(lines)
    assert [e.tag_class for e in entries] == ["General", "Waveform"]


def test_state_does_not_leak_between_calls():
    parse_settings_lines(["***** ***** ***** Motion ***** ***** *****", "[Timing]", "A : 1"])
    entries, _ = parse_settings_lines(["B : 2"])
    assert entries[0].tag_class is None
    assert entries[0].parent_tag is None


def test_keys_are_not_trimmed():
    # "Magnification" without the trailing space is not the magnification key
    _, values = parse_settings_lines(["Magnification: 25"])
    assert values.magnification is None

    _, values = parse_settings_lines(["Magnification : 25"])
    assert values.magnification == 25.0


def test_original_metadata_keys():
    lines = [
        "***** ***** ***** Motion ***** ***** *****",
        "[Timing]",
        "Z motion : moving",
        "Plain : x",
    ]
    _, values = parse_settings_lines(lines)
    assert values.original_metadata["[Motion]::[Timing]::Z motion "] == " moving"

    _, values = parse_settings_lines(["Plain : x"])
    assert values.original_metadata == {"Plain ": " x"}


def test_unparsable_date_is_warning_not_error():
    log = DiagnosticLog()
    _, values = parse_settings_lines(["Date : yesterday"], diagnostics=log)
    assert values.acquisition_date is None
    assert log.messages(DiagnosticKind.SETTINGS_VALUE)


def test_laser_power_sets_attenuation_for_current_wavelength():
    lines = [
        "Excitation Filter, Laser, Power (%), Exp(ms) (0) :\tN/A\t405\t0.25\t20",
        "Excitation Filter, Laser, Power (%), Exp(ms) (1) :\tN/A\t488\t0.5\t20",
    ]
    _, values = parse_settings_lines(lines, excitation_wavelength=488.0)
    assert values.channel_attenuation == 0.5
    assert values.attenuations == {405.0: 0.25, 488.0: 0.5}


def test_laser_power_percent_is_scaled():
    lines = ["Excitation Filter, Laser, Power (%), Exp(ms) :\tN/A\t560\t40\t10"]
    _, values = parse_settings_lines(lines, excitation_wavelength=560.0)
    assert values.channel_attenuation == pytest.approx(0.4)


def test_laser_power_for_other_wavelength_leaves_channel_unset():
    lines = ["Excitation Filter, Laser, Power (%), Exp(ms) :\tN/A\t405\t0.25\t20"]
    _, values = parse_settings_lines(lines, excitation_wavelength=488.0)
    assert values.channel_attenuation is None


def test_short_laser_power_line_is_reported():
    log = DiagnosticLog()
    parse_settings_lines(["Excitation Filter, Laser, Power (%), Exp(ms) :\t488"], diagnostics=log)
    assert len(log) == 1


def test_unbracketed_label_keeps_parent_tag():
    entries, _ = parse_settings_lines(["[Timing]", "free text", "A : 1"])
    assert entries[0].parent_tag == "[Timing]"


def test_read_settings_file(tmp_path):
    path = tmp_path / "Exp_Settings.txt"
    path.write_text("Magnification : 25\n\nZ motion : Sample piezo\n", encoding="utf-8")
    entries, values = read_settings_file(str(path))
    assert len(entries) == 2
    assert values.magnification == 25.0
    assert values.image_description == "Sample piezo"


def test_missing_settings_file_is_io_failure(tmp_path):
    path = tmp_path / "missing_Settings.txt"
    with pytest.raises(IOFailure) as excinfo:
        read_settings_file(str(path))
    assert excinfo.value.path == str(path)


@pytest.mark.parametrize("text, hour", [
    ("01/02/2020 12:30:00 AM", 0),
    ("01/02/2020 12:05:00 pm", 12),
    ("01/02/2020 11:59:59 PM", 23),
    ("1/2/2020 9:00:00 AM", 9),
])
def test_acquisition_date_meridiem(text, hour):
    date = parse_acquisition_date(text)
    assert date.hour == hour
    assert (date.year, date.month, date.day) == (2020, 1, 2)
    assert date.tzinfo is timezone.utc


@pytest.mark.parametrize("text", ["01/02/2020 13:00:00 PM", "13/02/2020 01:00:00 PM", "01/02/2020 01:00:00"])
def test_acquisition_date_rejects_bad_values(text):
    with pytest.raises(ValueError):
        parse_acquisition_date(text)


def test_call_options_reach_the_handlers():
    log = DiagnosticLog()
    lines = [
        "Excitation Filter, Laser, Power (%), Exp(ms) :\tN/A\t488\t0.5\t20",
        "Magnification : lots",
    ]
    _, values = parse_settings_lines(lines, excitation_wavelength=488, diagnostics=log)
    assert values.channel_attenuation == 0.5
    assert log.messages(DiagnosticKind.SETTINGS_VALUE)
