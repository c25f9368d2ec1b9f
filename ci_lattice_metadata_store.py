"""
Minimal metadata store: typed setters in the shape of an OME metadata store,
backed by nested dicts. The reader only decides which values to push; any
object offering the same setters can be passed in its place.
"""

import logging

logger = logging.getLogger(__name__)


def _slot(items: list, index: int) -> dict:
    while len(items) <= index:
        items.append({})
    return items[index]


class MetadataStore:
    def __init__(self):
        self.images: list[dict] = []
        self.instruments: list[dict] = []
        self.experimenters: list[dict] = []

    # -- Image ---------------------------------------------------------------

    def _image(self, image: int) -> dict:
        return _slot(self.images, image)

    def _channel(self, image: int, channel: int) -> dict:
        return _slot(self._image(image).setdefault("channels", []), channel)

    def _plane(self, image: int, plane: int) -> dict:
        return _slot(self._image(image).setdefault("planes", []), plane)

    def set_image_description(self, description: str, image: int) -> None:
        self._image(image)["description"] = description

    def set_image_acquisition_date(self, date, image: int) -> None:
        self._image(image)["acquisition_date"] = date

    def set_image_instrument_ref(self, instrument_id: str, image: int) -> None:
        self._image(image)["instrument_ref"] = instrument_id

    def set_image_experimenter_ref(self, experimenter_id: str, image: int) -> None:
        self._image(image)["experimenter_ref"] = experimenter_id

    def set_objective_settings_id(self, objective_id: str, image: int) -> None:
        self._image(image)["objective_settings_id"] = objective_id

    def set_pixels_physical_size_x(self, size_um: float | None, image: int) -> None:
        self._image(image)["physical_size_x_um"] = size_um

    def set_pixels_physical_size_y(self, size_um: float | None, image: int) -> None:
        self._image(image)["physical_size_y_um"] = size_um

    def set_pixels_physical_size_z(self, size_um: float | None, image: int) -> None:
        self._image(image)["physical_size_z_um"] = size_um

    def set_pixels_dimensions(self, image: int, *, xs: int, ys: int, zs: int, cs: int, ts: int,
                              dimension_order: str, pixel_type: str) -> None:
        self._image(image).update({
            "xs": xs, "ys": ys, "zs": zs, "cs": cs, "ts": ts,
            "dimension_order": dimension_order, "pixel_type": pixel_type,
        })

    def set_plane_exposure_time(self, seconds: float, image: int, plane: int) -> None:
        self._plane(image, plane)["exposure_time_s"] = seconds

    def set_channel_id(self, channel_id: str, image: int, channel: int) -> None:
        self._channel(image, channel)["id"] = channel_id

    def set_channel_name(self, name: str, image: int, channel: int) -> None:
        self._channel(image, channel)["name"] = name

    def set_channel_excitation_wavelength(self, wavelength_nm: float | None, image: int, channel: int) -> None:
        self._channel(image, channel)["excitation_wavelength_nm"] = wavelength_nm

    def set_channel_light_source_settings_id(self, light_source_id: str, image: int, channel: int) -> None:
        self._channel(image, channel)["light_source_settings_id"] = light_source_id

    def set_channel_light_source_settings_attenuation(self, fraction: float, image: int, channel: int) -> None:
        if not 0.0 <= fraction <= 1.0:
            raise ValueError(f"Attenuation must be a fraction in [0, 1], got {fraction}")
        self._channel(image, channel)["attenuation"] = fraction

    def set_channel_detector_settings_id(self, detector_id: str, image: int, channel: int) -> None:
        self._channel(image, channel)["detector_settings_id"] = detector_id

    # -- Instrument ----------------------------------------------------------

    def _instrument(self, instrument: int) -> dict:
        return _slot(self.instruments, instrument)

    def _component(self, kind: str, instrument: int, index: int) -> dict:
        return _slot(self._instrument(instrument).setdefault(kind, []), index)

    def set_instrument_id(self, instrument_id: str, instrument: int) -> None:
        self._instrument(instrument)["id"] = instrument_id

    def set_detector(self, descriptor, instrument: int, index: int) -> None:
        self._component("detectors", instrument, index).update(vars(descriptor))

    def set_laser(self, descriptor, instrument: int, index: int) -> None:
        self._component("lasers", instrument, index).update(vars(descriptor))

    def set_objective(self, descriptor, instrument: int, index: int) -> None:
        self._component("objectives", instrument, index).update(vars(descriptor))

    def set_objective_calibrated_magnification(self, magnification: float, instrument: int, index: int) -> None:
        self._component("objectives", instrument, index)["calibrated_magnification"] = magnification

    # -- Experimenter --------------------------------------------------------

    def set_experimenter(self, index: int, *, experimenter_id: str, first_name: str | None,
                         last_name: str | None, email: str | None) -> None:
        _slot(self.experimenters, index).update({
            "id": experimenter_id, "first_name": first_name,
            "last_name": last_name, "email": email,
        })

    def to_dict(self) -> dict:
        return {
            "images": self.images,
            "instruments": self.instruments,
            "experimenters": self.experimenters,
        }
