"""Recover slicer settings embedded in a 3MF container.

Sources, each optional and read independently:

- slicing config: first present of ``Metadata/project_settings.config``,
  ``Metadata/Slic3r_PE.config``, ``Metadata/Prusa_Slicer.config``
- ``Metadata/model_settings.config``: filament profile and Bambu flags
- ``Metadata/slice_info.config``: estimated time and material
- ``Metadata/plate_1.json``: printer, build plate and authoring application
- ``<metadata>`` tags at the top of the primary model descriptor

Config entries come as ``key = value`` text, as a JSON object (Bambu/Orca
project settings) or as XML ``<metadata key=".." value=".."/>`` pairs; all
three are flattened into the same key/value map. A source that is absent or
unreadable leaves its sub-record ``None``. Extraction never raises.
"""

import io
import json
import logging
import re
import xml.etree.ElementTree as ET
from typing import Dict, Iterable, List, Optional

from archive_3mf import ArchiveNavigator
from models import (
    AmsSettings, BambuSettings, BuildPlate, ExtractedSettings, FilamentSettings,
    PrintSettings, PrinterSettings, ProvenanceMetadata, RetractionSettings,
    SpeedSettings, SupportSettings, TemperatureRange,
)

logger = logging.getLogger(__name__)

SLICING_CONFIG_PATHS = (
    "Metadata/project_settings.config",
    "Metadata/Slic3r_PE.config",
    "Metadata/Prusa_Slicer.config",
)
MODEL_SETTINGS_PATH = "Metadata/model_settings.config"
SLICE_INFO_PATH = "Metadata/slice_info.config"
PLATE_INFO_PATH = "Metadata/plate_1.json"

# Descriptor <metadata name=...> -> ProvenanceMetadata field
DESCRIPTOR_METADATA_FIELDS = {
    "Application": "application",
    "BambuStudio:3mfVersion": "version",
    "CreationDate": "creation_date",
    "ModificationDate": "modification_date",
    "Title": "title",
    "Designer": "designer",
    "Description": "description",
}

_NUMBER_RE = re.compile(r"^\s*([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)")


# --- value parsing -----------------------------------------------------------

def _first(value) -> Optional[str]:
    """Scalar string for a config value; lists contribute their first element."""
    if isinstance(value, list):
        return _first(value[0]) if value else None
    if value is None or isinstance(value, dict):
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value).strip()


def parse_number(value: Optional[str]) -> Optional[float]:
    """Leading number of a value (``"15%"`` -> 15.0, ``"210,215"`` -> 210.0)."""
    if value is None:
        return None
    match = _NUMBER_RE.match(value)
    if not match:
        return None
    return float(match.group(1))


def parse_flag(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on", "enabled"):
        return True
    if lowered in ("0", "false", "no", "off", "disabled"):
        return False
    number = parse_number(lowered)
    return bool(number) if number is not None else None


def _text(value: Optional[str]) -> Optional[str]:
    """Non-empty string value; ``;``-separated lists contribute their first item."""
    if value is None:
        return None
    head = value.split(";")[0].strip()
    return head or None


def _lookup(config: Dict[str, str], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        if key in config:
            return config[key]
    return None


def _all_none(record) -> bool:
    return all(v is None for v in record.__dict__.values())


# --- config formats ----------------------------------------------------------

def parse_key_value_text(text: str) -> Dict[str, str]:
    """``key = value`` lines; blank, ``#`` comment and ``[section]`` lines are ignored."""
    config: Dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or line.startswith("["):
            continue
        # PrusaSlicer prefixes every entry with "; "
        if line.startswith(";"):
            line = line[1:].strip()
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key:
            config[key] = value.strip()
    return config


def parse_json_config(text: str) -> Dict[str, str]:
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("config JSON is not an object")
    config: Dict[str, str] = {}
    for key, value in data.items():
        scalar = _first(value)
        if scalar is not None:
            config[str(key)] = scalar
    return config


def parse_xml_config(text: str) -> Dict[str, str]:
    """``<metadata key=".." value=".."/>`` pairs anywhere in the document; first occurrence wins."""
    root = ET.fromstring(text.encode("utf-8"))
    config: Dict[str, str] = {}
    for elem in root.iter():
        key = elem.get("key")
        if key is None or key in config:
            continue
        value = elem.get("value")
        if value is None:
            value = elem.text or ""
        config[key] = value.strip()
    return config


def parse_config(text: str) -> Dict[str, str]:
    """Flatten a config entry in any of the supported formats into a key/value map."""
    stripped = text.lstrip()
    if stripped.startswith("{"):
        return parse_json_config(stripped)
    if stripped.startswith("<"):
        return parse_xml_config(stripped)
    return parse_key_value_text(text)


def read_descriptor_metadata(data: bytes) -> Dict[str, str]:
    """Top-level ``<metadata name=...>`` of a model descriptor.

    Stops at ``<resources>`` so large descriptors are not parsed in full.
    """
    found: Dict[str, str] = {}
    depth = 0
    for event, elem in ET.iterparse(io.BytesIO(data), events=("start", "end")):
        tag = elem.tag.split("}")[-1]
        if event == "start":
            depth += 1
            if depth == 2 and tag == "resources":
                break
            continue
        depth -= 1
        if depth == 1 and tag == "metadata":
            name = elem.get("name")
            if name and name not in found:
                found[name] = (elem.text or "").strip()
    return found


# --- record builders ---------------------------------------------------------

def build_print_settings(config: Dict[str, str]) -> PrintSettings:
    speed = SpeedSettings(
        print=parse_number(_lookup(config, ("outer_wall_speed", "perimeter_speed", "print_speed"))),
        travel=parse_number(_lookup(config, ("travel_speed",))),
        first_layer=parse_number(_lookup(config, ("initial_layer_speed", "first_layer_speed"))),
    )
    support = SupportSettings(
        enabled=parse_flag(_lookup(config, ("enable_support", "support_material"))),
        type=_text(_lookup(config, ("support_type", "support_style"))),
        angle=parse_number(_lookup(config, ("support_threshold_angle", "support_material_threshold"))),
    )
    retraction = RetractionSettings(
        enabled=parse_flag(_lookup(config, ("retraction_enable",))),
        distance=parse_number(_lookup(config, ("retraction_length", "retract_length"))),
        speed=parse_number(_lookup(config, ("retraction_speed", "retract_speed"))),
    )
    return PrintSettings(
        layer_height=parse_number(_lookup(config, ("layer_height",))),
        infill=parse_number(_lookup(config, ("fill_density", "sparse_infill_density"))),
        speed=None if _all_none(speed) else speed,
        support=None if _all_none(support) else support,
        retraction=None if _all_none(retraction) else retraction,
    )


FILAMENT_KEYS = (
    "filament_type", "filament_vendor", "filament_brand", "filament_colour",
    "filament_diameter", "nozzle_temperature", "temperature", "bed_temperature",
    "hot_plate_temp",
)


def build_filament_settings(config: Dict[str, str]) -> FilamentSettings:
    temperature = TemperatureRange(
        nozzle=parse_number(_lookup(config, ("nozzle_temperature", "temperature"))),
        bed=parse_number(_lookup(config, ("bed_temperature", "hot_plate_temp"))),
    )
    return FilamentSettings(
        type=_text(_lookup(config, ("filament_type",))),
        brand=_text(_lookup(config, ("filament_brand", "filament_vendor"))),
        color=_text(_lookup(config, ("filament_colour",))),
        diameter=parse_number(_lookup(config, ("filament_diameter",))),
        temperature=None if _all_none(temperature) else temperature,
    )


def build_bambu_settings(config: Dict[str, str]) -> BambuSettings:
    ams = AmsSettings(
        enabled=parse_flag(_lookup(config, ("ams_enable",))),
        slot=None,
    )
    slot = parse_number(_lookup(config, ("ams_slot",)))
    if slot is not None:
        ams.slot = int(slot)
    timelapse_raw = _lookup(config, ("timelapse_type",))
    return BambuSettings(
        ams=None if _all_none(ams) else ams,
        timelapse=None if timelapse_raw is None else timelapse_raw.strip() != "0",
        flow_calibration=parse_flag(_lookup(config, ("flow_calibration",))),
        adaptive_layers=parse_flag(_lookup(config, ("adaptive_layer_height",))),
    )


def build_printer_from_plate(plate: dict) -> Optional[PrinterSettings]:
    printer = plate.get("printer")
    nozzle = parse_number(_first(plate.get("nozzle_diameter")))
    if not isinstance(printer, dict):
        if nozzle is None:
            return None
        return PrinterSettings(nozzle_diameter=nozzle)

    build_plate = printer.get("build_plate") or {}
    if not isinstance(build_plate, dict):
        build_plate = {}
    defaults = BuildPlate()
    return PrinterSettings(
        name=_first(printer.get("name")) or None,
        model=_first(printer.get("model")) or None,
        nozzle_diameter=parse_number(_first(printer.get("nozzle_diameter"))) if nozzle is None else nozzle,
        build_plate=BuildPlate(
            width=parse_number(_first(build_plate.get("width"))) or defaults.width,
            height=parse_number(_first(build_plate.get("height"))) or defaults.height,
            depth=parse_number(_first(build_plate.get("depth"))) or defaults.depth,
        ),
    )


class SettingsExtractor:
    """Reads every settings source of one container into an ``ExtractedSettings``."""

    def __init__(self, navigator: ArchiveNavigator, primary_path: Optional[str] = None):
        self.navigator = navigator
        self.primary_path = primary_path
        self.sources: List[str] = []
        self.diagnostics: List[str] = []

    def _recover(self, path: str, error: Exception) -> None:
        message = f"Could not read settings from {path}: {error}"
        logger.warning(message)
        self.diagnostics.append(message)

    async def _read_config(self, path: str) -> Optional[Dict[str, str]]:
        try:
            text = await self.navigator.read_text(path)
            if text is None:
                return None
            config = parse_config(text)
        except Exception as e:
            self._recover(path, e)
            return None
        self.sources.append(path)
        return config

    async def _slicing_config(self) -> Optional[Dict[str, str]]:
        for path in SLICING_CONFIG_PATHS:
            if self.navigator.has_entry(path):
                return await self._read_config(path)
        return None

    async def _plate_info(self) -> Optional[dict]:
        try:
            text = await self.navigator.read_text(PLATE_INFO_PATH)
            if text is None:
                return None
            data = json.loads(text)
        except Exception as e:
            self._recover(PLATE_INFO_PATH, e)
            return None
        if not isinstance(data, dict):
            self._recover(PLATE_INFO_PATH, ValueError("plate info is not a JSON object"))
            return None
        self.sources.append(PLATE_INFO_PATH)
        return data

    async def _descriptor_metadata(self) -> Optional[Dict[str, str]]:
        if not self.primary_path or not self.navigator.has_entry(self.primary_path):
            return None
        try:
            found = read_descriptor_metadata(await self.navigator.read_entry(self.primary_path))
        except Exception as e:
            self._recover(self.primary_path, e)
            return None
        if found:
            self.sources.append(self.primary_path)
        return found

    async def extract(self) -> ExtractedSettings:
        settings = ExtractedSettings()

        slicing = await self._slicing_config()
        model_settings = await self._read_config(MODEL_SETTINGS_PATH)
        slice_info = await self._read_config(SLICE_INFO_PATH)
        plate = await self._plate_info()
        descriptor = await self._descriptor_metadata()

        if slicing is not None:
            settings.print_settings = build_print_settings(slicing)

        filament_config: Dict[str, str] = {}
        if slicing:
            filament_config.update({k: v for k, v in slicing.items() if k in FILAMENT_KEYS})
        if model_settings:
            filament_config.update({k: v for k, v in model_settings.items() if k in FILAMENT_KEYS})
        if model_settings is not None or filament_config:
            settings.filament = build_filament_settings(filament_config)

        if model_settings is not None:
            settings.bambu_settings = build_bambu_settings(model_settings)

        printer = build_printer_from_plate(plate) if plate is not None else None
        if slicing:
            model_name = _text(_lookup(slicing, ("printer_model",)))
            profile_name = _text(_lookup(slicing, ("printer_settings_id",)))
            nozzle = parse_number(_lookup(slicing, ("nozzle_diameter",)))
            if printer is None and (model_name or profile_name or nozzle is not None):
                printer = PrinterSettings()
            if printer is not None:
                printer.model = printer.model or model_name
                printer.name = printer.name or profile_name
                if printer.nozzle_diameter is None:
                    printer.nozzle_diameter = nozzle
        settings.printer = printer

        if slice_info is not None or plate is not None or descriptor:
            metadata = ProvenanceMetadata()
            if slice_info is not None:
                metadata.total_time = parse_number(_lookup(slice_info, ("total_time", "prediction")))
                metadata.filament_used = parse_number(_lookup(slice_info, ("total_filament_used", "filament_used")))
                metadata.filament_weight = parse_number(_lookup(slice_info, ("total_weight", "weight")))
            if plate is not None:
                metadata.application = _first(plate.get("application")) or None
                metadata.version = _first(plate.get("version")) or None
                metadata.creation_date = _first(plate.get("creation_date")) or None
            for name, field_name in DESCRIPTOR_METADATA_FIELDS.items():
                value = (descriptor or {}).get(name)
                if value:
                    setattr(metadata, field_name, value)
            settings.metadata = metadata

        if self.sources:
            logger.info(f"Settings sources found: {', '.join(self.sources)}")
        else:
            logger.info("No settings sources found in container")
        return settings
