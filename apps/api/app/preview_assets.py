"""Plates and embedded preview images of a 3MF container."""

import base64
import io
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from archive_3mf import ArchiveNavigator
from models import PlateSummary, PreviewImage

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp")
MODEL_SETTINGS_PATH = "Metadata/model_settings.config"


@dataclass
class PreviewIndex:
    by_plate: Dict[int, str] = field(default_factory=dict)
    best: Optional[str] = None


def _preview_rank(path: str) -> Tuple[int, int]:
    p = path.lower()
    for rank, word in enumerate(("thumbnail", "preview", "cover", "top", "plate", "pick")):
        if word in p:
            return (rank, len(p))
    return (9, len(p))


def index_preview_assets(entries: List[str]) -> PreviewIndex:
    """Map plate ids to preview images under ``Metadata/`` and pick the best generic preview."""
    index = PreviewIndex()
    image_names = [
        n for n in entries
        if n.lower().endswith(IMAGE_SUFFIXES) and "/metadata/" in f"/{n.lower()}"
    ]

    for name in image_names:
        lower = name.lower()
        match = re.search(r"(?:plate|top|pick|thumbnail|preview|cover)[_\-]?(\d+)", lower)
        if not match:
            match = re.search(r"[_\-/](\d+)\.(?:png|jpg|jpeg|webp)$", lower)
        if not match:
            continue
        plate_id = int(match.group(1))
        # "plate_N.png" is the canonical thumbnail; other names only fill gaps.
        if plate_id not in index.by_plate or re.search(r"(?:^|/)plate_\d+\.png$", lower):
            index.by_plate[plate_id] = name

    if image_names:
        index.best = sorted(image_names, key=_preview_rank)[0]
    return index


def plate_ids_from_entries(entries: List[str]) -> Dict[int, bool]:
    """Plate ids named by ``Metadata/plate_N.png|json``, mapped to whether the JSON exists."""
    plates: Dict[int, bool] = {}
    for name in entries:
        match = re.search(r"(?:^|/)Metadata/plate_(\d+)\.(png|json)$", name, re.IGNORECASE)
        if not match:
            continue
        plate_id = int(match.group(1))
        has_json = match.group(2).lower() == "json"
        plates[plate_id] = plates.get(plate_id, False) or has_json
    return plates


def parse_plate_names(text: str) -> Dict[int, str]:
    """``plater_id`` -> ``plater_name`` from a Bambu ``model_settings.config``."""
    names: Dict[int, str] = {}
    root = ET.fromstring(text.encode("utf-8"))
    for plate_elem in root.iter("plate"):
        pid_meta = plate_elem.find("metadata[@key='plater_id']")
        pname_meta = plate_elem.find("metadata[@key='plater_name']")
        if pid_meta is None or pname_meta is None:
            continue
        try:
            pid = int(pid_meta.get("value", "0"))
        except ValueError:
            continue
        pname = (pname_meta.get("value") or "").strip()
        if pid and pname:
            names[pid] = pname
    return names


def describe_image(path: str, data: bytes, embed: bool = True) -> PreviewImage:
    """Pixel size and media type of an embedded image, optionally as a data URL."""
    with Image.open(io.BytesIO(data)) as img:
        width, height = img.size
        media_type = Image.MIME.get(img.format or "", "application/octet-stream")
    data_url = None
    if embed:
        data_url = f"data:{media_type};base64,{base64.b64encode(data).decode('ascii')}"
    return PreviewImage(path=path, media_type=media_type, width=width, height=height, data_url=data_url)


async def collect_plates(navigator: ArchiveNavigator,
                         diagnostics: List[str]) -> Tuple[List[PlateSummary], Optional[PreviewImage]]:
    """Plate list and best preview image. Failures only add a diagnostic."""
    entries = navigator.list_entries()
    index = index_preview_assets(entries)
    plate_ids = plate_ids_from_entries(entries)

    plate_names: Dict[int, str] = {}
    if plate_ids:
        try:
            text = await navigator.read_text(MODEL_SETTINGS_PATH)
            if text is not None and text.lstrip().startswith("<"):
                plate_names = parse_plate_names(text)
        except Exception as e:
            message = f"Could not read plate names: {e}"
            logger.warning(message)
            diagnostics.append(message)

    plates = [
        PlateSummary(
            plate_id=plate_id,
            name=plate_names.get(plate_id, f"Plate {plate_id}"),
            thumbnail_path=index.by_plate.get(plate_id),
            has_plate_json=has_json,
        )
        for plate_id, has_json in sorted(plate_ids.items())
    ]

    thumbnail = None
    if index.best:
        try:
            thumbnail = describe_image(index.best, await navigator.read_entry(index.best))
        except (UnidentifiedImageError, OSError, KeyError, ValueError) as e:
            message = f"Could not decode preview image {index.best}: {e}"
            logger.warning(message)
            diagnostics.append(message)

    if plates:
        logger.info(f"Found {len(plates)} plates" + (f", preview {index.best}" if index.best else ""))
    return plates, thumbnail
