"""Parse the primary 3MF model descriptor.

One pass over the XML collects mesh elements (with the object that owns
them), object declarations, ``<build><item>`` placements and descriptor-level
``<metadata>``. Matching is by local tag name so the core namespace, the
production extension and vendor namespaces all parse the same way.
"""

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, List, Optional

from ingest_errors import MalformedDocument
from models import AffineTransform
from transform_resolver import decode_transform

logger = logging.getLogger(__name__)


def local_name(tag) -> str:
    """Tag or attribute name without its ``{namespace}`` prefix."""
    if not isinstance(tag, str):
        return ""
    return tag.split("}")[-1] if "}" in tag else tag


def get_local_attr(elem: ET.Element, name: str) -> Optional[str]:
    """Attribute by local name, whatever namespace (if any) it was written in."""
    value = elem.get(name)
    if value is not None:
        return value
    for key, val in elem.attrib.items():
        if local_name(key) == name:
            return val
    return None


def normalize_entry_path(path: str) -> str:
    """Archive entry name for a model-relative path such as ``/3D/Objects/object_1.model``."""
    return path.strip().lstrip("/")


@dataclass
class MeshElement:
    """A ``<mesh>`` element and the id of the ``<object>`` enclosing it (if any)."""
    element: ET.Element
    object_id: Optional[str]


@dataclass
class ObjectDeclaration:
    object_id: str
    name: Optional[str] = None
    object_type: Optional[str] = None
    part_number: Optional[str] = None
    has_mesh: bool = False
    external_paths: List[str] = field(default_factory=list)
    component_ids: List[str] = field(default_factory=list)

    @property
    def external_path(self) -> Optional[str]:
        return self.external_paths[0] if self.external_paths else None


@dataclass
class BuildItem:
    object_id: str
    transform: AffineTransform
    part_number: Optional[str] = None
    printable: bool = True


@dataclass
class ModelDocument:
    meshes: List[MeshElement] = field(default_factory=list)
    objects: List[ObjectDeclaration] = field(default_factory=list)
    build_items: List[BuildItem] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    unit: str = "millimeter"

    @property
    def is_production_extension(self) -> bool:
        """True when any object keeps its geometry in another archive entry."""
        return any(obj.external_paths for obj in self.objects)

    def object_by_id(self, object_id: str) -> Optional[ObjectDeclaration]:
        for obj in self.objects:
            if obj.object_id == object_id:
                return obj
        return None

    def object_for_entry(self, entry_path: str) -> Optional[ObjectDeclaration]:
        """First declared object whose external geometry lives in ``entry_path``."""
        for obj in self.objects:
            if entry_path in obj.external_paths:
                return obj
        return None

    def wrappers_of(self, object_id: str) -> List[str]:
        """Ids of objects that pull ``object_id`` in as a component, transitively."""
        found: List[str] = []
        frontier = [object_id]
        while frontier:
            current = frontier.pop(0)
            for obj in self.objects:
                if current in obj.component_ids and obj.object_id not in found and obj.object_id != object_id:
                    found.append(obj.object_id)
                    frontier.append(obj.object_id)
        return found


def parse_xml(text: str, source: str) -> ET.Element:
    """Parse XML text; a parser error becomes ``MalformedDocument``."""
    try:
        return ET.fromstring(text.encode("utf-8"))
    except ET.ParseError as e:
        raise MalformedDocument(f"Malformed XML in {source}: {e}") from e


def collect_meshes(root: ET.Element) -> List[MeshElement]:
    """All ``<mesh>`` elements in document order, tagged with their owning object id."""
    owner_by_mesh: Dict[int, str] = {}
    for elem in root.iter():
        if local_name(elem.tag) != "object":
            continue
        oid = elem.get("id")
        if not oid:
            continue
        for child in elem.iter():
            if local_name(child.tag) == "mesh":
                owner_by_mesh.setdefault(id(child), oid)

    meshes: List[MeshElement] = []
    for elem in root.iter():
        if local_name(elem.tag) == "mesh":
            meshes.append(MeshElement(element=elem, object_id=owner_by_mesh.get(id(elem))))
    return meshes


def _parse_object(elem: ET.Element) -> ObjectDeclaration:
    decl = ObjectDeclaration(
        object_id=elem.get("id", ""),
        name=(elem.get("name") or "").strip() or None,
        object_type=elem.get("type"),
        part_number=elem.get("partnumber"),
    )
    own_path = get_local_attr(elem, "path")
    if own_path:
        decl.external_paths.append(normalize_entry_path(own_path))

    for child in elem:
        tag = local_name(child.tag)
        if tag == "mesh":
            decl.has_mesh = True
        elif tag == "components":
            for comp in child:
                if local_name(comp.tag) != "component":
                    continue
                ref_id = comp.get("objectid")
                if ref_id:
                    decl.component_ids.append(ref_id)
                comp_path = get_local_attr(comp, "path")
                if comp_path:
                    entry = normalize_entry_path(comp_path)
                    if entry not in decl.external_paths:
                        decl.external_paths.append(entry)
    return decl


def _parse_build_item(elem: ET.Element, index: int) -> BuildItem:
    object_id = elem.get("objectid")
    if object_id is None:
        logger.warning(f"Build item {index} has no objectid")
        object_id = ""
    return BuildItem(
        object_id=object_id,
        transform=decode_transform(elem.get("transform")),
        part_number=elem.get("partnumber"),
        printable=elem.get("printable", "1") != "0",
    )


def parse_model_document(text: str, source: str = "3D/3dmodel.model") -> ModelDocument:
    """Parse a model descriptor into a ``ModelDocument``.

    Raises:
        MalformedDocument: the text is not well-formed XML
    """
    root = parse_xml(text, source)
    doc = ModelDocument(unit=root.get("unit") or "millimeter")
    doc.meshes = collect_meshes(root)

    build_index = 0
    for elem in root.iter():
        tag = local_name(elem.tag)
        if tag == "object":
            decl = _parse_object(elem)
            if decl.object_id:
                doc.objects.append(decl)
        elif tag == "item":
            build_index += 1
            doc.build_items.append(_parse_build_item(elem, build_index))
        elif tag == "metadata":
            name = elem.get("name")
            if name and name not in doc.metadata:
                doc.metadata[name] = (elem.text or "").strip()

    logger.info(
        f"Parsed {source}: {len(doc.meshes)} meshes, {len(doc.objects)} objects, "
        f"{len(doc.build_items)} build items"
        + (" (production extension)" if doc.is_production_extension else "")
    )
    return doc


_OBJECT_ID_IN_NAME = re.compile(r"(\d+)")


def object_id_from_entry_name(entry_path: str) -> Optional[str]:
    """Numeric object id embedded in a per-object file name, e.g. ``object_12.model`` -> ``"12"``."""
    stem = PurePosixPath(entry_path).stem
    matches = _OBJECT_ID_IN_NAME.findall(stem)
    return matches[-1] if matches else None
