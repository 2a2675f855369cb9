"""Builders for in-memory 3MF archives used across the tests."""

import io
import zipfile
from typing import Dict, Optional, Sequence, Tuple

CORE_NS = "http://schemas.microsoft.com/3dmanufacturing/core/2015/02"
PRODUCTION_NS = "http://schemas.microsoft.com/3dmanufacturing/production/2015/06"

CONTENT_TYPES = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
    '<Default Extension="model" ContentType="application/vnd.ms-package.3dmanufacturing-3dmodel+xml"/>'
    '</Types>'
)

UNIT_CUBE_VERTICES: Sequence[Tuple[float, float, float]] = (
    (0, 0, 0), (1, 0, 0), (1, 1, 0), (0, 1, 0),
    (0, 0, 1), (1, 0, 1), (1, 1, 1), (0, 1, 1),
)

UNIT_CUBE_TRIANGLES: Sequence[Tuple[int, int, int]] = (
    (0, 2, 1), (0, 3, 2),
    (4, 5, 6), (4, 6, 7),
    (0, 1, 5), (0, 5, 4),
    (1, 2, 6), (1, 6, 5),
    (2, 3, 7), (2, 7, 6),
    (3, 0, 4), (3, 4, 7),
)

RX90_TRANSFORM = "1 0 0 0 0 1 0 -1 0 10 0 0"


def mesh_xml(vertices=UNIT_CUBE_VERTICES, triangles=UNIT_CUBE_TRIANGLES, offset=(0.0, 0.0, 0.0)) -> str:
    verts = "".join(
        f'<vertex x="{x + offset[0]}" y="{y + offset[1]}" z="{z + offset[2]}"/>' for x, y, z in vertices
    )
    tris = "".join(f'<triangle v1="{a}" v2="{b}" v3="{c}"/>' for a, b, c in triangles)
    return f"<mesh><vertices>{verts}</vertices><triangles>{tris}</triangles></mesh>"


def model_xml(resources: str, build: str = "", metadata: Optional[Dict[str, str]] = None,
              production: bool = False) -> str:
    meta = "".join(f'<metadata name="{k}">{v}</metadata>' for k, v in (metadata or {}).items())
    p_ns = f' xmlns:p="{PRODUCTION_NS}"' if production else ""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<model unit="millimeter" xml:lang="en-US" xmlns="{CORE_NS}"{p_ns}>'
        f"{meta}<resources>{resources}</resources><build>{build}</build></model>"
    )


def cube_model(transform: Optional[str] = RX90_TRANSFORM, metadata: Optional[Dict[str, str]] = None) -> str:
    item_transform = f' transform="{transform}"' if transform else ""
    return model_xml(
        f'<object id="1" type="model" name="Cube">{mesh_xml()}</object>',
        f'<item objectid="1"{item_transform}/>',
        metadata=metadata,
    )


def make_3mf(files: Dict[str, object], content_types: bool = True) -> bytes:
    """Zip ``files`` (path -> str or bytes) into a 3MF byte string."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        if content_types:
            zf.writestr("[Content_Types].xml", CONTENT_TYPES)
        for path, content in files.items():
            zf.writestr(path, content)
    return buf.getvalue()


def corrupt_entry(data: bytes, path: str) -> bytes:
    """Overwrite the compressed bytes of ``path`` so inflating it fails.

    The central directory is untouched, so the archive still opens and lists
    the entry; only reading it (or a CRC check) notices.
    """
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        info = zf.getinfo(path)
    buf = bytearray(data)
    # local header: 30 fixed bytes, then file name and extra field lengths at 26/28
    name_len = int.from_bytes(buf[info.header_offset + 26:info.header_offset + 28], "little")
    extra_len = int.from_bytes(buf[info.header_offset + 28:info.header_offset + 30], "little")
    start = info.header_offset + 30 + name_len + extra_len
    # 0xFF opens a final deflate block of the reserved type 3
    buf[start:start + info.compress_size] = b"\xff" * info.compress_size
    return bytes(buf)


def cube_3mf(transform: Optional[str] = RX90_TRANSFORM, extra: Optional[Dict[str, object]] = None) -> bytes:
    files: Dict[str, object] = {"3D/3dmodel.model": cube_model(transform)}
    files.update(extra or {})
    return make_3mf(files)


def production_3mf(extra_items: str = "") -> bytes:
    """Bambu-style layout: geometry in ``3D/Objects/object_1.model``, wrapper object 2 in the main model.

    The first build item places object 5 (a second wrapper with no geometry of
    its own) so the matching build item is not first in document order.
    """
    object_file = model_xml(f'<object id="1" type="model">{mesh_xml()}</object>')
    main = model_xml(
        '<object id="2" type="model">'
        '<components><component p:path="/3D/Objects/object_1.model" objectid="1"/></components>'
        '</object>'
        '<object id="5" type="model" name="Empty"><components/></object>',
        '<item objectid="5" transform="1 0 0 0 1 0 0 0 1 100 100 0"/>'
        f'<item objectid="2" transform="{RX90_TRANSFORM}" printable="1"/>'
        f"{extra_items}",
        production=True,
    )
    return make_3mf({
        "3D/3dmodel.model": main,
        "3D/Objects/object_1.model": object_file,
    })


def png_bytes(width: int = 4, height: int = 3) -> bytes:
    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGB", (width, height), (200, 100, 50)).save(buf, format="PNG")
    return buf.getvalue()
