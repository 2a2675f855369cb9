"""Read-only navigation over a 3MF (ZIP) container held in memory.

The navigator owns the open archive for the lifetime of one ingestion. Entry
reads are coroutines so that the rest of the pipeline can interleave with them
on a single event loop.
"""

import asyncio
import io
import logging
import zipfile
import zlib
from typing import List, Optional

from ingest_errors import ArchiveCorrupt, ModelDescriptorMissing

logger = logging.getLogger(__name__)

# Tried in order; the first one present is the primary model descriptor.
PRIMARY_MODEL_CANDIDATES = (
    "3D/3dmodel.model",
    "3dmodel.model",
    "model.xml",
    "3D/3DModel.model",
)


def decode_entry_text(data: bytes) -> str:
    """Decode entry bytes as UTF-8, tolerating a BOM and stray bytes."""
    return data.decode("utf-8-sig", errors="replace")


class ArchiveNavigator:
    """Indexes a container and exposes named-entry lookup."""

    def __init__(self, data: bytes, verify_crc: bool = True):
        try:
            self._zf = zipfile.ZipFile(io.BytesIO(data), "r")
        except zipfile.BadZipFile as e:
            raise ArchiveCorrupt(f"Invalid .3mf file: not a valid ZIP archive ({e})") from e
        except (ValueError, OSError) as e:
            raise ArchiveCorrupt(f"Invalid .3mf file: cannot index archive ({e})") from e

        if verify_crc:
            try:
                bad_entry = self._zf.testzip()
            except (zipfile.BadZipFile, zlib.error, EOFError, OSError, NotImplementedError) as e:
                self._zf.close()
                raise ArchiveCorrupt(f"Invalid .3mf file: integrity check failed ({e})") from e
            if bad_entry is not None:
                self._zf.close()
                raise ArchiveCorrupt(f"Invalid .3mf file: CRC mismatch in entry {bad_entry}")

        self._names = [info.filename for info in self._zf.infolist() if not info.is_dir()]
        logger.info(f"Opened 3MF archive with {len(self._names)} entries")

    def __enter__(self) -> "ArchiveNavigator":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self) -> None:
        self._zf.close()

    def list_entries(self) -> List[str]:
        """Entry paths in archive order (directories excluded)."""
        return list(self._names)

    def has_entry(self, path: str) -> bool:
        return path in self._names

    def entry_size(self, path: str) -> int:
        """Uncompressed size of an entry; raises ``KeyError`` if absent."""
        return self._zf.getinfo(path).file_size

    def find_primary_model(self) -> Optional[str]:
        for path in PRIMARY_MODEL_CANDIDATES:
            if path in self._names:
                return path
        return None

    def resolve_primary_model(self) -> str:
        """Return the first canonical model descriptor path present in the archive."""
        path = self.find_primary_model()
        if path is not None:
            if path != PRIMARY_MODEL_CANDIDATES[0]:
                logger.info(f"Found model file at alternate path: {path}")
            return path
        raise ModelDescriptorMissing(
            "3MF archive has no primary model descriptor (tried: "
            + ", ".join(PRIMARY_MODEL_CANDIDATES) + ")"
        )

    async def read_entry(self, path: str) -> bytes:
        """Read an entry's bytes; raises ``KeyError`` if absent."""
        try:
            data = self._zf.read(path)
        except (zipfile.BadZipFile, zlib.error, EOFError, OSError, NotImplementedError) as e:
            raise ArchiveCorrupt(f"Cannot read entry {path}: {e}") from e
        await asyncio.sleep(0)
        return data

    async def read_text(self, path: str) -> Optional[str]:
        """Read an entry as text, or ``None`` if it does not exist."""
        if path not in self._names:
            return None
        return decode_entry_text(await self.read_entry(path))
