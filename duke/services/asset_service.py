"""
Evidence files attached to sections.

Each section owns one directory, <root>/<SectionId>/. Uploaded names are
sanitised and never overwrite: a clash appends 0, 1, 2... before the
extension.
"""

import shutil
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional
from uuid import UUID

from ..utils.exceptions import InvalidInputError
from ..utils.logger import get_logger
from ..utils.validation import sanitize_filename

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


def candidate_names(filename: str) -> Iterator[str]:
    """a.png, a0.png, a1.png, ..."""
    yield filename
    stem, dot, ext = filename.rpartition(".")
    if not dot or not stem:
        stem, ext = filename, ""
    i = 0
    while True:
        yield f"{stem}{i}.{ext}" if ext else f"{stem}{i}"
        i += 1


class AssetService:
    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def section_dir(self, section_id: UUID) -> Path:
        return self.root / str(section_id)

    def save(self, section_id: UUID, filename: str, stream: BinaryIO) -> str:
        """Store an upload under a unique sanitised name and return that name."""
        clean = sanitize_filename(filename)
        if not clean:
            raise InvalidInputError("Invalid file name", field="file")

        directory = self.section_dir(section_id)
        directory.mkdir(parents=True, exist_ok=True)

        for name in candidate_names(clean):
            target = directory / name
            try:
                # Exclusive create so two uploads never claim the same name
                with open(target, "xb") as f:
                    shutil.copyfileobj(stream, f, CHUNK_SIZE)
            except FileExistsError:
                continue
            except OSError:
                target.unlink(missing_ok=True)
                raise
            logger.info("Asset saved", section_id=str(section_id), name=name)
            return name

    def delete(self, section_id: UUID, filename: str) -> bool:
        clean = sanitize_filename(filename)
        if not clean:
            return False
        target = self.section_dir(section_id) / clean
        if not target.is_file():
            return False
        target.unlink()
        logger.info("Asset deleted", section_id=str(section_id), name=clean)
        return True

    def list_assets(self, section_id: UUID) -> List[str]:
        directory = self.section_dir(section_id)
        if not directory.is_dir():
            return []
        return sorted(p.name for p in directory.iterdir() if p.is_file())

    def path(self, section_id: UUID, filename: str) -> Optional[Path]:
        clean = sanitize_filename(filename)
        if not clean:
            return None
        target = self.section_dir(section_id) / clean
        return target if target.is_file() else None

    def remove_dir(self, section_id: UUID) -> bool:
        """Delete a section's directory. Failures are logged, not raised."""
        directory = self.section_dir(section_id)
        if not directory.exists():
            return False
        try:
            shutil.rmtree(directory)
        except OSError as e:
            logger.warning("Failed to delete section assets", section_id=str(section_id), error=str(e))
            return False
        return True

    def section_ids(self) -> List[UUID]:
        """Ids of every section that has an asset directory."""
        ids = []
        for entry in self.root.iterdir():
            if not entry.is_dir():
                continue
            try:
                ids.append(UUID(entry.name))
            except ValueError:
                continue
        return ids
