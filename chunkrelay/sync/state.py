"""Small persisted state blobs"""

from pathlib import Path
import logging

logger = logging.getLogger(__name__)


class MemoryBlobStore:
    """Blob store kept in memory, for tests and one-shot runs"""

    def __init__(self, initial: str = "{}"):
        self.value = initial

    def load(self) -> str:
        return self.value

    def save(self, value: str):
        self.value = value


class JsonFileBlobStore:
    """
    Stores one JSON document on disk
    Survives restarts so paused uploads can be resumed
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> str:
        """Read the stored blob, "{}" when nothing was saved yet"""
        if not self.path.exists():
            return "{}"
        try:
            return self.path.read_text(encoding='utf-8') or "{}"
        except OSError as e:
            logger.error(f"Failed to read state from {self.path}: {e}")
            return "{}"

    def save(self, value: str):
        # Write then rename so a crash never leaves half a document
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(value, encoding='utf-8')
        tmp_path.replace(self.path)
