"""Local file sources"""

from pathlib import Path
from typing import Union

import aiofiles


class LocalFile:
    """A file on disk read in byte ranges"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.name = self.path.name
        self.size = self.path.stat().st_size

    async def read_range(self, start: int, end: int) -> bytes:
        """Read bytes [start, end), clamped to the file size"""
        end = min(end, self.size)
        if start >= end:
            return b""
        async with aiofiles.open(self.path, 'rb') as f:
            await f.seek(start)
            return await f.read(end - start)

    def __repr__(self):
        return f"LocalFile({str(self.path)!r}, size={self.size})"
