from __future__ import annotations

import uuid
from typing import Dict


class PreviewStore:
    """
    Handles for derived preview buffers (masks, results).

    Every create() must be paired with exactly one release(); releasing an
    unknown or already released handle raises KeyError.
    """

    def __init__(self) -> None:
        self._live: Dict[str, bytes] = {}
        self.created = 0
        self.released = 0

    def create(self, data: bytes) -> str:
        handle = f"preview:{uuid.uuid4().hex}"
        self._live[handle] = data
        self.created += 1
        return handle

    def get(self, handle: str) -> bytes:
        return self._live[handle]

    def release(self, handle: str) -> None:
        if handle not in self._live:
            raise KeyError(f"Unknown or already released preview: {handle}")
        del self._live[handle]
        self.released += 1

    def __contains__(self, handle: object) -> bool:
        return handle in self._live

    def __len__(self) -> int:
        return len(self._live)
