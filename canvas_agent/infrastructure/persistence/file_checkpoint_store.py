import asyncio
import os
import re
from pathlib import Path
from typing import List, Optional, Union

import structlog

from ...domain.context.state.checkpoint_store import CheckpointStore
from ...domain.context.state.serialization import RunSnapshot, dump_snapshot, load_snapshot
from ...domain.errors import CheckpointError


logger = structlog.get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class FileCheckpointStore(CheckpointStore):
    """Stores one JSON checkpoint per session under ``base_path``"""

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)
        self._lock = asyncio.Lock()

    def path_for(self, session_id: str) -> Path:
        safe = _UNSAFE_CHARS.sub("_", session_id)
        return self.base_path / f"{safe}.json"

    async def save(self, snapshot: RunSnapshot, session_id: str):
        path = self.path_for(session_id)
        payload = dump_snapshot(snapshot)

        async with self._lock:
            try:
                await asyncio.to_thread(self._write, path, payload)
            except OSError as e:
                raise CheckpointError(f"Could not write checkpoint {path}: {e}", original=e) from e

        logger.debug("Checkpoint written", session_id=session_id, path=str(path))

    async def load(self, session_id: str) -> Optional[RunSnapshot]:
        path = self.path_for(session_id)

        async with self._lock:
            if not path.exists():
                return None
            try:
                payload = await asyncio.to_thread(path.read_text, encoding="utf-8")
            except OSError as e:
                raise CheckpointError(f"Could not read checkpoint {path}: {e}", original=e) from e

        return load_snapshot(payload)

    async def delete(self, session_id: str) -> bool:
        path = self.path_for(session_id)

        async with self._lock:
            if not path.exists():
                return False
            await asyncio.to_thread(path.unlink)
            return True

    async def list_sessions(self) -> List[str]:
        async with self._lock:
            if not self.base_path.exists():
                return []
            return sorted(path.stem for path in self.base_path.glob("*.json"))

    @staticmethod
    def _write(path: Path, payload: str):
        path.parent.mkdir(parents=True, exist_ok=True)
        temporary = path.with_suffix(".json.tmp")
        temporary.write_text(payload, encoding="utf-8")
        os.replace(temporary, path)
