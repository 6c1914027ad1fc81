from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import asyncio

import structlog

from .serialization import RunSnapshot, dump_snapshot, load_snapshot


logger = structlog.get_logger(__name__)


class CheckpointStore(ABC):
    """Persistence collaborator for run checkpoints"""

    @abstractmethod
    async def save(self, snapshot: RunSnapshot, session_id: str):
        """Persist a snapshot, replacing any previous one for the session"""
        pass

    @abstractmethod
    async def load(self, session_id: str) -> Optional[RunSnapshot]:
        """Load the latest snapshot, or None"""
        pass

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        pass

    @abstractmethod
    async def list_sessions(self) -> List[str]:
        pass


class InMemoryCheckpointStore(CheckpointStore):
    """Keeps serialized checkpoints in process memory"""

    def __init__(self):
        self.states: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def save(self, snapshot: RunSnapshot, session_id: str):
        """Save state for a session"""

        payload = dump_snapshot(snapshot)
        async with self._lock:
            self.states[session_id] = payload

        logger.debug("Checkpoint stored", session_id=session_id, iteration=snapshot.iteration)

    async def load(self, session_id: str) -> Optional[RunSnapshot]:
        """Get stored state for a session"""

        async with self._lock:
            payload = self.states.get(session_id)

        if payload is None:
            return None
        return load_snapshot(payload)

    async def delete(self, session_id: str) -> bool:
        """Clear state for a session"""

        async with self._lock:
            return self.states.pop(session_id, None) is not None

    async def list_sessions(self) -> List[str]:
        """Get all checkpointed sessions"""

        async with self._lock:
            return list(self.states)
