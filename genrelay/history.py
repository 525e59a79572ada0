"""
Best-effort recording of generation outcomes.

Recorders are external collaborators: a failure to record is logged and
never reaches the caller waiting on the generation result.
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class HistoryEntry:
    """One generation as seen by the history store."""
    prompt: str
    model_id: str
    modality: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    status: str = "processing"
    result_content: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())


@dataclass
class HistoryOutcome:
    status: str  # "completed" | "failed"
    result_content: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None


class HistoryRecorder(ABC):
    """Interface for generation history stores."""

    @abstractmethod
    async def start(self, entry: HistoryEntry) -> str:
        """Persist a ``processing`` entry and return its id."""
        ...

    @abstractmethod
    async def finish(self, entry_id: str, outcome: HistoryOutcome) -> None:
        ...


class InMemoryHistoryRecorder(HistoryRecorder):
    """
    Keeps the most recent ``max_entries`` entries in memory.

    The oldest entry is evicted once the cap is reached; finishing an
    evicted entry raises KeyError like any unknown id.
    """

    def __init__(self, max_entries: int = 500):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.entries: "OrderedDict[str, HistoryEntry]" = OrderedDict()

    async def start(self, entry: HistoryEntry) -> str:
        self.entries[entry.id] = entry
        while len(self.entries) > self.max_entries:
            evicted, _ = self.entries.popitem(last=False)
            logger.debug(f"History cap {self.max_entries} reached, dropped entry {evicted}")
        return entry.id

    async def finish(self, entry_id: str, outcome: HistoryOutcome) -> None:
        entry = self.entries.get(entry_id)
        if entry is None:
            raise KeyError(entry_id)
        entry.status = outcome.status
        entry.result_content = outcome.result_content
        entry.error_message = outcome.error_message
        entry.duration_ms = outcome.duration_ms

    def list(self) -> List[HistoryEntry]:
        return list(self.entries.values())


class JsonlHistoryRecorder(HistoryRecorder):
    """Appends one JSON line per start/finish event to a file."""

    def __init__(self, path: str):
        self.path = Path(path)

    def _append(self, record: Dict[str, Any]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")

    async def start(self, entry: HistoryEntry) -> str:
        await asyncio.to_thread(self._append, {"event": "start", **asdict(entry)})
        return entry.id

    async def finish(self, entry_id: str, outcome: HistoryOutcome) -> None:
        await asyncio.to_thread(self._append, {"event": "finish", "id": entry_id, **asdict(outcome)})


async def record_start(recorder: Optional[HistoryRecorder], entry: HistoryEntry) -> Optional[str]:
    """Start a history entry, logging and swallowing recorder failures."""
    if recorder is None:
        return None
    try:
        return await recorder.start(entry)
    except Exception:
        logger.exception(f"Failed to record generation start for model {entry.model_id}")
        return None


async def record_finish(
    recorder: Optional[HistoryRecorder],
    entry_id: Optional[str],
    outcome: HistoryOutcome,
) -> None:
    """Finish a history entry, logging and swallowing recorder failures."""
    if recorder is None or entry_id is None:
        return
    try:
        await recorder.finish(entry_id, outcome)
    except Exception:
        logger.exception(f"Failed to record generation outcome for entry {entry_id}")
