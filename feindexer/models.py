from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

MAX_FAILED_IDS = 1000


class RunState(str, Enum):
    IDLE = "IDLE"
    CLEARING_INDEX = "CLEARING_INDEX"
    BUILDING_LOOKUPS = "BUILDING_LOOKUPS"
    STREAMING = "STREAMING"
    FINAL_FLUSH = "FINAL_FLUSH"
    COMMITTING = "COMMITTING"
    DONE = "DONE"
    FAILED = "FAILED"


class RunResult(BaseModel):
    indexer: str
    index: str
    state: RunState = RunState.IDLE
    states: List[RunState] = Field(default_factory=lambda: [RunState.IDLE])
    rows_processed: int = 0
    documents_written: int = 0
    documents_skipped: int = 0
    chunks_completed: int = 0
    chunks_failed: int = 0
    write_failures: int = 0
    retries: int = 0
    failed_ids: List[str] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    store_count: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    elapsed_sec: Optional[float] = None

    @property
    def failed(self) -> bool:
        return self.state == RunState.FAILED or self.chunks_failed > 0 or self.write_failures > 0

    def record_failed_id(self, doc_id: str) -> None:
        if len(self.failed_ids) < MAX_FAILED_IDS:
            self.failed_ids.append(doc_id)
