from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


RunStatus = Literal["queued", "running", "completed", "cancelled", "error"]
OptimizationMode = Literal["speed", "balanced", "quality"]

TERMINAL_STATUSES = ("completed", "cancelled", "error")


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant", "system"] = "user"
    content: str


class CreateRunRequest(BaseModel):
    query: str = Field(min_length=1, max_length=4000)
    history: List[HistoryMessage] = Field(default_factory=list)
    file_ids: List[str] = Field(default_factory=list)
    optimization_mode: Optional[OptimizationMode] = None


class CreateRunResponse(BaseModel):
    run_id: str
    status: RunStatus


class AbortRunResponse(BaseModel):
    run_id: str
    status: str


class CachePurgeResponse(BaseModel):
    expired: int = 0
    lru: int = 0


class RunState(BaseModel):
    run_id: str
    session_id: str
    status: RunStatus
    created_at: datetime
    updated_at: datetime
    last_access_at: datetime
    query: str
    history: List[Dict[str, Any]] = Field(default_factory=list)
    file_ids: List[str] = Field(default_factory=list)
    optimization_mode: Optional[str] = None
    answer: str = ""
    sources: List[Dict[str, Any]] = Field(default_factory=list)
    sub_questions: List[Dict[str, Any]] = Field(default_factory=list)
    latest_progress: Optional[Dict[str, Any]] = None
    early_synthesis_triggered: bool = False
    early_synthesis_reason: str = ""
    llm_turns_used: int = 0
    token_usage: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    events: List[Dict[str, Any]] = Field(default_factory=list)


class RunSnapshotResponse(BaseModel):
    run_id: str
    session_id: str
    status: RunStatus
    created_at: datetime
    updated_at: datetime
    query: str
    optimization_mode: Optional[str] = None
    answer: str = ""
    sources: List[Dict[str, Any]] = Field(default_factory=list)
    sub_questions: List[Dict[str, Any]] = Field(default_factory=list)
    latest_progress: Optional[Dict[str, Any]] = None
    early_synthesis_triggered: bool = False
    early_synthesis_reason: str = ""
    llm_turns_used: int = 0
    token_usage: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    event_count: int = 0
