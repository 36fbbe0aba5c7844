from datetime import datetime
from typing import List, Literal

from pydantic import BaseModel, Field


ResponseMode = Literal["concise", "research"]
SessionStatus = Literal["running", "completed", "aborted", "failed", "timed_out"]


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"] = "user"
    content: str = ""


class ChatRequest(BaseModel):
    query: str = Field(min_length=1, max_length=4000)
    mode: ResponseMode = "concise"
    messages: List[ChatMessage] = Field(default_factory=list)


class RunState(BaseModel):
    run_id: str
    status: SessionStatus = "running"
    mode: ResponseMode
    query: str
    created_at: datetime
    updated_at: datetime
    events_count: int = 0


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    search_provider: str
    problems: List[str] = Field(default_factory=list)
    active_sessions: int = 0
