import json
import os
import time
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Dict, Iterator

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from app.models import ChatRequest, HealthResponse
from app.run_manager import STREAM_END, RunManager
from app.sse import format_sse, keep_alive
from research_agent import check_environment


BASE_DIR = Path(__file__).resolve().parent
WEB_CONFIG_PATH = BASE_DIR.parent / "web_config.json"
KEEP_ALIVE_SEC = 15.0
run_manager = RunManager()

app = FastAPI(title="Research Chat")


def _load_web_config() -> Dict[str, Any]:
    default = {
        "fast_model": os.getenv("OPENAI_FAST_MODEL", "gpt-4.1-mini"),
        "deep_model": os.getenv("OPENAI_DEEP_MODEL", "gpt-4.1"),
        "search_provider": os.getenv("SEARCH_PROVIDER", "tavily"),
        "session_timeout_sec": 60,
    }
    if not WEB_CONFIG_PATH.exists():
        return default
    try:
        raw = json.loads(WEB_CONFIG_PATH.read_text(encoding="utf-8"))
    except Exception:
        return default
    if not isinstance(raw, dict):
        return default
    fast_model = str(raw.get("fast_model", default["fast_model"]) or default["fast_model"])
    deep_model = str(raw.get("deep_model", default["deep_model"]) or default["deep_model"])
    search_provider = str(raw.get("search_provider", default["search_provider"]))
    if search_provider not in {"tavily", "openai"}:
        search_provider = default["search_provider"]
    try:
        session_timeout_sec = int(
            raw.get("session_timeout_sec", default["session_timeout_sec"])
        )
    except (TypeError, ValueError):
        session_timeout_sec = default["session_timeout_sec"]
    return {
        "fast_model": fast_model,
        "deep_model": deep_model,
        "search_provider": search_provider,
        "session_timeout_sec": max(10, min(session_timeout_sec, 900)),
    }


WEB_CONFIG = _load_web_config()


@app.get("/api/health", response_model=HealthResponse)
def health() -> HealthResponse:
    provider = str(WEB_CONFIG.get("search_provider", "tavily"))
    problems = check_environment(provider)
    return HealthResponse(
        status="degraded" if problems else "ok",
        search_provider=provider,
        problems=problems,
        active_sessions=run_manager.active_sessions(),
    )


def _event_stream(run_id: str, q: Queue, timeout_sec: float) -> Iterator[str]:
    deadline = time.monotonic() + timeout_sec
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            print(f"[chat] session {run_id} exceeded {timeout_sec:.0f}s; closing stream.")
            run_manager.mark_timed_out(run_id)
            yield format_sse(
                {
                    "run_id": run_id,
                    "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                    "event_type": "session_timeout",
                    "payload": {"timeout_sec": timeout_sec},
                }
            )
            return
        try:
            event = q.get(timeout=min(KEEP_ALIVE_SEC, remaining))
        except Empty:
            yield keep_alive()
            continue
        if event is STREAM_END:
            return
        yield format_sse(event)


@app.post("/api/chat")
def chat(req: ChatRequest) -> StreamingResponse:
    query = req.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query must not be blank")
    run_id, q = run_manager.start_session(
        query=query,
        mode=req.mode,
        messages=[m.model_dump() for m in req.messages],
        fast_model=str(WEB_CONFIG.get("fast_model")),
        deep_model=str(WEB_CONFIG.get("deep_model")),
        search_provider=str(WEB_CONFIG.get("search_provider", "tavily")),
    )
    return StreamingResponse(
        _event_stream(run_id, q, float(WEB_CONFIG.get("session_timeout_sec", 60))),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Run-Id": run_id},
    )
