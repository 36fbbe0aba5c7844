import threading
import uuid
from datetime import datetime, timezone
from queue import Queue
from typing import Any, Callable, Dict, List, Optional

from app.models import RunState
from research_agent import GoalResearchAgent

STREAM_END = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunManager:
    """
    Runs one research session per chat request on a worker thread and fans its
    events out to the request's queue. Sessions are dropped once they finish.
    """

    def __init__(self, agent_factory: Optional[Callable[..., Any]] = None) -> None:
        self._runs: Dict[str, RunState] = {}
        self._subscribers: Dict[str, List[Queue]] = {}
        self._lock = threading.Lock()
        self._agent_factory = agent_factory or GoalResearchAgent

    def start_session(
        self,
        query: str,
        mode: str,
        messages: List[Dict[str, Any]],
        fast_model: str,
        deep_model: str,
        search_provider: str,
    ) -> tuple[str, Queue]:
        run_id = str(uuid.uuid4())
        now = _now()
        state = RunState(
            run_id=run_id,
            mode=mode,
            query=query,
            created_at=now,
            updated_at=now,
        )
        q: Queue = Queue()
        with self._lock:
            self._runs[run_id] = state
            self._subscribers[run_id] = [q]

        t = threading.Thread(
            target=self._execute_run,
            kwargs={
                "run_id": run_id,
                "query": query,
                "mode": mode,
                "messages": messages,
                "agent_kwargs": {
                    "fast_model": fast_model,
                    "deep_model": deep_model,
                    "search_provider": search_provider,
                },
            },
            daemon=True,
        )
        t.start()
        return run_id, q

    def active_sessions(self) -> int:
        with self._lock:
            return len(self._runs)

    def mark_timed_out(self, run_id: str) -> None:
        with self._lock:
            state = self._runs.get(run_id)
            if state and state.status == "running":
                state.status = "timed_out"
                state.updated_at = _now()
            # Nobody reads the stream after a timeout; stop fanning out to it.
            if run_id in self._subscribers:
                self._subscribers[run_id] = []

    def _publish_event(self, run_id: str, event: Dict[str, Any]) -> None:
        with self._lock:
            state = self._runs.get(run_id)
            if not state:
                return
            state.events_count += 1
            state.updated_at = _now()
            subscribers = list(self._subscribers.get(run_id, []))
        for q in subscribers:
            try:
                q.put(event)
            except Exception:
                # Best-effort fan-out: don't block run progress on subscriber failures.
                pass

    def _set_terminal(self, run_id: str, status: str) -> None:
        with self._lock:
            state = self._runs.get(run_id)
            if not state:
                return
            if state.status == "running":
                state.status = status
            state.updated_at = _now()

    def _execute_run(
        self,
        run_id: str,
        query: str,
        mode: str,
        messages: List[Dict[str, Any]],
        agent_kwargs: Dict[str, Any],
    ) -> None:
        def callback(event: Dict[str, Any]) -> None:
            self._publish_event(run_id, event)

        closing_payload: Dict[str, Any] = {}
        try:
            agent = self._agent_factory(
                mode=mode,
                event_callback=callback,
                run_id=run_id,
                **agent_kwargs,
            )
            outcome = agent.research(query, messages)
            if outcome.aborted:
                self._set_terminal(run_id, "aborted")
                closing_payload = {"status": "aborted", "stop_reason": outcome.stop_reason}
            else:
                report = "".join(agent.synthesize_report(query, outcome, messages))
                self._set_terminal(run_id, "completed")
                closing_payload = {
                    "status": "completed",
                    "stop_reason": outcome.stop_reason,
                    "iterations": outcome.iterations,
                    "evidence_count": len(outcome.evidence),
                    "report_chars": len(report),
                }
        except Exception as exc:
            error_text = str(exc) or exc.__class__.__name__
            print(f"[chat] session {run_id} failed: {error_text}")
            self._set_terminal(run_id, "failed")
            self._publish_event(
                run_id,
                {
                    "run_id": run_id,
                    "timestamp": _now().isoformat(),
                    "event_type": "session_error",
                    "payload": {"error": error_text},
                },
            )
            closing_payload = {"status": "failed"}
        finally:
            with self._lock:
                state = self._runs.get(run_id)
                if state:
                    closing_payload["events_published"] = state.events_count
            self._publish_event(
                run_id,
                {
                    "run_id": run_id,
                    "timestamp": _now().isoformat(),
                    "event_type": "session_closed",
                    "payload": closing_payload,
                },
            )
            with self._lock:
                subscribers = self._subscribers.pop(run_id, [])
                self._runs.pop(run_id, None)
            for q in subscribers:
                q.put(STREAM_END)
