from queue import Queue

from app.run_manager import STREAM_END, RunManager
from fakes import FakeLLM, FakeSearch, plan, reflection, search_payload
from research_agent import GoalResearchAgent


def _drain(q: Queue) -> list:
    events = []
    while True:
        event = q.get(timeout=10)
        if event is STREAM_END:
            return events
        events.append(event)


def _long_report_factory(chunks):
    def factory(**kwargs):
        for key in ("fast_model", "deep_model", "search_provider"):
            kwargs.pop(key, None)
        deep = FakeLLM(
            structured={
                "plan": [plan(("Survey the field", ["field survey"]))],
                "reflection": [reflection("completed")],
            },
            report_chunks=chunks,
        )
        return GoalResearchAgent(
            fast_llm=FakeLLM(structured={"relevance": [{"is_relevant": True, "reason": "on topic"}]}),
            deep_llm=deep,
            search_client=FakeSearch(default=search_payload("https://a.com")),
            verbose=False,
            **kwargs,
        )

    return factory


def test_long_report_reaches_subscriber_in_full():
    chunks = [f"token{i} " for i in range(2500)]
    manager = RunManager(agent_factory=_long_report_factory(chunks))

    _run_id, q = manager.start_session(
        query="Summarize the field",
        mode="research",
        messages=[],
        fast_model="fast",
        deep_model="deep",
        search_provider="tavily",
    )
    events = _drain(q)

    deltas = [e["payload"]["text"] for e in events if e["event_type"] == "report_delta"]
    assert deltas == chunks
    assert events[-1]["event_type"] == "session_closed"
    assert events[-1]["payload"]["status"] == "completed"
    assert events[-1]["payload"]["events_published"] == len(events) - 1
    assert manager.active_sessions() == 0


def test_timed_out_session_stops_fanning_out():
    manager = RunManager()
    manager.mark_timed_out("unknown-run")
    assert manager.active_sessions() == 0
    assert "unknown-run" not in manager._subscribers
