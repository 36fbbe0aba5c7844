import copy
import json
import threading
from typing import Any, Callable, Dict, List, Optional

from research_agent import DEFAULT_RESEARCH_POLICY, GoalResearchAgent


def search_payload(*urls: str, query: str = "q") -> Dict[str, Any]:
    return {
        "query": query,
        "answer": None,
        "results": [
            {"url": url, "title": f"Title for {url}", "snippet": f"Snippet about {url}"}
            for url in urls
        ],
        "images": [],
    }


def plan(*goals: tuple) -> Dict[str, Any]:
    return {"goals": [{"goal": text, "search_queries": list(queries)} for text, queries in goals]}


def reflection(assessment: str = "completed", new_goals: Optional[List[tuple]] = None) -> Dict[str, Any]:
    return {
        "should_add_goals": bool(new_goals),
        "new_goals": [
            {"goal": text, "search_queries": list(queries)} for text, queries in (new_goals or [])
        ],
        "assessment": assessment,
        "reason": f"assessed as {assessment}",
        "next_action": "continue",
    }


RELEVANT = {"is_relevant": True, "reason": "Directly answers the goal.", "suggests_new_angle": False}
IRRELEVANT = {"is_relevant": False, "reason": "Off topic.", "suggests_new_angle": False}


class FakeLLM:
    """
    Scripted stand-in for the LLM capability. Each stage maps to a list of
    responses consumed in order; the last one repeats once the list runs out.
    A response may be a dict, an exception to raise, or a callable taking the
    user prompt.
    """

    def __init__(
        self,
        structured: Optional[Dict[str, List[Any]]] = None,
        report_chunks: Optional[List[str]] = None,
        report_error: Optional[Exception] = None,
    ) -> None:
        self.structured_responses = {k: list(v) for k, v in (structured or {}).items()}
        self.report_chunks = report_chunks if report_chunks is not None else ["The answer ", "is 42."]
        self.report_error = report_error
        self.calls: List[tuple] = []
        self.stream_calls: List[tuple] = []
        self._lock = threading.Lock()

    def structured(self, schema, system_prompt, user_prompt, stage="unknown"):
        with self._lock:
            self.calls.append((stage, user_prompt))
            queue = self.structured_responses.get(stage)
            if not queue:
                raise RuntimeError(f"no scripted response for stage {stage}")
            item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item(user_prompt)
        if isinstance(item, str):
            return schema.model_validate_json(item)
        return schema.model_validate(item)

    def stream_text(self, system_prompt, user_prompt, stage="unknown"):
        self.stream_calls.append((system_prompt, user_prompt))
        for chunk in self.report_chunks:
            yield chunk
        if self.report_error:
            raise self.report_error

    def stages(self) -> List[str]:
        return [stage for stage, _ in self.calls]


class FakeSearch:
    def __init__(
        self,
        responses: Optional[Dict[str, Any]] = None,
        default: Any = None,
    ) -> None:
        self.responses = responses or {}
        self.default = default
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def search(self, query: str, max_results: int, depth: str) -> Dict[str, Any]:
        with self._lock:
            self.calls.append((query, max_results, depth))
        item = self.responses.get(query, self.default)
        if isinstance(item, Exception):
            raise item
        if item is None:
            raise RuntimeError(f"no scripted search result for {query}")
        return copy.deepcopy(item)

    def queries(self) -> List[str]:
        return [q for q, _, _ in self.calls]


def make_policy(**overrides: Any) -> Dict[str, Any]:
    policy = copy.deepcopy(DEFAULT_RESEARCH_POLICY)
    for key, value in overrides.items():
        if key in policy["modes"]:
            policy["modes"][key].update(value)
        else:
            policy[key] = value
    return policy


def make_agent(
    mode: str = "concise",
    fast_llm: Optional[FakeLLM] = None,
    deep_llm: Optional[FakeLLM] = None,
    search: Optional[FakeSearch] = None,
    policy: Optional[Dict[str, Any]] = None,
    events: Optional[List[Dict[str, Any]]] = None,
    callback: Optional[Callable[[Dict[str, Any]], None]] = None,
) -> GoalResearchAgent:
    sink = events if events is not None else []
    return GoalResearchAgent(
        mode=mode,
        policy=policy or make_policy(),
        verbose=False,
        event_callback=callback or sink.append,
        run_id="test-run",
        fast_llm=fast_llm or FakeLLM(structured={"relevance": [RELEVANT]}),
        deep_llm=deep_llm or FakeLLM(),
        search_client=search or FakeSearch(),
    )


def event_types(events: List[Dict[str, Any]]) -> List[str]:
    return [e["event_type"] for e in events]


def parse_sse(body: str) -> List[Dict[str, Any]]:
    out = []
    for frame in body.split("\n\n"):
        for line in frame.splitlines():
            if line.startswith("data: "):
                out.append(json.loads(line[len("data: ") :]))
    return out
