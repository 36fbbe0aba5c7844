import argparse
import copy
import json
import os
import textwrap
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterator, List, Literal, Optional, Type

from openai import OpenAI
from pydantic import BaseModel, Field, ValidationError
from tavily import TavilyClient

from result_dedup import dedupe_batch_responses, dedupe_evidence

PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
RESEARCH_POLICY_PATH = Path(__file__).resolve().parent / "research_policy.json"

MODES = ("concise", "research")
SEARCH_DEPTHS = ("basic", "advanced")
MAX_NEW_GOAL_QUERIES = 2
HISTORY_TURNS_LIMIT = 10

DEFAULT_RESEARCH_POLICY: Dict[str, Any] = {
    "results_per_query": 2,
    "queries_per_iteration": 1,
    "max_workers": 4,
    "modes": {
        "concise": {
            "max_iterations": 3,
            "max_goals": 2,
            "max_searches_per_goal": 2,
            "initial_goals": 1,
            "seed_queries": 1,
            "search_depth": "basic",
        },
        "research": {
            "max_iterations": 10,
            "max_goals": 6,
            "max_searches_per_goal": 3,
            "initial_goals": 2,
            "seed_queries": 3,
            "search_depth": "advanced",
        },
    },
}

# (minimum, maximum) accepted for each integer budget in research_policy.json.
_MODE_LIMITS: Dict[str, tuple[int, int]] = {
    "max_iterations": (1, 50),
    "max_goals": (1, 20),
    "max_searches_per_goal": (1, 10),
    "initial_goals": (1, 2),
    "seed_queries": (1, 3),
}


def load_prompt(filename: str) -> str:
    path = PROMPTS_DIR / filename
    if not path.exists():
        raise FileNotFoundError(f"Missing prompt file: {path}")
    return path.read_text(encoding="utf-8").strip()


def _clamp_int(value: Any, low: int, high: int, fallback: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return fallback
    return max(low, min(high, value))


def load_research_policy(path: Path = RESEARCH_POLICY_PATH) -> Dict[str, Any]:
    policy = copy.deepcopy(DEFAULT_RESEARCH_POLICY)
    if not path.exists():
        return policy
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return policy
    if not isinstance(raw, dict):
        return policy

    policy["results_per_query"] = _clamp_int(
        raw.get("results_per_query"), 1, 10, policy["results_per_query"]
    )
    policy["queries_per_iteration"] = _clamp_int(
        raw.get("queries_per_iteration"), 1, 5, policy["queries_per_iteration"]
    )
    policy["max_workers"] = _clamp_int(raw.get("max_workers"), 1, 16, policy["max_workers"])

    raw_modes = raw.get("modes", {})
    if not isinstance(raw_modes, dict):
        return policy
    for mode in MODES:
        raw_mode = raw_modes.get(mode)
        if not isinstance(raw_mode, dict):
            continue
        target = policy["modes"][mode]
        for key, (low, high) in _MODE_LIMITS.items():
            target[key] = _clamp_int(raw_mode.get(key), low, high, target[key])
        if raw_mode.get("search_depth") in SEARCH_DEPTHS:
            target["search_depth"] = raw_mode["search_depth"]
        target["initial_goals"] = min(target["initial_goals"], target["max_goals"])
    return policy


def check_environment(search_provider: str = "tavily") -> List[str]:
    problems: List[str] = []
    if not os.getenv("OPENAI_API_KEY", "").strip():
        problems.append("OPENAI_API_KEY is not set")
    if search_provider == "tavily":
        tavily_key = os.getenv("TAVILY_API_KEY", "").strip()
        if not tavily_key:
            problems.append("TAVILY_API_KEY is not set")
        elif not tavily_key.startswith("tvly-"):
            problems.append("TAVILY_API_KEY must start with 'tvly-'")
    return problems


def today_label() -> str:
    return datetime.now().strftime("%a, %b %d, %Y")


def as_clean_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    out: List[str] = []
    seen = set()
    for item in value:
        if not isinstance(item, str):
            continue
        s = item.strip()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


def trim_text(text: str, max_len: int) -> str:
    value = (text or "").strip()
    if len(value) <= max_len:
        return value
    return value[: max_len - 3].rstrip() + "..."


def format_chat_history(messages: List[Dict[str, Any]]) -> str:
    lines: List[str] = []
    for msg in messages[-HISTORY_TURNS_LIMIT:]:
        if not isinstance(msg, dict):
            continue
        content = str(msg.get("content", "")).strip()
        if not content:
            continue
        role = "Assistant" if msg.get("role") == "assistant" else "User"
        lines.append(f"{role}: {trim_text(content, 1500)}")
    return "\n".join(lines)


SYSTEM_PLAN = load_prompt("plan.system.txt")
SYSTEM_RELEVANCE = load_prompt("relevance.system.txt")
SYSTEM_REFLECTION = load_prompt("reflection.system.txt")
SYSTEM_REPORT_RESEARCH = load_prompt("report_research.system.txt")
SYSTEM_REPORT_CONCISE = load_prompt("report_concise.system.txt")


class ProposedGoal(BaseModel):
    goal: str = Field(min_length=1)
    search_queries: List[str] = Field(default_factory=list)


class ResearchPlan(BaseModel):
    goals: List[ProposedGoal] = Field(min_length=1)


class RelevanceJudgement(BaseModel):
    is_relevant: bool
    reason: str = ""
    suggests_new_angle: bool = False
    new_angle: Optional[str] = None


class Reflection(BaseModel):
    should_add_goals: bool = False
    new_goals: List[ProposedGoal] = Field(default_factory=list)
    assessment: Literal["completed", "needs_more_searches", "failed"]
    reason: str = ""
    next_action: str = ""


@dataclass
class ModeBudget:
    max_iterations: int
    max_goals: int
    max_searches_per_goal: int
    initial_goals: int
    seed_queries: int
    search_depth: str


def mode_budget(mode: str, policy: Dict[str, Any] | None = None) -> ModeBudget:
    if mode not in MODES:
        raise ValueError(f"Unknown response mode: {mode!r}")
    policy = policy or load_research_policy()
    return ModeBudget(**policy["modes"][mode])


@dataclass
class Evidence:
    reason: str
    query: str
    result: Dict[str, Any]
    goal_id: int = 0


@dataclass
class Goal:
    id: int
    text: str
    search_queries: List[str] = field(default_factory=list)
    status: str = "pending"
    relevant_results: List[Evidence] = field(default_factory=list)
    searches_attempted: int = 0
    completion_reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    def next_queries(self, limit: int, max_searches: int) -> List[str]:
        budget = min(len(self.search_queries), max_searches)
        remaining = budget - self.searches_attempted
        if remaining <= 0 or limit <= 0:
            return []
        start = self.searches_attempted
        return self.search_queries[start : start + min(limit, remaining)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.text,
            "search_queries": list(self.search_queries),
            "status": self.status,
            "searches_attempted": self.searches_attempted,
            "relevant_results_count": len(self.relevant_results),
            "completion_reason": self.completion_reason,
        }


@dataclass
class SessionState:
    query: str
    mode: str
    active_goals: Deque[Goal] = field(default_factory=deque)
    completed_goals: List[Goal] = field(default_factory=list)
    evidence: List[Evidence] = field(default_factory=list)
    iteration: int = 0
    history: List[str] = field(default_factory=list)
    stop_reason: str = ""
    next_goal_id: int = 1

    def new_goal(self, text: str, queries: List[str]) -> Goal:
        goal = Goal(id=self.next_goal_id, text=text, search_queries=list(queries))
        self.next_goal_id += 1
        return goal

    def goal_count(self) -> int:
        return len(self.completed_goals) + len(self.active_goals)


@dataclass
class SearchOutcome:
    query: str
    result: Optional[Dict[str, Any]] = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error and isinstance(self.result, dict)


@dataclass
class ResearchOutcome:
    evidence: List[Evidence]
    goals: List[Goal]
    stop_reason: str
    aborted: bool = False
    error: str = ""
    history: List[str] = field(default_factory=list)
    iterations: int = 0


class PlanningError(Exception):
    pass


class UsageTracker:
    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def record(self, stage: str, model: str, usage: Any) -> None:
        input_tokens = self._pick_int(usage, ["prompt_tokens", "input_tokens"])
        output_tokens = self._pick_int(usage, ["completion_tokens", "output_tokens"])
        total_tokens = self._pick_int(usage, ["total_tokens"]) or input_tokens + output_tokens
        self.events.append(
            {
                "stage": stage,
                "model": model,
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "total_tokens": total_tokens,
                "usage_missing": usage is None,
            }
        )

    def _pick_int(self, obj: Any, keys: List[str]) -> int:
        if obj is None:
            return 0
        for key in keys:
            val = obj.get(key) if isinstance(obj, dict) else getattr(obj, key, None)
            if isinstance(val, int):
                return val
        return 0

    def to_dict(self) -> Dict[str, Any]:
        by_stage: Dict[str, Dict[str, int]] = {}
        totals = {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0, "calls": 0}
        # Events are appended from worker threads; iterate over a snapshot.
        for e in list(self.events):
            bucket = by_stage.setdefault(
                e["stage"],
                {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0, "calls": 0},
            )
            for target in (bucket, totals):
                target["input_tokens"] += e["input_tokens"]
                target["output_tokens"] += e["output_tokens"]
                target["total_tokens"] += e["total_tokens"]
                target["calls"] += 1
        return {"by_stage": by_stage, "total": totals}


class LLM:
    def __init__(
        self,
        model: str,
        usage_tracker: UsageTracker | None = None,
        client: Any = None,
    ) -> None:
        self.client = client or OpenAI()
        self.model = model
        self.usage_tracker = usage_tracker

    def structured(
        self,
        schema: Type[BaseModel],
        system_prompt: str,
        user_prompt: str,
        stage: str = "unknown",
    ) -> BaseModel:
        rsp = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format={"type": "json_object"},
        )
        if self.usage_tracker:
            self.usage_tracker.record(stage, self.model, getattr(rsp, "usage", None))
        text = rsp.choices[0].message.content or "{}"
        return schema.model_validate_json(text)

    def stream_text(
        self,
        system_prompt: str,
        user_prompt: str,
        stage: str = "unknown",
    ) -> Iterator[str]:
        stream = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            stream=True,
            stream_options={"include_usage": True},
        )
        for chunk in stream:
            usage = getattr(chunk, "usage", None)
            if usage is not None and self.usage_tracker:
                self.usage_tracker.record(stage, self.model, usage)
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta


class TavilyWebSearch:
    def __init__(self, client: Any = None) -> None:
        # TavilyClient reads TAVILY_API_KEY from the environment.
        self.client = client or TavilyClient()

    def search(self, query: str, max_results: int, depth: str) -> Dict[str, Any]:
        rsp = self.client.search(
            query,
            max_results=max_results,
            search_depth=depth,
            include_images=True,
            include_answer=True,
        )
        results = []
        for item in rsp.get("results", []):
            if not isinstance(item, dict):
                continue
            results.append(
                {
                    "url": str(item.get("url", "")).strip(),
                    "title": str(item.get("title", "")),
                    "snippet": str(item.get("content", "")),
                    "score": item.get("score"),
                }
            )
        return {
            "query": query,
            "answer": rsp.get("answer"),
            "results": results,
            "images": list(rsp.get("images") or []),
        }


class OpenAIWebSearch:
    def __init__(self, model: str, usage_tracker: UsageTracker | None = None) -> None:
        self.client = OpenAI()
        self.model = model
        self.usage_tracker = usage_tracker
        tool_types = os.getenv("OPENAI_WEB_SEARCH_TOOL_TYPES", "web_search_preview,web_search")
        self.tool_types = [t.strip() for t in tool_types.split(",") if t.strip()]

    def search(self, query: str, max_results: int, depth: str) -> Dict[str, Any]:
        detail = "Prefer in-depth, primary sources." if depth == "advanced" else ""
        prompt = textwrap.dedent(
            f"""
            Search the web for the query below and return STRICT JSON:
            {{
              "results": [
                {{"title": "...", "url": "https://...", "snippet": "..."}}
              ]
            }}
            Rules:
            - Return at most {max_results} results.
            - Include only results with valid absolute URLs.
            - Keep each snippet to 1-2 sentences.
            {detail}

            Query: {query}
            """
        ).strip()
        errors: List[str] = []
        for tool_type in self.tool_types:
            try:
                rsp = self.client.responses.create(
                    model=self.model,
                    tools=[{"type": tool_type}],
                    tool_choice={"type": tool_type},
                    input=prompt,
                )
                if self.usage_tracker:
                    self.usage_tracker.record("web_search", self.model, getattr(rsp, "usage", None))
                data = self._parse_results_json(rsp.output_text)
            except Exception as exc:
                errors.append(f"{tool_type}: {exc}")
                continue
            items = [i for i in data.get("results", []) if isinstance(i, dict)]
            return {
                "query": query,
                "answer": None,
                "results": [
                    {
                        "url": str(i.get("url", "")).strip(),
                        "title": str(i.get("title", "")),
                        "snippet": str(i.get("snippet", "")),
                    }
                    for i in items[:max_results]
                ],
                "images": [],
            }
        raise RuntimeError(" | ".join(errors) if errors else "unknown search error")

    def _parse_results_json(self, text: str) -> Dict[str, Any]:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            start = text.find("{")
            end = text.rfind("}")
            if start != -1 and end != -1 and end > start:
                return json.loads(text[start : end + 1])
            raise ValueError("Failed to parse OpenAI web search response as JSON.")


def build_search_client(
    provider: str, model: str, usage_tracker: UsageTracker | None = None
) -> Any:
    if provider == "tavily":
        return TavilyWebSearch()
    if provider == "openai":
        return OpenAIWebSearch(model=model, usage_tracker=usage_tracker)
    raise ValueError(f"Unknown search provider: {provider!r}")


class GoalResearchAgent:
    def __init__(
        self,
        mode: str = "concise",
        fast_model: str = "gpt-4.1-mini",
        deep_model: str = "gpt-4.1",
        search_provider: str = "tavily",
        policy: Dict[str, Any] | None = None,
        verbose: bool = True,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        run_id: str = "",
        fast_llm: Any = None,
        deep_llm: Any = None,
        search_client: Any = None,
    ) -> None:
        self.policy = policy or load_research_policy()
        self.mode = mode
        self.budget = mode_budget(mode, self.policy)
        self.results_per_query = int(self.policy["results_per_query"])
        self.queries_per_iteration = int(self.policy["queries_per_iteration"])
        self.max_workers = int(self.policy["max_workers"])
        self.usage_tracker = UsageTracker()
        self.fast_llm = fast_llm or LLM(model=fast_model, usage_tracker=self.usage_tracker)
        self.deep_llm = deep_llm or LLM(model=deep_model, usage_tracker=self.usage_tracker)
        self.search = search_client or build_search_client(
            search_provider, fast_model, self.usage_tracker
        )
        self.verbose = verbose
        self.event_callback = event_callback
        self.run_id = run_id

    def run(self, query: str, history_messages: List[Dict[str, Any]] | None = None) -> str:
        outcome = self.research(query, history_messages)
        if outcome.aborted:
            return ""
        return "".join(self.synthesize_report(query, outcome, history_messages))

    def research(
        self, query: str, history_messages: List[Dict[str, Any]] | None = None
    ) -> ResearchOutcome:
        state = SessionState(query=query, mode=self.mode)
        self._trace(state, f"Research session started (mode={self.mode}).")
        self._emit("plan_started", {"query": query, "mode": self.mode})
        try:
            goals = self._plan(state, history_messages or [])
        except PlanningError as exc:
            state.stop_reason = "planning_failed"
            self._trace(state, f"Planning failed; aborting session. error={exc}")
            self._emit("plan_failed", {"error": str(exc)})
            return ResearchOutcome(
                evidence=[],
                goals=[],
                stop_reason=state.stop_reason,
                aborted=True,
                error=str(exc),
                history=state.history,
            )
        state.active_goals.extend(goals)
        self._trace(state, f"Plan created with {len(goals)} goals.")
        self._emit("plan_created", {"goals": [g.to_dict() for g in goals]})

        budget = self.budget
        while (
            state.active_goals
            and state.iteration < budget.max_iterations
            and state.goal_count() <= budget.max_goals
        ):
            current = state.active_goals.popleft()
            state.iteration += 1
            current.status = "in_progress"
            self._trace(
                state,
                f"Iteration {state.iteration}/{budget.max_iterations}: goal {current.id} ({current.text}).",
            )
            self._emit(
                "goal_iteration_started",
                {
                    "iteration": state.iteration,
                    "max_iterations": budget.max_iterations,
                    "goal": current.to_dict(),
                    "active_goals": len(state.active_goals),
                    "completed_goals": len(state.completed_goals),
                },
            )
            self._process_goal(state, current)

        self._record_stop(state)
        evidence = dedupe_evidence(state.evidence)
        if len(evidence) != len(state.evidence):
            self._trace(
                state,
                f"Cross-batch dedup removed {len(state.evidence) - len(evidence)} duplicate findings.",
            )
        return ResearchOutcome(
            evidence=evidence,
            goals=state.completed_goals + list(state.active_goals),
            stop_reason=state.stop_reason,
            history=state.history,
            iterations=state.iteration,
        )

    def _plan(self, state: SessionState, history_messages: List[Dict[str, Any]]) -> List[Goal]:
        budget = self.budget
        try:
            plan = self.deep_llm.structured(
                ResearchPlan,
                SYSTEM_PLAN,
                self._format_plan_prompt(state.query, history_messages),
                stage="plan",
            )
        except ValidationError as exc:
            raise PlanningError(f"Malformed research plan: {exc}") from exc
        except Exception as exc:
            raise PlanningError(str(exc)) from exc

        limit = min(budget.initial_goals, budget.max_goals)
        goals: List[Goal] = []
        for proposal in plan.goals:
            if len(goals) >= limit:
                break
            queries = as_clean_str_list(proposal.search_queries)[: budget.seed_queries]
            text = proposal.goal.strip()
            if not text or not queries:
                continue
            goals.append(state.new_goal(text, queries))
        if not goals:
            raise PlanningError("Research plan contained no usable goals.")
        return goals

    def _process_goal(self, state: SessionState, current: Goal) -> None:
        queries = current.next_queries(self.queries_per_iteration, self.budget.max_searches_per_goal)
        if not queries:
            self._finish_goal(state, current, "completed", "all queries attempted")
            return

        outcomes = self._run_searches(state, current, queries)
        current.searches_attempted += len(queries)

        unique = dedupe_batch_responses(
            [{"query": o.query, "result": o.result} for o in outcomes if o.ok]
        )
        succeeded = sum(1 for o in outcomes if o.ok)
        self._trace(
            state,
            f"Goal {current.id}: {succeeded}/{len(outcomes)} searches succeeded, "
            f"{len(unique)} unique result sets after dedup.",
        )

        new_angles = self._analyze_results(state, current, unique)
        self._emit(
            "goal_progress",
            {
                "goal": current.to_dict(),
                "unique_result_sets": len(unique),
                "new_angles": new_angles,
                "evidence_total": len(state.evidence),
            },
        )
        self._reflect(state, current, new_angles)

    def _run_searches(
        self, state: SessionState, current: Goal, queries: List[str]
    ) -> List[SearchOutcome]:
        depth = self.budget.search_depth
        self._emit(
            "search_batch_started",
            {"goal_id": current.id, "queries": queries, "depth": depth},
        )
        for query in queries:
            self._log(f"Searching: {query}")
            self._emit(
                "search_call",
                {"goal_id": current.id, "query": query, "max_results": self.results_per_query},
            )

        def run_one(query: str) -> SearchOutcome:
            try:
                result = self.search.search(query, self.results_per_query, depth)
            except Exception as exc:
                return SearchOutcome(query=query, error=str(exc) or exc.__class__.__name__)
            if not isinstance(result, dict):
                return SearchOutcome(query=query, error="malformed search response")
            return SearchOutcome(query=query, result=result)

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(queries))) as pool:
            outcomes = list(pool.map(run_one, queries))

        for outcome in outcomes:
            if outcome.ok:
                results = outcome.result.get("results", []) if outcome.result else []
                self._emit(
                    "search_result",
                    {
                        "goal_id": current.id,
                        "query": outcome.query,
                        "results_count": len(results) if isinstance(results, list) else 0,
                        "sources": [
                            {"title": r.get("title", ""), "url": r.get("url", "")}
                            for r in (results if isinstance(results, list) else [])
                            if isinstance(r, dict)
                        ],
                    },
                )
            else:
                self._trace(
                    state,
                    f"Search failed for '{outcome.query}'; continuing. error={outcome.error}",
                )
                self._emit(
                    "search_error",
                    {"goal_id": current.id, "query": outcome.query, "error": outcome.error},
                )
        return outcomes

    def _analyze_results(
        self, state: SessionState, current: Goal, unique: List[Dict[str, Any]]
    ) -> List[str]:
        if not unique:
            return []
        for entry in unique:
            self._emit(
                "analysis_call",
                {"goal_id": current.id, "query": entry["query"], "content_hash": entry["content_hash"]},
            )

        def analyze_one(entry: Dict[str, Any]) -> tuple[Optional[RelevanceJudgement], str]:
            try:
                judgement = self.fast_llm.structured(
                    RelevanceJudgement,
                    SYSTEM_RELEVANCE,
                    self._format_relevance_prompt(current, entry),
                    stage="relevance",
                )
                return judgement, ""
            except Exception as exc:
                return None, str(exc) or exc.__class__.__name__

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(unique))) as pool:
            judgements = list(pool.map(analyze_one, unique))

        new_angles: List[str] = []
        for entry, (judgement, error) in zip(unique, judgements):
            if judgement is None:
                self._trace(
                    state,
                    f"Relevance analysis failed for '{entry['query']}'; treating as not relevant. error={error}",
                )
                self._emit(
                    "analysis_error",
                    {"goal_id": current.id, "query": entry["query"], "error": error},
                )
                continue
            if judgement.suggests_new_angle:
                new_angles.append(
                    (judgement.new_angle or "").strip() or f"New angle flagged by '{entry['query']}'"
                )
            if judgement.is_relevant:
                item = Evidence(
                    reason=judgement.reason,
                    query=entry["query"],
                    result=entry["result"],
                    goal_id=current.id,
                )
                current.relevant_results.append(item)
                state.evidence.append(item)
            self._emit(
                "analysis_result",
                {
                    "goal_id": current.id,
                    "query": entry["query"],
                    "is_relevant": judgement.is_relevant,
                    "reason": judgement.reason,
                    "suggests_new_angle": judgement.suggests_new_angle,
                    "new_angle": judgement.new_angle,
                },
            )
        return new_angles

    def _reflect(self, state: SessionState, current: Goal, new_angles: List[str]) -> None:
        self._emit("reflection_call", {"goal_id": current.id, "new_angles": new_angles})
        try:
            reflection = self.deep_llm.structured(
                Reflection,
                SYSTEM_REFLECTION,
                self._format_reflection_prompt(state, current, new_angles),
                stage="reflection",
            )
        except Exception as exc:
            self._trace(
                state,
                f"Reflection failed for goal {current.id}; forcing completion. error={exc}",
            )
            self._emit("reflection_error", {"goal_id": current.id, "error": str(exc)})
            self._finish_goal(state, current, "completed", "reflection failed")
            return

        self._emit("reflection_result", {"goal_id": current.id, **reflection.model_dump()})
        if reflection.should_add_goals and reflection.new_goals:
            self._add_goals(state, reflection.new_goals)

        reason = reflection.reason.strip()
        if reflection.assessment == "completed":
            self._finish_goal(state, current, "completed", reason or "assessed as completed")
        elif reflection.assessment == "failed":
            self._finish_goal(state, current, "failed", reason or "assessed as failed")
        elif current.next_queries(1, self.budget.max_searches_per_goal):
            current.status = "pending"
            state.active_goals.appendleft(current)
            self._trace(state, f"Goal {current.id} requeued at the front for more searches.")
            self._emit("goal_requeued", {"goal": current.to_dict(), "reason": reason})
        else:
            self._finish_goal(state, current, "completed", "search budget exhausted")

    def _add_goals(self, state: SessionState, proposals: List[ProposedGoal]) -> None:
        cleaned: List[tuple[str, List[str]]] = []
        for proposal in proposals:
            text = proposal.goal.strip()
            queries = as_clean_str_list(proposal.search_queries)[:MAX_NEW_GOAL_QUERIES]
            if text and queries:
                cleaned.append((text, queries))
        if not cleaned:
            return
        # The goal being reflected on is out of the queue but still counts.
        projected = state.goal_count() + 1 + len(cleaned)
        if projected > self.budget.max_goals:
            self._trace(
                state,
                f"Goal cap reached: discarded {len(cleaned)} proposed goals "
                f"({projected} > max_goals={self.budget.max_goals}).",
            )
            self._emit(
                "goals_discarded",
                {
                    "proposed": [text for text, _ in cleaned],
                    "max_goals": self.budget.max_goals,
                    "projected_goals": projected,
                },
            )
            return
        for text, queries in cleaned:
            goal = state.new_goal(text, queries)
            state.active_goals.append(goal)
            self._trace(state, f"Added goal {goal.id}: {goal.text}")
            self._emit("goal_added", {"goal": goal.to_dict()})

    def _finish_goal(self, state: SessionState, goal: Goal, status: str, reason: str) -> None:
        goal.status = status
        goal.completion_reason = reason
        state.completed_goals.append(goal)
        self._trace(state, f"Goal {goal.id} {status}: {reason}")
        self._emit("goal_failed" if status == "failed" else "goal_completed", {"goal": goal.to_dict()})

    def _record_stop(self, state: SessionState) -> None:
        budget = self.budget
        if not state.active_goals:
            state.stop_reason = "goals_exhausted"
            self._trace(state, "Stopping: no active goals remain.")
        elif state.iteration >= budget.max_iterations:
            state.stop_reason = "max_iterations"
            self._trace(
                state,
                f"Stopping: iteration budget exhausted ({state.iteration}/{budget.max_iterations}).",
            )
        else:
            # Unreachable while _add_goals enforces the cap; kept as a safety net.
            state.stop_reason = "max_goals"
            while state.active_goals:
                goal = state.active_goals.popleft()
                goal.status = "completed"
                goal.completion_reason = "goal budget reached"
                state.completed_goals.append(goal)
            self._trace(state, f"Stopping: goal budget reached (max_goals={budget.max_goals}).")
        self._emit(
            "session_stopped",
            {
                "reason": state.stop_reason,
                "iterations": state.iteration,
                "completed_goals": [g.to_dict() for g in state.completed_goals],
                "active_goals": [g.to_dict() for g in state.active_goals],
                "evidence_count": len(state.evidence),
                "token_usage": self.usage_tracker.to_dict().get("total", {}),
            },
        )

    def synthesize_report(
        self,
        query: str,
        outcome: ResearchOutcome,
        history_messages: List[Dict[str, Any]] | None = None,
    ) -> Iterator[str]:
        system = SYSTEM_REPORT_RESEARCH if self.mode == "research" else SYSTEM_REPORT_CONCISE
        prompt = self._format_report_prompt(query, outcome, history_messages or [])
        self._log("Generating final answer.")
        self._emit("report_started", {"mode": self.mode, "evidence_count": len(outcome.evidence)})
        report_chars = 0
        try:
            for chunk in self.deep_llm.stream_text(system, prompt, stage="report"):
                report_chars += len(chunk)
                self._emit("report_delta", {"text": chunk})
                yield chunk
        except Exception as exc:
            self._log(f"Report generation failed: {exc}")
            self._emit("report_failed", {"error": str(exc), "report_chars": report_chars})
            return
        self._emit(
            "report_completed",
            {
                "report_chars": report_chars,
                "token_usage": self.usage_tracker.to_dict().get("total", {}),
            },
        )

    def _format_plan_prompt(self, query: str, history_messages: List[Dict[str, Any]]) -> str:
        budget = self.budget
        history = format_chat_history(history_messages) or "(no earlier messages)"
        return textwrap.dedent(
            """
            Today's date: {today}

            Conversation so far:
            {history}

            Latest user query:
            {query}

            Budget: propose at most {max_goals} goal(s),
            each with at most {max_queries} search query(ies).
            """
        ).strip().format(
            today=today_label(),
            history=history,
            query=query,
            max_goals=min(budget.initial_goals, budget.max_goals),
            max_queries=budget.seed_queries,
        )

    def _format_relevance_prompt(self, goal: Goal, entry: Dict[str, Any]) -> str:
        payload = entry.get("result", {})
        results = [
            {
                "title": trim_text(str(r.get("title", "")), 200),
                "url": r.get("url", ""),
                "snippet": trim_text(str(r.get("snippet", "")), 800),
            }
            for r in payload.get("results", [])
            if isinstance(r, dict)
        ]
        return textwrap.dedent(
            """
            Research goal:
            {goal}

            Search query:
            {query}

            Search results:
            {results}
            """
        ).strip().format(
            goal=goal.text,
            query=entry.get("query", ""),
            results=json.dumps(results, ensure_ascii=False),
        )

    def _format_reflection_prompt(
        self, state: SessionState, goal: Goal, new_angles: List[str]
    ) -> str:
        budget = self.budget
        others = [
            {"goal": g.text, "status": g.status}
            for g in list(state.active_goals) + state.completed_goals
        ]
        free_slots = max(0, budget.max_goals - state.goal_count() - 1)
        search_budget = min(len(goal.search_queries), budget.max_searches_per_goal)
        return textwrap.dedent(
            """
            Today's date: {today}

            User query:
            {query}

            Current goal:
            {goal}

            Searches attempted: {attempted} of {search_budget}
            Relevant results found so far: {relevant}

            New angles flagged during analysis:
            {angles}

            Other goals in the plan:
            {others}

            Room for new goals: {free_slots}
            """
        ).strip().format(
            today=today_label(),
            query=state.query,
            goal=goal.text,
            attempted=goal.searches_attempted,
            search_budget=search_budget,
            relevant=len(goal.relevant_results),
            angles=json.dumps(new_angles, ensure_ascii=False),
            others=json.dumps(others, ensure_ascii=False),
            free_slots=free_slots,
        )

    def _format_report_prompt(
        self,
        query: str,
        outcome: ResearchOutcome,
        history_messages: List[Dict[str, Any]],
    ) -> str:
        goals_by_id = {g.id: g.text for g in outcome.goals}
        evidence = []
        for item in outcome.evidence:
            payload = item.result if isinstance(item.result, dict) else {}
            evidence.append(
                {
                    "goal": goals_by_id.get(item.goal_id, ""),
                    "query": item.query,
                    "why_relevant": item.reason,
                    "search_answer": payload.get("answer"),
                    "sources": [
                        {
                            "title": r.get("title", ""),
                            "url": r.get("url", ""),
                            "snippet": trim_text(str(r.get("snippet", "")), 1200),
                        }
                        for r in payload.get("results", [])
                        if isinstance(r, dict)
                    ],
                    "images": list(payload.get("images") or [])[:4],
                }
            )
        evidence_text = (
            json.dumps(evidence, ensure_ascii=False)
            if evidence
            else "No relevant evidence was found. Say so explicitly and mark any general-knowledge statement as uncited."
        )
        history = format_chat_history(history_messages) or "(no earlier messages)"
        return textwrap.dedent(
            """
            Today's date: {today}

            Conversation so far:
            {history}

            Question:
            {query}

            Evidence:
            {evidence}
            """
        ).strip().format(today=today_label(), history=history, query=query, evidence=evidence_text)

    def _now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[progress] {message}")

    def _trace(self, state: SessionState, message: str) -> None:
        state.history.append(message)
        self._log(message)

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.event_callback:
            return
        event = {
            "run_id": self.run_id,
            "timestamp": self._now_iso(),
            "event_type": event_type,
            "payload": payload,
        }
        try:
            self.event_callback(event)
        except Exception:
            # Observability must not break core execution flow.
            pass


def main() -> None:
    parser = argparse.ArgumentParser(description="Goal-driven research chat agent")
    parser.add_argument("query", help="User query to research")
    parser.add_argument("--mode", choices=MODES, default="concise", help="Response mode")
    parser.add_argument(
        "--fast-model",
        default=os.getenv("OPENAI_FAST_MODEL", "gpt-4.1-mini"),
        help="Low-cost model used for relevance analysis",
    )
    parser.add_argument(
        "--deep-model",
        default=os.getenv("OPENAI_DEEP_MODEL", "gpt-4.1"),
        help="High-tier model used for planning, reflection and the final answer",
    )
    parser.add_argument(
        "--search-provider",
        choices=("tavily", "openai"),
        default=os.getenv("SEARCH_PROVIDER", "tavily"),
        help="Web search backend",
    )
    parser.add_argument(
        "--report-file",
        default="",
        help="Optional path for the final answer (markdown text)",
    )
    parser.add_argument("--quiet", action="store_true", help="Disable progress updates")
    args = parser.parse_args()

    problems = check_environment(args.search_provider)
    if problems:
        parser.error("; ".join(problems))

    agent = GoalResearchAgent(
        mode=args.mode,
        fast_model=args.fast_model,
        deep_model=args.deep_model,
        search_provider=args.search_provider,
        verbose=not args.quiet,
    )
    report = agent.run(args.query)
    if not report:
        raise SystemExit("No answer was generated.")
    if args.report_file:
        report_path = Path(args.report_file)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(report, encoding="utf-8")
        print(f"[report] saved: {report_path}")
    print(report)


if __name__ == "__main__":
    main()
