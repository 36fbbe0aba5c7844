import copy
import hashlib
import json
from typing import Any, Dict, List, Optional

EMPTY_CONTENT_HASH = "empty"


def normalize_url(url: Any) -> Any:
    """
    Equality key for URL-based dedup.
    "https://www.Example.com/a/" and "example.com/a" normalize to the same key.
    Non-string input is returned unchanged.
    """
    if not isinstance(url, str):
        return url
    key = url.lower()
    previous = None
    # Repeat until stable so that normalize(normalize(u)) == normalize(u).
    while key != previous:
        previous = key
        key = key.strip().rstrip("/")
        for scheme in ("https://", "http://"):
            if key.startswith(scheme):
                key = key[len(scheme) :]
                break
        if key.startswith("www."):
            key = key[len("www.") :]
    return key


def _entry_url(entry: Any) -> str:
    if isinstance(entry, dict):
        url = entry.get("url")
    elif isinstance(entry, str):
        # Tavily returns images as bare URL strings unless descriptions are requested.
        url = entry
    else:
        url = None
    if not isinstance(url, str) or not url:
        return ""
    return normalize_url(url)


def _first_wins(items: List[Any]) -> List[Any]:
    seen: set[str] = set()
    out: List[Any] = []
    for item in items:
        key = _entry_url(item)
        if not key:
            out.append(item)
            continue
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def dedupe_search_response(response: Any) -> Any:
    if not isinstance(response, dict) or not isinstance(response.get("results"), list):
        return response
    deduped = dict(response)
    deduped["results"] = _first_wins(response["results"])
    if isinstance(response.get("images"), list):
        deduped["images"] = _first_wins(response["images"])
    return deduped


def content_hash(results: Optional[List[Any]]) -> str:
    if not isinstance(results, list) or not results:
        return EMPTY_CONTENT_HASH
    # Entries sharing a URL key (or lacking one) are ordered by their own
    # serialization so the digest does not depend on input order.
    ordered = sorted(
        copy.deepcopy(results),
        key=lambda e: (_entry_url(e), json.dumps(e, sort_keys=True, ensure_ascii=False, default=str)),
    )
    payload = json.dumps(ordered, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _evidence_results(item: Any) -> Optional[List[Any]]:
    payload = item.get("result") if isinstance(item, dict) else getattr(item, "result", None)
    if not isinstance(payload, dict):
        return None
    results = payload.get("results")
    if not isinstance(results, list):
        return None
    return results


def dedupe_evidence(items: List[Any]) -> List[Any]:
    seen: set[str] = set()
    out: List[Any] = []
    for item in items:
        results = _evidence_results(item)
        if results is None:
            out.append(item)
            continue
        key = content_hash(results)
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def dedupe_batch_responses(responses: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Collapse one search batch: intra-dedup each response, drop the ones left
    empty, then keep a single response per content hash.
    Each entry is {"query": str, "result": payload}; order is preserved.
    """
    seen: set[str] = set()
    out: List[Dict[str, Any]] = []
    for entry in responses:
        payload = dedupe_search_response(entry.get("result"))
        if not isinstance(payload, dict):
            continue
        results = payload.get("results")
        if not isinstance(results, list) or not results:
            continue
        key = content_hash(results)
        if key in seen:
            continue
        seen.add(key)
        out.append({"query": entry.get("query", ""), "result": payload, "content_hash": key})
    return out
