from __future__ import annotations
from typing import Any, Dict, List

LLM_PROVIDERS = ("chatgpt", "perplexity", "gemini", "claude")
LLM_CREDIT_COSTS = {p: 1 for p in LLM_PROVIDERS}

RANK_DEVICES = ("desktop", "mobile")
RANK_CREDIT_COST = 1          # per term per device
REVIEW_MATCH_CREDIT_COST = 1  # per item

GEOGRID_BASE_COST = 10

def calculate_geogrid_cost(grid_size: int, keyword_count: int = 1) -> int:
    """base + one credit per grid point + two per tracked keyword"""
    return GEOGRID_BASE_COST + int(grid_size) * int(grid_size) + 2 * int(keyword_count)

def item_terms(item: Dict[str, Any]) -> List[str]:
    terms = [t for t in (item.get("search_terms") or []) if t]
    if not terms and item.get("phrase"):
        terms = [item["phrase"]]
    return terms

def search_rank_cost(item: Dict[str, Any]) -> int:
    return RANK_CREDIT_COST * len(RANK_DEVICES) * len(item_terms(item))

def llm_visibility_cost(item: Dict[str, Any], providers: List[str]) -> int:
    per_question = sum(LLM_CREDIT_COSTS.get(p, 0) for p in providers)
    return per_question * len(item.get("questions") or [])

def geo_grid_cost(item: Dict[str, Any]) -> int:
    terms = item_terms(item)
    if not terms or not item.get("center"):
        return 0
    return calculate_geogrid_cost(int(item.get("grid_size", 3)), len(terms))

def review_matching_cost(item: Dict[str, Any]) -> int:
    return REVIEW_MATCH_CREDIT_COST

def estimate_run_cost(items: List[Dict[str, Any]], sub_tasks: List[str], providers: List[str]) -> Dict[str, Any]:
    from sdk.check_registry import CHECK_IMPLS

    breakdown: Dict[str, int] = {}
    for sub_task in sub_tasks:
        runner = CHECK_IMPLS[sub_task]()
        breakdown[sub_task] = sum(runner.estimate_credits(it, providers) for it in items)
    return {"breakdown": breakdown, "total": sum(breakdown.values())}
