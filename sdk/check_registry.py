from __future__ import annotations

from checks.search_rank.runner import SearchRankCheck
from checks.llm_visibility.runner import LLMVisibilityCheck
from checks.geo_grid.runner import GeoGridCheck
from checks.review_matching.runner import ReviewMatchingCheck
from db.models import SUB_TASKS

CHECK_IMPLS = {
    "search_rank": SearchRankCheck,
    "llm_visibility": LLMVisibilityCheck,
    "geo_grid": GeoGridCheck,
    "review_matching": ReviewMatchingCheck,
}

if tuple(CHECK_IMPLS) != SUB_TASKS:
    raise RuntimeError(f"check runners {tuple(CHECK_IMPLS)} do not match sub-tasks {SUB_TASKS}")
