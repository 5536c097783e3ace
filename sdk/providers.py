"""
Contracts for the third-party services the check runners pay for.

Concrete clients live outside this service. They are plugged in at startup
with `registry.set_provider(name, impl)`; tests register fakes the same way.
"""
from __future__ import annotations
import threading
from typing import Any, Dict, List, Optional, Protocol

from api.errors import CheckExecutionFailure

SEARCH_RANK = "search_rank"
LLM_VISIBILITY = "llm_visibility"
GEO_GRID = "geo_grid"
REVIEWS = "reviews"

class ProviderError(Exception):
    """Raised by provider clients. retryable=True for timeouts, 429s and 5xx."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable

class SearchRankProvider(Protocol):
    def check_rank(self, term: str, location_code: Optional[int], target_domain: str, device: str) -> Dict[str, Any]:
        """-> {position, url, found, cost_usd}"""
        ...

class LLMVisibilityProvider(Protocol):
    def check_citation(self, question: str, provider: str, target_domain: str) -> Dict[str, Any]:
        """-> {cited, position, url, total_citations, cost_usd}"""
        ...

class GeoGridProvider(Protocol):
    def check_point(self, term: str, lat: float, lng: float, target_place_id: str) -> Dict[str, Any]:
        """-> {position, cost_usd}"""
        ...

class ReviewSource(Protocol):
    def fetch_reviews(self, tenant_id: str) -> List[Dict[str, Any]]:
        ...

class ProviderRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._providers: Dict[str, Any] = {}

    def set_provider(self, name: str, impl: Any) -> None:
        with self._lock:
            self._providers[name] = impl

    def get_provider(self, name: str) -> Any:
        with self._lock:
            impl = self._providers.get(name)
        if impl is None:
            raise CheckExecutionFailure(name, f"{name} provider not configured")
        return impl

    def clear(self) -> None:
        with self._lock:
            self._providers.clear()

registry = ProviderRegistry()
