from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import logging
import time
import jsonschema

from sdk.providers import ProviderError

logger = logging.getLogger(__name__)

@dataclass
class CheckMeta:
    sub_task: str
    feature_type: str
    version: str

@dataclass
class CheckResult:
    ok: bool
    metric: Dict[str, Any]
    error: Optional[str] = None
    retryable: bool = False
    cost_usd: float = 0.0
    latency_ms: Optional[int] = None

class CheckRunner:
    """
    One unit of metered external work for a single batch item.

    Subclasses set `meta` and `input_schema` and implement
    execute(ctx, item) -> (metric, cost_usd). ctx carries at least
    tenant_id, providers and the ProviderRegistry to use.
    """
    meta: CheckMeta
    input_schema: Dict[str, Any]

    def estimate_credits(self, item: Dict[str, Any], providers: List[str]) -> int:
        return 1

    def validate_input(self, item: Dict[str, Any]) -> None:
        jsonschema.validate(instance=item, schema=self.input_schema)

    def run(self, ctx: Dict[str, Any], item: Dict[str, Any]) -> CheckResult:
        start = time.time()
        try:
            self.validate_input(item)
            metric, cost = self.execute(ctx, item)
            latency = int((time.time() - start) * 1000)
            return CheckResult(ok=True, metric=metric, cost_usd=float(cost or 0.0), latency_ms=latency)
        except jsonschema.ValidationError as e:
            latency = int((time.time() - start) * 1000)
            return CheckResult(ok=False, metric={}, error=f"invalid item: {e.message}", latency_ms=latency)
        except ProviderError as e:
            latency = int((time.time() - start) * 1000)
            logger.warning("%s provider error (retryable=%s): %s", self.meta.sub_task, e.retryable, e)
            return CheckResult(ok=False, metric={}, error=str(e), retryable=e.retryable, latency_ms=latency)
        except Exception as e:
            latency = int((time.time() - start) * 1000)
            logger.warning("%s check failed: %s: %s", self.meta.sub_task, type(e).__name__, e)
            return CheckResult(ok=False, metric={}, error=str(e), latency_ms=latency)

    def execute(self, ctx: Dict[str, Any], item: Dict[str, Any]) -> Tuple[Dict[str, Any], float]:
        raise NotImplementedError
