from sdk.check_base import CheckRunner, CheckMeta
from sdk.providers import LLM_VISIBILITY, registry as default_registry
from api.errors import CheckExecutionFailure
from api.pricing import llm_visibility_cost

class LLMVisibilityCheck(CheckRunner):
    meta = CheckMeta("llm_visibility", "llm_visibility", "1.0.0")

    input_schema = {
        "type": "object",
        "properties": {
            "questions": {"type": "array", "items": {"type": "string", "minLength": 1}, "minItems": 1},
            "target_domain": {"type": "string", "minLength": 1},
        },
        "required": ["questions", "target_domain"],
        "additionalProperties": True,
    }

    def estimate_credits(self, item, providers):
        return llm_visibility_cost(item, providers)

    def execute(self, ctx, item):
        providers = ctx.get("providers") or []
        if not providers:
            raise CheckExecutionFailure(self.meta.sub_task, "no LLM providers selected")
        client = ctx.get("registry", default_registry).get_provider(LLM_VISIBILITY)

        results, cost = [], 0.0
        for question in item["questions"]:
            for provider in providers:
                r = client.check_citation(question, provider, item["target_domain"])
                cost += float(r.get("cost_usd") or 0.0)
                results.append({
                    "question": question,
                    "provider": provider,
                    "cited": bool(r.get("cited")),
                    "position": r.get("position"),
                    "url": r.get("url"),
                    "total_citations": int(r.get("total_citations") or 0),
                })

        return {"results": results, "cited_count": sum(1 for r in results if r["cited"])}, cost
