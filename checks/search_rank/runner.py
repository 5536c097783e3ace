from sdk.check_base import CheckRunner, CheckMeta
from sdk.providers import SEARCH_RANK, registry as default_registry
from api.pricing import RANK_DEVICES, item_terms, search_rank_cost

class SearchRankCheck(CheckRunner):
    meta = CheckMeta("search_rank", "rank_tracking", "1.0.0")

    input_schema = {
        "type": "object",
        "properties": {
            "phrase": {"type": "string", "minLength": 1},
            "search_terms": {"type": "array", "items": {"type": "string"}},
            "target_domain": {"type": "string", "minLength": 1},
            "location_code": {"type": ["integer", "null"]},
        },
        "required": ["target_domain"],
        "anyOf": [{"required": ["phrase"]}, {"required": ["search_terms"]}],
        "additionalProperties": True,
    }

    def estimate_credits(self, item, providers):
        return search_rank_cost(item)

    def execute(self, ctx, item):
        provider = ctx.get("registry", default_registry).get_provider(SEARCH_RANK)
        terms = item_terms(item)
        if not terms:
            raise ValueError("item has no search terms")

        results, cost = [], 0.0
        for term in terms:
            for device in RANK_DEVICES:
                r = provider.check_rank(term, item.get("location_code"), item["target_domain"], device)
                cost += float(r.get("cost_usd") or 0.0)
                results.append({
                    "term": term,
                    "device": device,
                    "position": r.get("position"),
                    "url": r.get("url"),
                    "found": bool(r.get("found")),
                })

        found = [r["position"] for r in results if r["found"] and r["position"] is not None]
        return {"results": results, "best_position": min(found) if found else None}, cost
