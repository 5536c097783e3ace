import re
from typing import Any, Dict, List

from sdk.check_base import CheckRunner, CheckMeta
from sdk.providers import REVIEWS, registry as default_registry
from api.pricing import review_matching_cost

SENTIMENTS = ("positive", "neutral", "negative")

def derive_sentiment(star_rating: Any) -> str:
    # unrated reviews count as positive
    if not star_rating:
        return "positive"
    rating = int(star_rating)
    if rating <= 2:
        return "negative"
    if rating == 3:
        return "neutral"
    return "positive"

def review_text(review: Dict[str, Any]) -> str:
    return (review.get("review_content") or review.get("review_text_copy") or "").strip()

def phrase_patterns(phrases: List[str]) -> List[re.Pattern]:
    return [re.compile(r"\b" + re.escape(p.strip()) + r"\b", re.IGNORECASE) for p in phrases if p and p.strip()]

class ReviewMatchingCheck(CheckRunner):
    meta = CheckMeta("review_matching", "review_matching", "1.0.0")

    input_schema = {
        "type": "object",
        "properties": {
            "phrase": {"type": "string", "minLength": 1},
            "aliases": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["phrase"],
        "additionalProperties": True,
    }

    def estimate_credits(self, item, providers):
        return review_matching_cost(item)

    def execute(self, ctx, item):
        source = ctx.get("registry", default_registry).get_provider(REVIEWS)
        patterns = phrase_patterns([item["phrase"]] + list(item.get("aliases") or []))

        scanned, matched = 0, 0
        by_sentiment = {s: 0 for s in SENTIMENTS}
        for review in source.fetch_reviews(ctx["tenant_id"]):
            text = review_text(review)
            if not text:
                continue
            scanned += 1
            if any(p.search(text) for p in patterns):
                matched += 1
                by_sentiment[derive_sentiment(review.get("star_rating"))] += 1

        return {"reviews_scanned": scanned, "matches_found": matched, "by_sentiment": by_sentiment}, 0.0
