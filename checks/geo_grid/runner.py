import math
from typing import List, Tuple

from sdk.check_base import CheckRunner, CheckMeta
from sdk.providers import GEO_GRID, registry as default_registry
from api.pricing import geo_grid_cost, item_terms

KM_PER_DEGREE_LAT = 111.32

def grid_points(lat: float, lng: float, grid_size: int, spacing_km: float) -> List[Tuple[float, float]]:
    """grid_size x grid_size points centred on (lat, lng), row by row from the north-west corner."""
    half = (grid_size - 1) / 2.0
    km_per_degree_lng = KM_PER_DEGREE_LAT * max(math.cos(math.radians(lat)), 1e-6)
    points = []
    for row in range(grid_size):
        for col in range(grid_size):
            dy = (half - row) * spacing_km
            dx = (col - half) * spacing_km
            points.append((round(lat + dy / KM_PER_DEGREE_LAT, 6), round(lng + dx / km_per_degree_lng, 6)))
    return points

class GeoGridCheck(CheckRunner):
    meta = CheckMeta("geo_grid", "geo_grid", "1.0.0")

    input_schema = {
        "type": "object",
        "properties": {
            "phrase": {"type": "string", "minLength": 1},
            "search_terms": {"type": "array", "items": {"type": "string"}},
            "target_place_id": {"type": "string", "minLength": 1},
            "center": {
                "type": "object",
                "properties": {"lat": {"type": "number"}, "lng": {"type": "number"}},
                "required": ["lat", "lng"],
            },
            "grid_size": {"type": "integer", "minimum": 1, "maximum": 9},
            "spacing_km": {"type": "number", "exclusiveMinimum": 0},
        },
        "required": ["target_place_id", "center"],
        "anyOf": [{"required": ["phrase"]}, {"required": ["search_terms"]}],
        "additionalProperties": True,
    }

    def estimate_credits(self, item, providers):
        return geo_grid_cost(item)

    def execute(self, ctx, item):
        provider = ctx.get("registry", default_registry).get_provider(GEO_GRID)
        terms = item_terms(item)
        if not terms:
            raise ValueError("item has no search terms")
        center = item["center"]
        points = grid_points(center["lat"], center["lng"], int(item.get("grid_size", 3)), float(item.get("spacing_km", 1.0)))

        results, cost = [], 0.0
        for term in terms:
            for lat, lng in points:
                r = provider.check_point(term, lat, lng, item["target_place_id"])
                cost += float(r.get("cost_usd") or 0.0)
                results.append({"term": term, "lat": lat, "lng": lng, "position": r.get("position")})

        ranked = [r["position"] for r in results if r["position"] is not None]
        return {
            "points": results,
            "average_position": round(sum(ranked) / len(ranked), 2) if ranked else None,
            "top3_points": sum(1 for p in ranked if p <= 3),
        }, cost
