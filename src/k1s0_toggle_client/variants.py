"""バリアント選択"""

from __future__ import annotations

from .context import Context
from .hashing import normalized_hash, random_stickiness
from .models import ToggleDefinition, Variant
from .strategies import resolve_stickiness


def _overridden_variant(variants: tuple[Variant, ...], context: Context) -> Variant | None:
    for variant in variants:
        for override in variant.overrides:
            value = context.get_field(override.context_name)
            if value is not None and value in override.values:
                return variant
    return None


def select_variant(toggle: ToggleDefinition, context: Context) -> Variant | None:
    """トグルのバリアントを一つ選ぶ。

    オーバーライドに一致するバリアントがあればそれを優先し、無ければ
    スティッキネスキーのハッシュを重みの累積区間に当てはめて選ぶ。
    バリアントが無い、または重みの合計が 0 の場合は None。
    """
    if not toggle.variants:
        return None
    total_weight = sum(max(v.weight, 0) for v in toggle.variants)
    if total_weight <= 0:
        return None

    forced = _overridden_variant(toggle.variants, context)
    if forced is not None:
        return forced

    stickiness_value = resolve_stickiness(toggle.variants[0].stickiness, context)
    if stickiness_value is None:
        stickiness_value = random_stickiness()
    target = normalized_hash(stickiness_value, toggle.name, total_weight)

    upper_bound = 0
    for variant in toggle.variants:
        if variant.weight <= 0:
            continue
        upper_bound += variant.weight
        if target < upper_bound:
            return variant
    return None
