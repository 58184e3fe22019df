"""一貫性ハッシュ

他言語の SDK およびサーバーと結果を共有するため、アルゴリズムは
MurmurHash3 x86 32bit（seed 0）と剰余で固定する。
"""

from __future__ import annotations

import random

import mmh3

DEFAULT_NORMALIZER = 100


def normalized_hash(
    identifier: str,
    group_id: str,
    normalizer: int = DEFAULT_NORMALIZER,
    seed: int = 0,
) -> int:
    """group_id と identifier を結合したキーを [0, normalizer) の整数に写像する。

    同じ入力に対して常に同じ値を返す。内部状態は持たない。
    """
    if normalizer <= 0:
        raise ValueError(f"normalizer must be positive: {normalizer}")
    key = f"{group_id}:{identifier}"
    return mmh3.hash(key, seed, signed=False) % normalizer


def random_stickiness() -> str:
    """識別可能なフィールドが無い場合のスティッキネス値を返す。

    評価ごとに値が変わるため、この値を使った評価結果は非決定的になる。
    """
    return str(random.randint(1, 100))
