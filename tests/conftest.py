"""toggle_client テスト共通フィクスチャ"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest
from k1s0_toggle_client.exceptions import TransportError
from k1s0_toggle_client.http_fetcher import ToggleFetcher
from k1s0_toggle_client.models import FetchResult, Snapshot


class FakeFetcher(ToggleFetcher):
    """レスポンスを順に返すフェッチャー。最後のレスポンスは繰り返し返す。"""

    def __init__(self, results: list[FetchResult | Exception]) -> None:
        self._results = list(results)
        self.etags: list[str | None] = []
        self.gate: asyncio.Event | None = None

    @property
    def call_count(self) -> int:
        return len(self.etags)

    async def fetch(self, etag: str | None) -> FetchResult:
        self.etags.append(etag)
        if self.gate is not None:
            await self.gate.wait()
        if not self._results:
            raise TransportError("no response configured")
        item = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(item, Exception):
            raise item
        return item


def make_snapshot(features: list[dict[str, Any]], version: int = 1) -> Snapshot:
    return Snapshot.from_dict({"version": version, "features": features})


@pytest.fixture
def fetcher_factory() -> Callable[..., FakeFetcher]:
    def factory(*results: FetchResult | Exception) -> FakeFetcher:
        return FakeFetcher(list(results))

    return factory


@pytest.fixture
def updated() -> Callable[..., FetchResult]:
    """トグル定義のリストから UPDATED の FetchResult を作る。"""

    def factory(features: list[dict[str, Any]], etag: str | None = None) -> FetchResult:
        return FetchResult.updated(make_snapshot(features), etag)

    return factory
