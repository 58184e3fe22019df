"""トグル定義 HTTP フェッチャー"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from .exceptions import ParseError, ToggleClientError, TransportError
from .models import FetchResult, Snapshot

USER_AGENT = "k1s0-toggle-client"


@dataclass
class FetcherConfig:
    """HTTP フェッチャー設定。url は末尾 / 付きの API ベース URL。"""

    url: str
    app_name: str
    instance_id: str
    project_name: str | None = None
    name_prefix: str | None = None
    tags: list[dict[str, str]] = field(default_factory=list)
    custom_headers: dict[str, str] = field(default_factory=dict)
    headers_provider: Callable[[], dict[str, str]] | None = None
    timeout_seconds: float = 10.0


class ToggleFetcher(ABC):
    """検証トークン付きでトグル定義を取得するトランスポート抽象。"""

    @abstractmethod
    async def fetch(self, etag: str | None) -> FetchResult:
        """トグル定義を取得する。

        Raises:
            TransportError: 通信失敗または想定外のステータス
            ParseError: レスポンスの解析失敗
        """
        ...


class HttpToggleFetcher(ToggleFetcher):
    """httpx を使ったトグル定義フェッチャー。"""

    def __init__(self, config: FetcherConfig) -> None:
        self._config = config

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._config.url,
            timeout=self._config.timeout_seconds,
        )

    def _headers(self, etag: str | None) -> dict[str, str]:
        headers: dict[str, str] = {
            "User-Agent": USER_AGENT,
            "UNLEASH-APPNAME": self._config.app_name,
            "UNLEASH-INSTANCEID": self._config.instance_id,
            **self._config.custom_headers,
        }
        if self._config.headers_provider is not None:
            headers.update(self._config.headers_provider())
        if etag:
            headers["If-None-Match"] = etag
        return headers

    def _params(self) -> list[tuple[str, str]]:
        params: list[tuple[str, str]] = []
        if self._config.project_name:
            params.append(("project", self._config.project_name))
        if self._config.name_prefix:
            params.append(("namePrefix", self._config.name_prefix))
        for tag in self._config.tags:
            params.append(("tag", f"{tag['name']}:{tag['value']}"))
        return params

    async def fetch(self, etag: str | None) -> FetchResult:
        try:
            async with self._make_client() as client:
                resp = await client.get(
                    "client/features",
                    headers=self._headers(etag),
                    params=self._params(),
                )
            if resp.status_code == 304:
                return FetchResult.not_modified()
            if not resp.is_success:
                raise TransportError(
                    f"fetch: HTTP {resp.status_code}: {resp.text}",
                    status_code=resp.status_code,
                )
            try:
                payload: Any = resp.json()
            except ValueError as e:
                raise ParseError(f"Failed to decode toggle response: {e}", cause=e) from e
            new_etag = resp.headers.get("ETag")
            snapshot = Snapshot.from_dict(payload)
            return FetchResult.updated(snapshot.with_meta(new_etag, snapshot.revision), new_etag)
        except ToggleClientError:
            raise
        except Exception as e:
            raise TransportError(f"Failed to fetch toggles: {e}", cause=e) from e
