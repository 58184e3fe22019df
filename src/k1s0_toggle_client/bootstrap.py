"""ブートストラップ（ネットワーク同期より前の初期スナップショット解決）"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from .exceptions import ParseError, ToggleClientError, TransportError
from .models import Snapshot

logger = logging.getLogger(__name__)


@dataclass
class BootstrapOptions:
    """ブートストラップ元の設定。

    data: トグル定義のリスト、またはスナップショット形式の辞書
    file_path: スナップショット形式の JSON ファイル
    url: スナップショット形式の JSON を返す URL
    """

    data: list[dict[str, Any]] | dict[str, Any] | None = None
    file_path: str | Path | None = None
    url: str | None = None
    url_headers: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 10.0

    def is_empty(self) -> bool:
        return self.data is None and not self.file_path and not self.url


def _snapshot_from_payload(payload: Any) -> Snapshot:
    if isinstance(payload, list):
        payload = {"version": 1, "features": payload}
    snapshot = Snapshot.from_dict(payload)
    # ブートストラップ由来の etag はサーバーの条件付き取得に使わない
    return snapshot.with_meta(etag=None, revision=0)


class BootstrapProvider:
    """インライン → ファイル → URL の順に初期スナップショットを解決する。

    各ソースの失敗は握りつぶさずログに残し、次のソースへ進む。
    """

    def __init__(
        self,
        options: BootstrapOptions,
        app_name: str = "",
        instance_id: str = "",
    ) -> None:
        self._options = options
        self._app_name = app_name
        self._instance_id = instance_id

    async def load(self) -> Snapshot | None:
        """最初に解析できたスナップショットを返す。全て失敗した場合は None。"""
        sources: list[tuple[str, Callable[[], Awaitable[Snapshot | None]]]] = [
            ("data", self._load_data),
            ("file", self._load_file),
            ("url", self._load_url),
        ]
        for source, loader in sources:
            try:
                snapshot = await loader()
            except ToggleClientError as e:
                logger.debug(
                    "Bootstrap source failed, trying next",
                    extra={"source": source, "error": str(e)},
                )
                continue
            if snapshot is not None:
                logger.info(
                    "Bootstrap snapshot resolved",
                    extra={"source": source, "toggles": len(snapshot.toggles)},
                )
                return snapshot
        return None

    async def _load_data(self) -> Snapshot | None:
        if self._options.data is None:
            return None
        return _snapshot_from_payload(self._options.data)

    async def _load_file(self) -> Snapshot | None:
        if not self._options.file_path:
            return None
        path = Path(self._options.file_path)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ParseError(f"Failed to read bootstrap file: {path}", cause=e) from e
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"Failed to parse bootstrap file: {path}", cause=e) from e
        return _snapshot_from_payload(payload)

    async def _load_url(self) -> Snapshot | None:
        if not self._options.url:
            return None
        headers = {
            "UNLEASH-APPNAME": self._app_name,
            "UNLEASH-INSTANCEID": self._instance_id,
            **self._options.url_headers,
        }
        try:
            async with httpx.AsyncClient(timeout=self._options.timeout_seconds) as client:
                resp = await client.get(self._options.url, headers=headers)
            resp.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError(
                f"Failed to fetch bootstrap from {self._options.url}: {e}", cause=e
            ) from e
        try:
            payload = resp.json()
        except ValueError as e:
            raise ParseError(f"Failed to parse bootstrap response: {e}", cause=e) from e
        return _snapshot_from_payload(payload)


def resolve_bootstrap_provider(
    options: BootstrapOptions | None,
    app_name: str,
    instance_id: str,
) -> BootstrapProvider | None:
    """設定されたソースが無ければ None を返す。"""
    if options is None or options.is_empty():
        return None
    return BootstrapProvider(options, app_name=app_name, instance_id=instance_id)
