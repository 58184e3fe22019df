"""利用状況メトリクスの集計と送信"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
from opentelemetry import metrics

from .events import EventEmitter, ToggleEvents
from .exceptions import ToggleClientError, TransportError
from .http_fetcher import USER_AGENT

logger = logging.getLogger(__name__)

_meter = metrics.get_meter("k1s0_toggle_client", version="0.1.0")

toggle_evaluations_total = _meter.create_counter(
    name="toggle_evaluations_total",
    description="Total number of feature toggle evaluations",
    unit="1",
)


@dataclass
class ToggleCount:
    """トグル単位の評価回数。"""

    yes: int = 0
    no: int = 0
    variants: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"yes": self.yes, "no": self.no, "variants": dict(self.variants)}


class MetricsBucket:
    """一回の送信間隔ぶんの評価回数。"""

    def __init__(self) -> None:
        self.start = datetime.now(timezone.utc)
        self.toggles: dict[str, ToggleCount] = {}

    def count(self, toggle_name: str, enabled: bool, amount: int = 1) -> None:
        entry = self.toggles.setdefault(toggle_name, ToggleCount())
        if enabled:
            entry.yes += amount
        else:
            entry.no += amount

    def count_variant(self, toggle_name: str, variant_name: str, amount: int = 1) -> None:
        entry = self.toggles.setdefault(toggle_name, ToggleCount())
        entry.variants[variant_name] = entry.variants.get(variant_name, 0) + amount

    def is_empty(self) -> bool:
        return not self.toggles

    def merge(self, other: MetricsBucket) -> None:
        """other の集計を取り込む。開始時刻は早い方を採用する。"""
        self.start = min(self.start, other.start)
        for name, counts in other.toggles.items():
            self.count(name, True, counts.yes)
            self.count(name, False, counts.no)
            for variant_name, amount in counts.variants.items():
                self.count_variant(name, variant_name, amount)

    def to_payload(self, stop: datetime) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "stop": stop.isoformat(),
            "toggles": {name: counts.to_dict() for name, counts in self.toggles.items()},
        }


@dataclass
class MetricsConfig:
    """メトリクス送信設定。url は末尾 / 付きの API ベース URL。"""

    url: str
    app_name: str
    instance_id: str
    strategies: list[str] = field(default_factory=list)
    interval_seconds: float = 60.0
    disabled: bool = False
    custom_headers: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 10.0


class MetricsReporter:
    """評価回数を集計し、一定間隔でサーバーへ送信する。

    送信に失敗した集計は次の送信間隔へ持ち越す。
    """

    def __init__(self, config: MetricsConfig, emitter: EventEmitter | None = None) -> None:
        self._config = config
        self._emitter = emitter or EventEmitter()
        self._bucket = MetricsBucket()
        self._lock = threading.Lock()
        self._started_at = datetime.now(timezone.utc)
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def bucket(self) -> MetricsBucket:
        return self._bucket

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._config.url,
            headers={
                "User-Agent": USER_AGENT,
                "UNLEASH-APPNAME": self._config.app_name,
                "UNLEASH-INSTANCEID": self._config.instance_id,
                **self._config.custom_headers,
            },
            timeout=self._config.timeout_seconds,
        )

    def count(self, toggle_name: str, enabled: bool) -> None:
        if self._config.disabled:
            return
        with self._lock:
            self._bucket.count(toggle_name, enabled)
        toggle_evaluations_total.add(1, {"toggle": toggle_name, "enabled": enabled})
        self._emitter.emit(ToggleEvents.COUNT, toggle_name, enabled)

    def count_variant(self, toggle_name: str, variant_name: str) -> None:
        if self._config.disabled:
            return
        with self._lock:
            self._bucket.count_variant(toggle_name, variant_name)

    async def start(self) -> None:
        """クライアント登録を行い、送信タスクを開始する。"""
        if self._config.disabled or self._running:
            return
        self._running = True
        await self.register()
        if self._config.interval_seconds > 0:
            self._task = asyncio.create_task(self._send_loop())

    async def stop(self) -> None:
        """送信タスクを停止する。"""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def register(self) -> bool:
        """クライアント情報をサーバーへ登録する。"""
        payload = {
            "appName": self._config.app_name,
            "instanceId": self._config.instance_id,
            "strategies": self._config.strategies,
            "started": self._started_at.isoformat(),
            "interval": int(self._config.interval_seconds * 1000),
        }
        try:
            await self._post("client/register", payload)
        except ToggleClientError as e:
            logger.error("Client registration failed", extra={"error": str(e)})
            self._emitter.emit(ToggleEvents.ERROR, e)
            return False
        self._emitter.emit(ToggleEvents.REGISTERED, payload)
        return True

    async def send_once(self) -> bool:
        """集計を一回送信する。空の集計は送らない。"""
        with self._lock:
            bucket, self._bucket = self._bucket, MetricsBucket()
        if bucket.is_empty():
            return False
        payload = {
            "appName": self._config.app_name,
            "instanceId": self._config.instance_id,
            "bucket": bucket.to_payload(datetime.now(timezone.utc)),
        }
        try:
            await self._post("client/metrics", payload)
        except ToggleClientError as e:
            with self._lock:
                bucket.merge(self._bucket)
                self._bucket = bucket
            logger.error("Metrics upload failed", extra={"error": str(e)})
            self._emitter.emit(ToggleEvents.ERROR, e)
            return False
        self._emitter.emit(ToggleEvents.SENT, payload)
        return True

    async def _post(self, path: str, payload: dict[str, Any]) -> None:
        try:
            async with self._make_client() as client:
                resp = await client.post(path, json=payload)
            if not resp.is_success:
                raise TransportError(
                    f"{path}: HTTP {resp.status_code}: {resp.text}",
                    status_code=resp.status_code,
                )
        except ToggleClientError:
            raise
        except Exception as e:
            raise TransportError(f"Failed to post {path}: {e}", cause=e) from e

    async def _send_loop(self) -> None:
        """送信ループ。"""
        while self._running:
            await asyncio.sleep(self._config.interval_seconds)
            try:
                await self.send_once()
            except Exception as e:
                logger.error("Metrics loop error", extra={"error": str(e)})
