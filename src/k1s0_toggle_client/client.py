"""ToggleClient: Repository と StrategyEngine をまとめる薄いファサード"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any

from .bootstrap import BootstrapOptions, resolve_bootstrap_provider
from .config import ToggleClientConfig, clean_url, default_instance_id, parse_config
from .context import Context
from .engine import StrategyEngine
from .events import EventEmitter, EventHandler, ToggleEvents
from .http_fetcher import FetcherConfig, HttpToggleFetcher, ToggleFetcher
from .metrics import MetricsConfig, MetricsReporter
from .models import (
    EvaluationReason,
    EvaluationResult,
    ToggleDefinition,
    Variant,
    disabled_variant,
)
from .repository import Repository, RepositoryConfig
from .storage import FileStorageProvider, StorageProvider
from .strategies import StrategyPredicate
from .variants import select_variant

logger = logging.getLogger(__name__)

FallbackFunction = Callable[[str, Context], bool]


class ToggleClient:
    """フィーチャートグルクライアント。

    評価はメモリ上のスナップショットだけを参照し、ネットワーク I/O で待たされない。
    Repository の準備ができる前の評価は fallback を返し、warning イベントを発行する。
    """

    def __init__(
        self,
        config: ToggleClientConfig | dict[str, Any],
        *,
        repository: Repository | None = None,
        fetcher: ToggleFetcher | None = None,
        storage: StorageProvider | None = None,
        strategies: Mapping[str, StrategyPredicate] | None = None,
    ) -> None:
        if isinstance(config, dict):
            config = parse_config(config)
        self._config = config
        url, url_warning = clean_url(config.url)
        self._pending_warnings: list[str] = [url_warning] if url_warning else []
        self._instance_id = default_instance_id(config.instance_id)

        if repository is None:
            self._emitter = EventEmitter()
            repository = Repository(
                fetcher or HttpToggleFetcher(
                    FetcherConfig(
                        url=url,
                        app_name=config.app_name,
                        instance_id=self._instance_id,
                        project_name=config.project_name,
                        name_prefix=config.name_prefix,
                        tags=[tag.model_dump() for tag in config.tags],
                        custom_headers=config.custom_headers,
                        timeout_seconds=config.timeout,
                    )
                ),
                storage=storage or FileStorageProvider(config.backup_path, config.app_name),
                bootstrap=resolve_bootstrap_provider(
                    BootstrapOptions(
                        data=config.bootstrap.data,
                        file_path=config.bootstrap.file_path,
                        url=config.bootstrap.url,
                        url_headers=config.bootstrap.url_headers,
                        timeout_seconds=config.timeout,
                    ),
                    app_name=config.app_name,
                    instance_id=self._instance_id,
                ),
                config=RepositoryConfig(
                    refresh_interval=config.refresh_interval,
                    refresh_jitter=config.refresh_jitter,
                    initial_snapshot_priority=config.initial_snapshot_priority,
                    first_sync_timeout=config.first_sync_timeout,
                ),
                emitter=self._emitter,
            )
        else:
            self._emitter = repository.emitter
        self._repository = repository

        self._engine = StrategyEngine(strategies, emitter=self._emitter)
        self._metrics = MetricsReporter(
            MetricsConfig(
                url=url,
                app_name=config.app_name,
                instance_id=self._instance_id,
                strategies=self._engine.strategy_names,
                interval_seconds=config.metrics_interval,
                disabled=config.disable_metrics,
                custom_headers=config.custom_headers,
                timeout_seconds=config.timeout,
            ),
            emitter=self._emitter,
        )

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def repository(self) -> Repository:
        return self._repository

    @property
    def metrics(self) -> MetricsReporter:
        return self._metrics

    @property
    def is_ready(self) -> bool:
        return self._repository.is_ready

    def on(self, event: str, handler: EventHandler) -> None:
        """イベントにハンドラーを登録する。"""
        self._emitter.on(event, handler)

    async def start(self) -> None:
        """同期とメトリクス送信を開始する。最初の同期ティックの完了まで待つ。"""
        for message in self._pending_warnings:
            logger.warning(message)
            self._emitter.emit(ToggleEvents.WARNING, message)
        self._pending_warnings.clear()
        await asyncio.gather(self._repository.start(), self._metrics.start())

    async def stop(self) -> None:
        await asyncio.gather(self._repository.stop(), self._metrics.stop())

    def _with_static_context(self, context: Context | None) -> Context:
        return (context or Context()).with_defaults(
            app_name=self._config.app_name, environment=self._config.environment
        )

    def evaluate(
        self,
        name: str,
        context: Context | None = None,
        fallback: bool | FallbackFunction = False,
    ) -> EvaluationResult:
        """トグルを評価する。データが無い場合は fallback の値を返す。例外は送出しない。"""
        ctx = self._with_static_context(context)

        def fallback_result(reason: str) -> EvaluationResult:
            if not callable(fallback):
                return EvaluationResult(name, bool(fallback), None, reason)
            try:
                enabled = bool(fallback(name, ctx))
            except Exception as e:
                logger.warning("Fallback function failed", extra={"toggle": name})
                self._emitter.emit(ToggleEvents.WARNING, f"Fallback for {name} failed: {e}")
                enabled = False
            return EvaluationResult(name, enabled, None, reason)

        if not self._repository.is_ready:
            result = fallback_result(EvaluationReason.NOT_READY)
            self._emitter.emit(
                ToggleEvents.WARNING,
                f"Toggle client has not been initialized yet. "
                f"is_enabled({name}) defaulted to {result.enabled}",
            )
            return result
        toggle = self._repository.get_toggle(name)
        if toggle is None:
            return fallback_result(EvaluationReason.NOT_FOUND)
        return self._engine.evaluate(toggle, ctx)

    def is_enabled(
        self,
        name: str,
        context: Context | None = None,
        fallback: bool | FallbackFunction = False,
    ) -> bool:
        enabled = self.evaluate(name, context, fallback).enabled
        self._metrics.count(name, enabled)
        return enabled

    def get_variant(
        self,
        name: str,
        context: Context | None = None,
        fallback_variant: Variant | None = None,
    ) -> Variant:
        """有効なトグルのバリアントを返す。無効・未選択時は fallback_variant。"""
        result = self.evaluate(name, context)
        variant = result.variant if result.enabled else None
        return self._count_variant(name, result.enabled, variant, fallback_variant)

    def force_get_variant(
        self,
        name: str,
        context: Context | None = None,
        fallback_variant: Variant | None = None,
    ) -> Variant:
        """トグルの有効状態を確認せずにバリアントを選ぶ。"""
        toggle = self._repository.get_toggle(name) if self._repository.is_ready else None
        variant = None
        if toggle is not None:
            variant = select_variant(toggle, self._with_static_context(context))
        return self._count_variant(name, variant is not None, variant, fallback_variant)

    def _count_variant(
        self,
        name: str,
        enabled: bool,
        variant: Variant | None,
        fallback_variant: Variant | None,
    ) -> Variant:
        self._metrics.count(name, enabled)
        if variant is None:
            return fallback_variant if fallback_variant is not None else disabled_variant()
        self._metrics.count_variant(name, variant.name)
        return variant

    def get_toggle_definition(self, name: str) -> ToggleDefinition | None:
        return self._repository.get_toggle(name)

    def get_toggle_definitions(self) -> list[ToggleDefinition]:
        return self._repository.get_toggles()
