"""Repository: トグルスナップショットの保持と同期

状態遷移: UNINITIALIZED → BOOTSTRAPPING → SYNCHRONIZING ⇄ SYNCHRONIZED / STALE、終端 STOPPED。

スナップショットは不変オブジェクトの参照を丸ごと差し替えるため、評価側はロック無しで
旧スナップショットか新スナップショットのどちらか一方だけを観測する。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from enum import StrEnum

from .bootstrap import BootstrapProvider
from .events import EventEmitter, EventHandler, ToggleEvents
from .exceptions import PersistenceError, ToggleClientError
from .http_fetcher import ToggleFetcher
from .models import FetchStatus, Snapshot, ToggleDefinition
from .storage import StorageProvider

logger = logging.getLogger(__name__)


class RepositoryState(StrEnum):
    """Repository の状態。"""

    UNINITIALIZED = "uninitialized"
    BOOTSTRAPPING = "bootstrapping"
    SYNCHRONIZING = "synchronizing"
    SYNCHRONIZED = "synchronized"
    STALE = "stale"
    STOPPED = "stopped"


class InitialSnapshotPriority(StrEnum):
    """起動時にブートストラップと永続化済みスナップショットのどちらを優先するか。"""

    BOOTSTRAP = "bootstrap"
    PERSISTED = "persisted"


@dataclass
class RepositoryConfig:
    """Repository 設定。

    refresh_interval が 0 以下の場合は起動時に一度だけ同期し、定期ポーリングしない。
    """

    refresh_interval: float = 15.0
    refresh_jitter: float = 0.0
    initial_snapshot_priority: InitialSnapshotPriority = InitialSnapshotPriority.BOOTSTRAP
    first_sync_timeout: float | None = None


def changed_toggle_names(old: Snapshot | None, new: Snapshot) -> set[str]:
    """追加・削除・変更されたトグル名を返す。"""
    old_map = {t.name: t for t in old.toggles} if old is not None else {}
    new_map = {t.name: t for t in new.toggles}
    return {
        name
        for name in old_map.keys() | new_map.keys()
        if old_map.get(name) != new_map.get(name)
    }


class Repository:
    """トグル定義リポジトリ。

    単一の asyncio タスクが同期ティックを駆動する。前回のティックが完了していなければ
    次のティックはスキップされるため、サーバーへの同時リクエストは高々一つ。
    """

    def __init__(
        self,
        fetcher: ToggleFetcher,
        storage: StorageProvider | None = None,
        bootstrap: BootstrapProvider | None = None,
        config: RepositoryConfig | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._storage = storage
        self._bootstrap = bootstrap
        self._config = config or RepositoryConfig()
        self._emitter = emitter or EventEmitter()
        self._snapshot: Snapshot | None = None
        self._state = RepositoryState.UNINITIALIZED
        self._task: asyncio.Task[None] | None = None
        self._tick_lock = asyncio.Lock()
        self._first_tick_done = asyncio.Event()
        self._epoch = 0
        self._revision = 0
        self._ready = False
        self._synchronized = False

    @property
    def emitter(self) -> EventEmitter:
        return self._emitter

    @property
    def state(self) -> RepositoryState:
        return self._state

    @property
    def snapshot(self) -> Snapshot | None:
        return self._snapshot

    @property
    def is_ready(self) -> bool:
        """評価に使えるスナップショットを保持しているか。"""
        return self._ready

    @property
    def is_synchronized(self) -> bool:
        return self._synchronized

    def on(self, event: str, handler: EventHandler) -> None:
        self._emitter.on(event, handler)

    def get_toggle(self, name: str) -> ToggleDefinition | None:
        """現在のスナップショットからトグル定義を取得する。I/O は行わない。"""
        snapshot = self._snapshot
        if snapshot is None:
            return None
        return snapshot.get(name)

    def get_toggles(self) -> list[ToggleDefinition]:
        """現在のスナップショットに含まれるトグル定義の一覧を返す。"""
        snapshot = self._snapshot
        if snapshot is None:
            return []
        return list(snapshot.toggles)

    async def start(self) -> None:
        """初期スナップショットを解決し、ポーリングを開始する。

        最初の同期ティックが成功または失敗で完了するまで待つ。
        first_sync_timeout を過ぎた場合は待たずに戻り、ポーリングは継続する。
        """
        if self._task is not None:
            return
        self._epoch += 1
        epoch = self._epoch
        self._first_tick_done.clear()

        if self._snapshot is None:
            self._state = RepositoryState.BOOTSTRAPPING
            await self._load_initial()
        if epoch != self._epoch:
            return

        self._state = RepositoryState.SYNCHRONIZING
        self._task = asyncio.create_task(self._poll_loop(epoch))
        try:
            await asyncio.wait_for(
                self._first_tick_done.wait(), timeout=self._config.first_sync_timeout
            )
        except TimeoutError:
            logger.warning(
                "First synchronization did not complete in time",
                extra={"timeout": self._config.first_sync_timeout},
            )
            self._emitter.emit(
                ToggleEvents.WARNING,
                f"First synchronization did not complete within "
                f"{self._config.first_sync_timeout}s",
            )

    async def stop(self) -> None:
        """ポーリングを停止する。複数回呼んでも安全。

        実行中のティックの結果は破棄され、状態を変更しない。
        """
        self._epoch += 1
        self._state = RepositoryState.STOPPED
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._first_tick_done.set()

    async def sync_once(self) -> bool:
        """同期ティックを一回実行する。

        Returns:
            同期に成功した（未変更を含む）場合 True。失敗・スキップ・破棄時は False。
        """
        if self._state == RepositoryState.STOPPED:
            return False
        if self._tick_lock.locked():
            logger.debug("Synchronization already in progress, skipping tick")
            return False
        async with self._tick_lock:
            epoch = self._epoch
            snapshot = self._snapshot
            etag = snapshot.etag if snapshot is not None else None
            try:
                result = await self._fetcher.fetch(etag)
            except ToggleClientError as e:
                if epoch == self._epoch:
                    self._on_failure(e)
                return False
            if epoch != self._epoch:
                logger.debug("Discarding response fetched before stop")
                return False

            if result.status == FetchStatus.NOT_MODIFIED:
                logger.debug("Toggles not modified", extra={"etag": etag})
                self._emitter.emit(ToggleEvents.UNCHANGED)
            elif result.snapshot is not None:
                await self._apply(result.snapshot, result.etag)
            if epoch != self._epoch:
                return False
            self._mark_synchronized()
            return True

    async def _poll_loop(self, epoch: int) -> None:
        """ポーリングループ。"""
        while epoch == self._epoch:
            try:
                await self.sync_once()
            except Exception as e:
                logger.exception("Toggle synchronization error")
                self._emitter.emit(ToggleEvents.ERROR, e)
            self._first_tick_done.set()
            if self._config.refresh_interval <= 0:
                return
            await asyncio.sleep(self._next_delay())

    def _next_delay(self) -> float:
        jitter = self._config.refresh_jitter
        if jitter > 0:
            return self._config.refresh_interval + random.uniform(0, jitter)
        return self._config.refresh_interval

    async def _load_initial(self) -> None:
        persisted: Snapshot | None = None
        if self._storage is not None:
            try:
                persisted = await self._storage.load()
            except ToggleClientError as e:
                self._warn(f"Failed to load persisted snapshot: {e}")

        bootstrapped: Snapshot | None = None
        use_bootstrap = (
            persisted is None
            or self._config.initial_snapshot_priority == InitialSnapshotPriority.BOOTSTRAP
        )
        if self._bootstrap is not None and use_bootstrap:
            bootstrapped = await self._bootstrap.load()

        if bootstrapped is not None:
            self._revision = persisted.revision if persisted is not None else 0
            self._snapshot = bootstrapped.with_meta(etag=None, revision=self._revision)
            await self._persist(self._snapshot)
            self._set_ready()
        elif persisted is not None:
            self._revision = persisted.revision
            self._snapshot = persisted
            self._set_ready()

    async def _apply(self, snapshot: Snapshot, etag: str | None) -> None:
        previous = self._snapshot
        self._revision += 1
        current = snapshot.with_meta(etag=etag, revision=self._revision)
        changed = changed_toggle_names(previous, current)
        self._snapshot = current
        logger.info(
            "Toggle snapshot replaced",
            extra={
                "revision": current.revision,
                "toggles": len(current.toggles),
                "changed": len(changed),
            },
        )
        await self._persist(current)
        self._set_ready()
        self._emitter.emit(ToggleEvents.CHANGED, sorted(changed))

    async def _persist(self, snapshot: Snapshot) -> None:
        if self._storage is None:
            return
        try:
            await self._storage.save(snapshot)
        except PersistenceError as e:
            self._warn(f"Failed to persist snapshot: {e}")
        except Exception as e:
            self._warn(str(PersistenceError(f"Failed to persist snapshot: {e}", cause=e)))

    def _on_failure(self, error: ToggleClientError) -> None:
        logger.error("Toggle synchronization failed", extra={"error": str(error)})
        if self._state == RepositoryState.SYNCHRONIZED:
            self._state = RepositoryState.STALE
        self._emitter.emit(ToggleEvents.ERROR, error)

    def _mark_synchronized(self) -> None:
        self._state = RepositoryState.SYNCHRONIZED
        if not self._synchronized:
            self._synchronized = True
            self._emitter.emit(ToggleEvents.SYNCHRONIZED)

    def _set_ready(self) -> None:
        if not self._ready:
            self._ready = True
            self._emitter.emit(ToggleEvents.READY)

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self._emitter.emit(ToggleEvents.WARNING, message)
