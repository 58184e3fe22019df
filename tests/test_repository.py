"""Repository のユニットテスト"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from conftest import FakeFetcher, make_snapshot
from k1s0_toggle_client.bootstrap import BootstrapOptions, BootstrapProvider
from k1s0_toggle_client.events import ToggleEvents
from k1s0_toggle_client.exceptions import PersistenceError, TransportError
from k1s0_toggle_client.models import FetchResult, Snapshot
from k1s0_toggle_client.repository import (
    InitialSnapshotPriority,
    Repository,
    RepositoryConfig,
    RepositoryState,
    changed_toggle_names,
)
from k1s0_toggle_client.storage import (
    FileStorageProvider,
    InMemoryStorageProvider,
    StorageProvider,
    deserialize_snapshot,
    serialize_snapshot,
)


def toggle(name: str, enabled: bool = True, **extra: Any) -> dict[str, Any]:
    return {"name": name, "enabled": enabled, "strategies": [{"name": "default"}], **extra}


class FailingStorage(StorageProvider):
    """保存に必ず失敗する永続化プロバイダー。"""

    async def load(self) -> Snapshot | None:
        return None

    async def save(self, snapshot: Snapshot) -> None:
        raise PersistenceError("disk full")


class Recorder:
    """Repository のイベントを記録する。"""

    def __init__(self, repo: Repository) -> None:
        self.events: dict[str, list[tuple[Any, ...]]] = {}
        for event in ToggleEvents:
            repo.on(event, self._handler(event))

    def _handler(self, event: str) -> Callable[..., None]:
        def record(*args: Any) -> None:
            self.events.setdefault(event, []).append(args)

        return record

    def count(self, event: str) -> int:
        return len(self.events.get(event, []))

    def args(self, event: str) -> list[tuple[Any, ...]]:
        return self.events.get(event, [])


async def wait_for_calls(fetcher: FakeFetcher, count: int) -> None:
    while fetcher.call_count < count:
        await asyncio.sleep(0)


def single_sync() -> RepositoryConfig:
    return RepositoryConfig(refresh_interval=0)


async def test_sync_replaces_snapshot_and_reports_changes(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """同期でスナップショットが差し替わり、変更されたトグル名が通知されること。"""
    fetcher = fetcher_factory(
        updated([toggle("featureA"), toggle("featureB")], etag="v1"),
        updated(
            [toggle("featureA"), toggle("featureB", enabled=False), toggle("featureC")],
            etag="v2",
        ),
    )
    repo = Repository(fetcher)
    recorder = Recorder(repo)

    assert await repo.sync_once() is True
    assert repo.is_ready is True
    assert repo.snapshot is not None
    assert repo.snapshot.etag == "v1"
    assert recorder.args(ToggleEvents.CHANGED) == [(["featureA", "featureB"],)]

    assert await repo.sync_once() is True
    assert recorder.args(ToggleEvents.CHANGED)[-1] == (["featureB", "featureC"],)
    assert repo.get_toggle("featureB").enabled is False  # type: ignore[union-attr]
    assert repo.snapshot.revision == 2
    assert recorder.count(ToggleEvents.READY) == 1


async def test_not_modified_keeps_snapshot(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """304 の場合は同じスナップショットを保持し changed を発行しないこと。"""
    fetcher = fetcher_factory(
        updated([toggle("featureB")], etag="abc"),
        FetchResult.not_modified(),
    )
    repo = Repository(fetcher)
    recorder = Recorder(repo)

    await repo.sync_once()
    first = repo.snapshot
    assert await repo.sync_once() is True

    assert fetcher.etags == [None, "abc"]
    assert repo.snapshot is first
    assert first is not None
    assert first.revision == 1
    assert recorder.count(ToggleEvents.CHANGED) == 1
    assert recorder.count(ToggleEvents.UNCHANGED) == 1
    assert repo.state == RepositoryState.SYNCHRONIZED


async def test_failure_keeps_previous_snapshot_and_marks_stale(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """同期失敗時は前回のスナップショットを維持し STALE になること。"""
    fetcher = fetcher_factory(
        updated([toggle("featureA")], etag="v1"),
        TransportError("connection refused"),
    )
    repo = Repository(fetcher)
    recorder = Recorder(repo)

    await repo.sync_once()
    snapshot = repo.snapshot
    assert await repo.sync_once() is False

    assert repo.snapshot is snapshot
    assert repo.state == RepositoryState.STALE
    assert recorder.count(ToggleEvents.ERROR) == 1
    assert isinstance(recorder.args(ToggleEvents.ERROR)[0][0], TransportError)


async def test_synchronized_is_emitted_once(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """synchronized は最初の同期成功時に一度だけ発行されること。"""
    fetcher = fetcher_factory(
        updated([toggle("featureA")]),
        TransportError("down"),
        updated([toggle("featureA"), toggle("featureB")]),
        FetchResult.not_modified(),
    )
    repo = Repository(fetcher)
    recorder = Recorder(repo)
    for _ in range(5):
        await repo.sync_once()
    assert recorder.count(ToggleEvents.SYNCHRONIZED) == 1
    assert repo.is_synchronized is True


async def test_bootstrap_serves_toggles_when_network_is_down(
    fetcher_factory: Callable[..., FakeFetcher],
) -> None:
    """サーバーに到達できなくてもブートストラップのトグルで評価できること。"""
    fetcher = fetcher_factory(TransportError("unreachable"))
    bootstrap = BootstrapProvider(BootstrapOptions(data=[toggle("featureA")]))
    repo = Repository(fetcher, bootstrap=bootstrap, config=single_sync())
    recorder = Recorder(repo)

    await repo.start()

    assert repo.is_ready is True
    assert repo.is_synchronized is False
    feature_a = repo.get_toggle("featureA")
    assert feature_a is not None
    assert feature_a.enabled is True
    assert recorder.count(ToggleEvents.READY) == 1
    assert recorder.count(ToggleEvents.ERROR) == 1
    assert fetcher.etags == [None]
    await repo.stop()


async def test_bootstrap_has_priority_over_persisted_by_default(
    fetcher_factory: Callable[..., FakeFetcher],
) -> None:
    """既定ではブートストラップが永続化済みスナップショットより優先されること。"""
    persisted = make_snapshot([toggle("persisted")]).with_meta("p-etag", 7)
    storage = InMemoryStorageProvider(serialize_snapshot(persisted))
    bootstrap = BootstrapProvider(BootstrapOptions(data=[toggle("boot")]))
    fetcher = fetcher_factory(TransportError("unreachable"))
    repo = Repository(fetcher, storage=storage, bootstrap=bootstrap, config=single_sync())

    await repo.start()

    assert repo.get_toggle("boot") is not None
    assert repo.get_toggle("persisted") is None
    assert fetcher.etags == [None]
    assert storage.blob is not None
    assert deserialize_snapshot(storage.blob).names() == frozenset({"boot"})
    await repo.stop()


async def test_persisted_priority_uses_stored_snapshot_and_etag(
    fetcher_factory: Callable[..., FakeFetcher],
) -> None:
    """PERSISTED 優先時は永続化済みスナップショットと etag を使うこと。"""
    persisted = make_snapshot([toggle("persisted")]).with_meta("p-etag", 7)
    storage = InMemoryStorageProvider(serialize_snapshot(persisted))
    bootstrap = BootstrapProvider(BootstrapOptions(data=[toggle("boot")]))
    fetcher = fetcher_factory(FetchResult.not_modified())
    config = RepositoryConfig(
        refresh_interval=0, initial_snapshot_priority=InitialSnapshotPriority.PERSISTED
    )
    repo = Repository(fetcher, storage=storage, bootstrap=bootstrap, config=config)

    await repo.start()

    assert repo.get_toggle("persisted") is not None
    assert repo.get_toggle("boot") is None
    assert fetcher.etags == ["p-etag"]
    assert repo.snapshot is not None
    assert repo.snapshot.revision == 7
    await repo.stop()


async def test_persisted_snapshot_used_without_bootstrap(
    fetcher_factory: Callable[..., FakeFetcher],
) -> None:
    """ブートストラップが無ければ永続化済みスナップショットで準備完了となること。"""
    persisted = make_snapshot([toggle("persisted")])
    storage = InMemoryStorageProvider(serialize_snapshot(persisted))
    repo = Repository(
        fetcher_factory(TransportError("down")), storage=storage, config=single_sync()
    )
    await repo.start()
    assert repo.is_ready is True
    assert repo.get_toggle("persisted") is not None
    await repo.stop()


async def test_corrupt_persisted_snapshot_is_a_warning(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """永続化済みスナップショットが壊れていても起動は継続すること。"""
    storage = InMemoryStorageProvider("{broken")
    repo = Repository(
        fetcher_factory(updated([toggle("featureA")])), storage=storage, config=single_sync()
    )
    recorder = Recorder(repo)
    await repo.start()
    assert recorder.count(ToggleEvents.WARNING) == 1
    assert repo.get_toggle("featureA") is not None
    await repo.stop()


async def test_undecodable_backup_file_is_a_warning(
    tmp_path: Path,
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """バックアップファイルが UTF-8 として読めなくても起動は継続すること。"""
    storage = FileStorageProvider(tmp_path, "app")
    storage.path.write_bytes(b"\xff\xfe\x00garbage")
    repo = Repository(
        fetcher_factory(updated([toggle("featureA")])), storage=storage, config=single_sync()
    )
    recorder = Recorder(repo)
    await repo.start()
    assert recorder.count(ToggleEvents.WARNING) == 1
    assert repo.get_toggle("featureA") is not None
    await repo.stop()


async def test_successful_sync_is_persisted(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """同期したスナップショットが etag とともに永続化されること。"""
    storage = InMemoryStorageProvider()
    repo = Repository(fetcher_factory(updated([toggle("featureA")], etag="abc")), storage=storage)
    await repo.sync_once()
    assert storage.save_count == 1
    assert storage.blob is not None
    restored = deserialize_snapshot(storage.blob)
    assert restored.etag == "abc"
    assert restored.names() == frozenset({"featureA"})


async def test_persistence_failure_is_a_warning(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """永続化失敗は warning となり、スナップショットは差し替わること。"""
    repo = Repository(fetcher_factory(updated([toggle("featureA")])), storage=FailingStorage())
    recorder = Recorder(repo)
    assert await repo.sync_once() is True
    assert repo.get_toggle("featureA") is not None
    assert recorder.count(ToggleEvents.WARNING) == 1
    assert recorder.count(ToggleEvents.ERROR) == 0


async def test_overlapping_tick_is_skipped(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """前回のティックが実行中なら次のティックはスキップされること。"""
    fetcher = fetcher_factory(updated([toggle("featureA")]))
    fetcher.gate = asyncio.Event()
    repo = Repository(fetcher)

    first = asyncio.create_task(repo.sync_once())
    await wait_for_calls(fetcher, 1)
    assert await repo.sync_once() is False

    fetcher.gate.set()
    assert await first is True
    assert fetcher.call_count == 1


async def test_response_after_stop_is_discarded(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """停止後に届いたレスポンスは破棄されること。"""
    fetcher = fetcher_factory(updated([toggle("featureA")]))
    fetcher.gate = asyncio.Event()
    repo = Repository(fetcher)
    recorder = Recorder(repo)

    tick = asyncio.create_task(repo.sync_once())
    await wait_for_calls(fetcher, 1)
    await repo.stop()
    fetcher.gate.set()

    assert await tick is False
    assert repo.snapshot is None
    assert repo.state == RepositoryState.STOPPED
    assert recorder.count(ToggleEvents.CHANGED) == 0


async def test_failure_after_stop_is_not_reported(
    fetcher_factory: Callable[..., FakeFetcher],
) -> None:
    """停止後に届いた失敗は error イベントにならないこと。"""
    fetcher = fetcher_factory(TransportError("late failure"))
    fetcher.gate = asyncio.Event()
    repo = Repository(fetcher)
    recorder = Recorder(repo)

    tick = asyncio.create_task(repo.sync_once())
    await wait_for_calls(fetcher, 1)
    await repo.stop()
    fetcher.gate.set()

    assert await tick is False
    assert recorder.count(ToggleEvents.ERROR) == 0


async def test_polling_stops_after_stop(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """停止後はフェッチが発生しないこと。stop は複数回呼べること。"""
    fetcher = fetcher_factory(updated([toggle("featureA")], etag="abc"), FetchResult.not_modified())
    repo = Repository(fetcher, config=RepositoryConfig(refresh_interval=0.01))
    recorder = Recorder(repo)

    await repo.start()
    await asyncio.wait_for(wait_for_calls(fetcher, 3), timeout=2)
    await repo.stop()
    await repo.stop()
    calls = fetcher.call_count

    await asyncio.sleep(0.05)
    assert fetcher.call_count == calls
    assert repo.state == RepositoryState.STOPPED
    assert recorder.count(ToggleEvents.SYNCHRONIZED) == 1
    assert await repo.sync_once() is False


async def test_zero_interval_syncs_once(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """refresh_interval が 0 なら一度だけ同期すること。"""
    fetcher = fetcher_factory(updated([toggle("featureA")]))
    repo = Repository(fetcher, config=single_sync())
    await repo.start()
    await asyncio.sleep(0.05)
    assert fetcher.call_count == 1
    assert repo.is_synchronized is True
    await repo.stop()


async def test_first_sync_timeout(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """初回同期が時間内に終わらなければ start は warning を出して戻ること。"""
    fetcher = fetcher_factory(updated([toggle("featureA")]))
    fetcher.gate = asyncio.Event()
    repo = Repository(
        fetcher, config=RepositoryConfig(refresh_interval=0, first_sync_timeout=0.05)
    )
    recorder = Recorder(repo)

    await repo.start()

    assert repo.is_ready is False
    assert repo.state == RepositoryState.SYNCHRONIZING
    assert recorder.count(ToggleEvents.WARNING) == 1
    await repo.stop()


async def test_readers_never_observe_partial_snapshot(
    fetcher_factory: Callable[..., FakeFetcher],
    updated: Callable[..., FetchResult],
) -> None:
    """別スレッドの読み手は常に単一世代のスナップショットだけを観測すること。"""
    generations = [
        updated([toggle(f"t{i}", description=f"gen-{g}") for i in range(5)], etag=str(g))
        for g in range(50)
    ]
    repo = Repository(fetcher_factory(*generations))
    torn: list[list[str]] = []
    done = threading.Event()

    def reader() -> None:
        while not done.is_set():
            toggles = repo.get_toggles()
            descriptions = {t.description for t in toggles}
            if toggles and (len(toggles) != 5 or len(descriptions) != 1):
                torn.append(sorted(descriptions))

    thread = threading.Thread(target=reader)
    thread.start()
    try:
        for _ in range(50):
            await repo.sync_once()
            await asyncio.sleep(0)
    finally:
        done.set()
        thread.join()

    assert torn == []
    assert repo.snapshot is not None
    assert repo.snapshot.revision == 50


def test_changed_toggle_names() -> None:
    """追加・削除・変更されたトグル名を検出すること。"""
    old = make_snapshot([toggle("a"), toggle("b"), toggle("c")])
    new = make_snapshot([toggle("a"), toggle("b", enabled=False), toggle("d")])
    assert changed_toggle_names(old, new) == {"b", "c", "d"}
    assert changed_toggle_names(None, new) == {"a", "b", "d"}
    assert changed_toggle_names(new, new) == set()
