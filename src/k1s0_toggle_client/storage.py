"""スナップショットの永続化"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from .exceptions import ParseError, PersistenceError
from .models import Snapshot


def serialize_snapshot(snapshot: Snapshot) -> str:
    """Snapshot を永続化用の JSON 文字列に変換する。"""
    return json.dumps(snapshot.to_dict(), ensure_ascii=False, sort_keys=True)


def deserialize_snapshot(text: str) -> Snapshot:
    """永続化された JSON 文字列から Snapshot を復元する。未知のフィールドは無視する。"""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Failed to parse persisted snapshot: {e}", cause=e) from e
    return Snapshot.from_dict(data)


class StorageProvider(ABC):
    """スナップショット永続化プロバイダー抽象基底クラス。"""

    @abstractmethod
    async def load(self) -> Snapshot | None:
        """保存済みスナップショットを読み込む。存在しなければ None。"""
        ...

    @abstractmethod
    async def save(self, snapshot: Snapshot) -> None:
        """スナップショットを保存する。失敗時は PersistenceError。"""
        ...


class FileStorageProvider(StorageProvider):
    """アプリケーション名から導出したファイルにスナップショットを保存する。

    書き込みは一時ファイル経由で置き換えるため、読み込み側が途中状態を見ることはない。
    """

    def __init__(self, backup_path: str | Path, app_name: str) -> None:
        safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", app_name)
        self._path = Path(backup_path) / f"k1s0-toggles-{safe_name}.json"
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> Snapshot | None:
        return await asyncio.to_thread(self._load_sync)

    async def save(self, snapshot: Snapshot) -> None:
        async with self._lock:
            await asyncio.to_thread(self._save_sync, snapshot)

    def _load_sync(self) -> Snapshot | None:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Failed to read backup file: {self._path}", cause=e) from e
        except UnicodeDecodeError as e:
            raise ParseError(f"Backup file is not valid UTF-8: {self._path}", cause=e) from e
        return deserialize_snapshot(text)

    def _save_sync(self, snapshot: Snapshot) -> None:
        tmp_name: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self._path.parent,
                prefix=f"{self._path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(serialize_snapshot(snapshot))
            os.replace(tmp_name, self._path)
        except OSError as e:
            if tmp_name is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
            raise PersistenceError(f"Failed to write backup file: {self._path}", cause=e) from e


class InMemoryStorageProvider(StorageProvider):
    """テスト用インメモリ永続化プロバイダー。シリアライズ済みの文字列を保持する。"""

    def __init__(self, blob: str | None = None) -> None:
        self._blob = blob
        self.save_count = 0

    @property
    def blob(self) -> str | None:
        return self._blob

    async def load(self) -> Snapshot | None:
        if self._blob is None:
            return None
        return deserialize_snapshot(self._blob)

    async def save(self, snapshot: Snapshot) -> None:
        self._blob = serialize_snapshot(snapshot)
        self.save_count += 1
