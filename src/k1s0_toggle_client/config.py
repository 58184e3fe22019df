"""クライアント設定（pydantic BaseModel）と設定ファイル読み込み"""

from __future__ import annotations

import getpass
import os
import random
import socket
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigurationError
from .repository import InitialSnapshotPriority


class BootstrapSection(BaseModel):
    """ブートストラップ設定。"""

    data: list[dict[str, Any]] | dict[str, Any] | None = None
    file_path: str | None = None
    url: str | None = None
    url_headers: dict[str, str] = Field(default_factory=dict)


class TagFilter(BaseModel):
    """取得対象を絞り込むタグ。"""

    name: str
    value: str


class ToggleClientConfig(BaseModel):
    """トグルクライアント設定全体。"""

    app_name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    environment: str = "default"
    instance_id: str | None = None
    project_name: str | None = None
    name_prefix: str | None = None
    tags: list[TagFilter] = Field(default_factory=list)
    refresh_interval: float = Field(default=15.0, ge=0)
    refresh_jitter: float = Field(default=0.0, ge=0)
    metrics_interval: float = Field(default=60.0, ge=0)
    disable_metrics: bool = False
    timeout: float = Field(default=10.0, gt=0)
    custom_headers: dict[str, str] = Field(default_factory=dict)
    backup_path: str = Field(default_factory=tempfile.gettempdir)
    bootstrap: BootstrapSection = Field(default_factory=BootstrapSection)
    initial_snapshot_priority: InitialSnapshotPriority = InitialSnapshotPriority.BOOTSTRAP
    first_sync_timeout: float | None = Field(default=None, gt=0)


def merge_layers(*layers: Mapping[str, Any]) -> dict[str, Any]:
    """設定レイヤーを順に重ねた辞書を返す。

    後のレイヤーほど優先される。custom_headers や bootstrap のような入れ子の
    マッピングはキー単位で重ね、リスト（tags など）は丸ごと置き換える。
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            current = merged.get(key)
            if isinstance(current, dict) and isinstance(value, Mapping):
                merged[key] = merge_layers(current, value)
            elif isinstance(value, Mapping):
                merged[key] = merge_layers(value)
            else:
                merged[key] = value
    return merged


def parse_config(data: Mapping[str, Any]) -> ToggleClientConfig:
    """辞書を検証して ToggleClientConfig を返す。"""
    try:
        return ToggleClientConfig.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigurationError(f"Config validation failed: {e}", cause=e) from e


def _yaml_layer(path: Path, section: str | None) -> dict[str, Any]:
    try:
        with path.open(encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Failed to read config file: {path}", cause=e) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML: {path}", cause=e) from e
    if document is None:
        return {}
    if section is not None and isinstance(document, dict):
        document = document.get(section) or {}
    if not isinstance(document, dict):
        where = f"{path} [{section}]" if section else str(path)
        raise ConfigurationError(f"Toggle client config must be a mapping: {where}")
    return document


def load_config(
    base_path: Path,
    env_path: Path | None = None,
    *,
    section: str | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> ToggleClientConfig:
    """YAML ファイルからトグルクライアント設定を組み立てる。

    base_path → env_path（存在する場合のみ）→ overrides の順に重ねて検証する。
    section を指定すると、アプリケーション共通の設定ファイル内の該当キーだけを読む。
    """
    layers = [_yaml_layer(base_path, section)]
    if env_path is not None and env_path.exists():
        layers.append(_yaml_layer(env_path, section))
    if overrides:
        layers.append(dict(overrides))
    return parse_config(merge_layers(*layers))


def clean_url(url: str) -> tuple[str, str | None]:
    """API ベース URL を正規化する。

    Returns:
        (末尾 / 付きの URL, 警告メッセージまたは None)
    """
    warning = None
    if url.endswith("/features"):
        warning = f'Server URL "{url}" should no longer link directly to /features'
        url = url[: -len("/features")]
    if not url.endswith("/"):
        url += "/"
    return url, warning


def default_instance_id(instance_id: str | None = None) -> str:
    """インスタンス ID を決める。未指定ならユーザー名とホスト名から生成する。"""
    if instance_id:
        return instance_id
    try:
        return f"{getpass.getuser()}-{socket.gethostname()}"
    except (KeyError, OSError):
        return f"generated-{random.randint(0, 1_000_000)}-{os.getpid()}"
