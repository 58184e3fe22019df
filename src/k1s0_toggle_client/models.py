"""トグル定義データモデル

サーバーから受信したトグル定義は不変として扱い、同期のたびに丸ごと置き換える。
from_dict / to_dict はサーバーのワイヤーフォーマット（camelCase）と対応する。
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .exceptions import ParseError


class Operator(StrEnum):
    """制約オペレーター。"""

    IN = "IN"
    NOT_IN = "NOT_IN"
    STR_CONTAINS = "STR_CONTAINS"
    STR_STARTS_WITH = "STR_STARTS_WITH"
    STR_ENDS_WITH = "STR_ENDS_WITH"
    NUM_EQ = "NUM_EQ"
    NUM_GT = "NUM_GT"
    NUM_GTE = "NUM_GTE"
    NUM_LT = "NUM_LT"
    NUM_LTE = "NUM_LTE"
    DATE_AFTER = "DATE_AFTER"
    DATE_BEFORE = "DATE_BEFORE"
    SEMVER_EQ = "SEMVER_EQ"
    SEMVER_GT = "SEMVER_GT"
    SEMVER_LT = "SEMVER_LT"


class EvaluationReason:
    """評価結果の理由コード定数。"""

    TOGGLE_DISABLED: str = "TOGGLE_DISABLED"
    TOGGLE_CONSTRAINTS: str = "TOGGLE_CONSTRAINTS"
    NO_STRATEGIES: str = "NO_STRATEGIES"
    STRATEGY_MATCH: str = "STRATEGY_MATCH"
    NO_MATCH: str = "NO_MATCH"
    NOT_FOUND: str = "NOT_FOUND"
    NOT_READY: str = "NOT_READY"
    FALLBACK: str = "FALLBACK"


def _param_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class Constraint:
    """コンテキストフィールドに対する制約。

    operator は未知の値もそのまま保持する（評価時に不一致として扱う）。
    """

    context_name: str
    operator: str
    values: tuple[str, ...] = ()
    value: str | None = None
    inverted: bool = False
    case_insensitive: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Constraint:
        raw_value = data.get("value")
        return cls(
            context_name=data["contextName"],
            operator=str(data["operator"]),
            values=tuple(_param_str(v) for v in data.get("values") or []),
            value=None if raw_value is None else _param_str(raw_value),
            inverted=bool(data.get("inverted", False)),
            case_insensitive=bool(data.get("caseInsensitive", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "contextName": self.context_name,
            "operator": self.operator,
            "values": list(self.values),
            "inverted": self.inverted,
            "caseInsensitive": self.case_insensitive,
        }
        if self.value is not None:
            result["value"] = self.value
        return result


@dataclass(frozen=True)
class StrategyConfig:
    """トグルに設定された活性化ストラテジー。"""

    name: str
    parameters: dict[str, str] = field(default_factory=dict)
    constraints: tuple[Constraint, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StrategyConfig:
        return cls(
            name=data["name"],
            parameters={
                str(k): _param_str(v) for k, v in (data.get("parameters") or {}).items()
            },
            constraints=tuple(Constraint.from_dict(c) for c in data.get("constraints") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "parameters": dict(self.parameters),
            "constraints": [c.to_dict() for c in self.constraints],
        }


@dataclass(frozen=True)
class Payload:
    """バリアントのペイロード。"""

    type: str
    value: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Payload:
        return cls(type=str(data.get("type", "string")), value=_param_str(data.get("value", "")))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "value": self.value}


@dataclass(frozen=True)
class VariantOverride:
    """特定のコンテキスト値に対してバリアントを強制するルール。"""

    context_name: str
    values: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VariantOverride:
        return cls(
            context_name=data["contextName"],
            values=tuple(_param_str(v) for v in data.get("values") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"contextName": self.context_name, "values": list(self.values)}


@dataclass(frozen=True)
class Variant:
    """トグルのバリアント。"""

    name: str
    weight: int = 0
    payload: Payload | None = None
    overrides: tuple[VariantOverride, ...] = ()
    stickiness: str = "default"
    enabled: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Variant:
        payload = data.get("payload")
        return cls(
            name=data["name"],
            weight=int(data.get("weight", 0)),
            payload=Payload.from_dict(payload) if payload else None,
            overrides=tuple(VariantOverride.from_dict(o) for o in data.get("overrides") or []),
            stickiness=str(data.get("stickiness") or "default"),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "weight": self.weight,
            "payload": self.payload.to_dict() if self.payload else None,
            "overrides": [o.to_dict() for o in self.overrides],
            "stickiness": self.stickiness,
            "enabled": self.enabled,
        }


def disabled_variant() -> Variant:
    """バリアントが選択されなかった場合の既定値を返す。"""
    return Variant(name="disabled", enabled=False)


@dataclass(frozen=True)
class ToggleDefinition:
    """フィーチャートグル定義。"""

    name: str
    enabled: bool = False
    strategies: tuple[StrategyConfig, ...] = ()
    variants: tuple[Variant, ...] = ()
    constraints: tuple[Constraint, ...] = ()
    description: str = ""
    type: str = "release"
    project: str = "default"
    stale: bool = False
    impression_data: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToggleDefinition:
        return cls(
            name=data["name"],
            enabled=bool(data.get("enabled", False)),
            strategies=tuple(StrategyConfig.from_dict(s) for s in data.get("strategies") or []),
            variants=tuple(Variant.from_dict(v) for v in data.get("variants") or []),
            constraints=tuple(Constraint.from_dict(c) for c in data.get("constraints") or []),
            description=data.get("description") or "",
            type=data.get("type") or "release",
            project=data.get("project") or "default",
            stale=bool(data.get("stale", False)),
            impression_data=bool(data.get("impressionData", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "strategies": [s.to_dict() for s in self.strategies],
            "variants": [v.to_dict() for v in self.variants],
            "constraints": [c.to_dict() for c in self.constraints],
            "description": self.description,
            "type": self.type,
            "project": self.project,
            "stale": self.stale,
            "impressionData": self.impression_data,
        }


@dataclass(frozen=True)
class Snapshot:
    """トグル定義一式と検証トークン。

    Repository だけが生成・差し替えを行う。名前による O(1) 参照用の索引を持つ。
    """

    toggles: tuple[ToggleDefinition, ...] = ()
    etag: str | None = None
    version: int = 1
    revision: int = 0
    _index: dict[str, ToggleDefinition] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        index = {toggle.name: toggle for toggle in self.toggles}
        if len(index) != len(self.toggles):
            raise ParseError("Duplicate toggle names in snapshot")
        object.__setattr__(self, "_index", index)

    def get(self, name: str) -> ToggleDefinition | None:
        return self._index.get(name)

    def names(self) -> frozenset[str]:
        return frozenset(self._index)

    def with_meta(self, etag: str | None, revision: int) -> Snapshot:
        """etag と revision を差し替えた新しい Snapshot を返す。"""
        return dataclasses.replace(self, etag=etag, revision=revision)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        """ワイヤーフォーマットまたは永続化フォーマットから Snapshot を生成する。

        未知のフィールドは無視する。
        """
        if not isinstance(data, dict):
            raise ParseError(f"Snapshot must be an object, got {type(data).__name__}")
        features = data.get("features")
        if not isinstance(features, list):
            raise ParseError("Snapshot is missing the 'features' list")
        try:
            return cls(
                toggles=tuple(ToggleDefinition.from_dict(f) for f in features),
                etag=data.get("etag"),
                version=int(data.get("version", 1)),
                revision=int(data.get("revision", 0)),
            )
        except ParseError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ParseError(f"Invalid toggle definition: {e}", cause=e) from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "features": [t.to_dict() for t in self.toggles],
            "etag": self.etag,
            "revision": self.revision,
        }


class FetchStatus(StrEnum):
    """条件付き取得の結果種別。"""

    NOT_MODIFIED = "NOT_MODIFIED"
    UPDATED = "UPDATED"


@dataclass(frozen=True)
class FetchResult:
    """トグル定義取得結果。"""

    status: FetchStatus
    snapshot: Snapshot | None = None
    etag: str | None = None

    @classmethod
    def not_modified(cls) -> FetchResult:
        return cls(status=FetchStatus.NOT_MODIFIED)

    @classmethod
    def updated(cls, snapshot: Snapshot, etag: str | None) -> FetchResult:
        return cls(status=FetchStatus.UPDATED, snapshot=snapshot, etag=etag)


@dataclass(frozen=True)
class EvaluationResult:
    """トグル評価結果。"""

    toggle_name: str
    enabled: bool
    variant: Variant | None = None
    reason: str = ""
