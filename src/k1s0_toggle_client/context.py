"""評価コンテキスト"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

_WELL_KNOWN_FIELDS: dict[str, str] = {
    "userId": "user_id",
    "sessionId": "session_id",
    "remoteAddress": "remote_address",
    "environment": "environment",
    "appName": "app_name",
}


@dataclass(frozen=True)
class Context:
    """トグル評価コンテキスト。評価呼び出しごとに渡され、永続化されない。"""

    user_id: str | None = None
    session_id: str | None = None
    remote_address: str | None = None
    environment: str | None = None
    app_name: str | None = None
    current_time: datetime | None = None
    properties: dict[str, str] = field(default_factory=dict)

    def get_field(self, name: str) -> str | None:
        """コンテキストフィールドを名前（camelCase）で取得する。

        currentTime は未指定なら現在時刻を返す。既知フィールド以外は properties を参照する。
        値は文字列に変換して返す。
        """
        if name == "currentTime":
            moment = self.current_time or datetime.now(timezone.utc)
            return moment.isoformat() if isinstance(moment, datetime) else str(moment)
        attr = _WELL_KNOWN_FIELDS.get(name)
        value = getattr(self, attr) if attr is not None else self.properties.get(name)
        if value is None or value == "":
            return None
        return str(value)

    def with_defaults(self, app_name: str | None, environment: str | None) -> Context:
        """未設定の app_name / environment を補った新しい Context を返す。"""
        return dataclasses.replace(
            self,
            app_name=self.app_name or app_name,
            environment=self.environment or environment,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Context:
        current_time = data.get("currentTime")
        if isinstance(current_time, str):
            current_time = datetime.fromisoformat(current_time)
        return cls(
            user_id=data.get("userId"),
            session_id=data.get("sessionId"),
            remote_address=data.get("remoteAddress"),
            environment=data.get("environment"),
            app_name=data.get("appName"),
            current_time=current_time,
            properties={str(k): str(v) for k, v in (data.get("properties") or {}).items()},
        )
