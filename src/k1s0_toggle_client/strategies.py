"""組み込みストラテジー

各ストラテジーは (parameters, context, toggle_name) -> bool の述語関数。
独自ストラテジーも同じシグネチャで StrategyEngine に渡す。
"""

from __future__ import annotations

import ipaddress
import os
import random
import socket
from collections.abc import Callable, Mapping
from types import MappingProxyType

from .context import Context
from .hashing import normalized_hash, random_stickiness

StrategyPredicate = Callable[[Mapping[str, str], Context, str], bool]


def _csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _percentage(parameters: Mapping[str, str], key: str) -> int:
    try:
        value = int(float(parameters.get(key, "0")))
    except ValueError:
        return 0
    return max(0, min(100, value))


def _in_rollout(stickiness_value: str, percentage: int, group_id: str) -> bool:
    return percentage > 0 and normalized_hash(stickiness_value, group_id) < percentage


def resolve_stickiness(stickiness: str, context: Context) -> str | None:
    """スティッキネスキーの値を解決する。

    "default" は userId → sessionId → ランダムの順にフォールバックする。
    ランダムにフォールバックした場合、結果は評価ごとに変わり得る。
    それ以外のフィールド名で値が無ければ None を返す。
    """
    if stickiness in ("", "default"):
        return context.user_id or context.session_id or random_stickiness()
    if stickiness == "random":
        return random_stickiness()
    return context.get_field(stickiness)


def default_strategy(parameters: Mapping[str, str], context: Context, toggle_name: str) -> bool:
    return True


def user_with_id(parameters: Mapping[str, str], context: Context, toggle_name: str) -> bool:
    if not context.user_id:
        return False
    return context.user_id in _csv(parameters.get("userIds"))


def gradual_rollout_user_id(
    parameters: Mapping[str, str], context: Context, toggle_name: str
) -> bool:
    stickiness_value = resolve_stickiness("default", context) or random_stickiness()
    group_id = parameters.get("groupId") or toggle_name
    return _in_rollout(stickiness_value, _percentage(parameters, "percentage"), group_id)


def gradual_rollout_session_id(
    parameters: Mapping[str, str], context: Context, toggle_name: str
) -> bool:
    if not context.session_id:
        return False
    group_id = parameters.get("groupId") or toggle_name
    return _in_rollout(context.session_id, _percentage(parameters, "percentage"), group_id)


def gradual_rollout_random(
    parameters: Mapping[str, str], context: Context, toggle_name: str
) -> bool:
    percentage = _percentage(parameters, "percentage")
    return percentage > 0 and random.randint(0, 99) < percentage


def flexible_rollout(parameters: Mapping[str, str], context: Context, toggle_name: str) -> bool:
    stickiness_value = resolve_stickiness(parameters.get("stickiness", "default"), context)
    if stickiness_value is None:
        return False
    group_id = parameters.get("groupId") or toggle_name
    return _in_rollout(stickiness_value, _percentage(parameters, "rollout"), group_id)


def remote_address(parameters: Mapping[str, str], context: Context, toggle_name: str) -> bool:
    if not context.remote_address:
        return False
    try:
        address = ipaddress.ip_address(context.remote_address)
    except ValueError:
        return False
    for entry in _csv(parameters.get("IPs")):
        if "/" not in entry:
            if entry == context.remote_address:
                return True
            continue
        try:
            network = ipaddress.ip_network(entry, strict=False)
        except ValueError:
            continue
        if address.version == network.version and address in network:
            return True
    return False


def _current_hostname() -> str:
    return os.environ.get("HOSTNAME") or socket.gethostname() or "undefined"


def application_hostname(
    parameters: Mapping[str, str], context: Context, toggle_name: str
) -> bool:
    host_names = [h.lower() for h in _csv(parameters.get("hostNames"))]
    return _current_hostname().lower() in host_names


BUILTIN_STRATEGIES: Mapping[str, StrategyPredicate] = MappingProxyType(
    {
        "default": default_strategy,
        "userWithId": user_with_id,
        "gradualRolloutUserId": gradual_rollout_user_id,
        "gradualRolloutSessionId": gradual_rollout_session_id,
        "gradualRolloutRandom": gradual_rollout_random,
        "flexibleRollout": flexible_rollout,
        "remoteAddress": remote_address,
        "applicationHostname": application_hostname,
    }
)
