"""StrategyEngine: トグル定義をコンテキストに対して評価する"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from types import MappingProxyType

from .constraints import UnsupportedOperatorError, all_constraints_match
from .context import Context
from .events import EventEmitter, ToggleEvents
from .models import Constraint, EvaluationReason, EvaluationResult, StrategyConfig, ToggleDefinition
from .strategies import BUILTIN_STRATEGIES, StrategyPredicate
from .variants import select_variant

logger = logging.getLogger(__name__)


class StrategyEngine:
    """ストラテジー評価エンジン。

    評価は I/O を行わず、例外も送出しない。未知のストラテジーやオペレーターは
    そのストラテジーを不一致として扱い、warning イベントで通知する。
    """

    def __init__(
        self,
        strategies: Mapping[str, StrategyPredicate] | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._strategies: dict[str, StrategyPredicate] = {
            **BUILTIN_STRATEGIES,
            **(strategies or {}),
        }
        self._emitter = emitter
        self._warned: set[tuple[str, str]] = set()

    @property
    def strategy_names(self) -> list[str]:
        return sorted(self._strategies)

    def evaluate(self, toggle: ToggleDefinition, context: Context) -> EvaluationResult:
        """トグルの有効状態とバリアントを評価する。"""
        if not toggle.enabled:
            return EvaluationResult(toggle.name, False, None, EvaluationReason.TOGGLE_DISABLED)
        if not self._constraints_hold(toggle.name, toggle.constraints, context):
            return EvaluationResult(
                toggle.name, False, None, EvaluationReason.TOGGLE_CONSTRAINTS
            )
        if not toggle.strategies:
            return EvaluationResult(
                toggle.name,
                True,
                select_variant(toggle, context),
                EvaluationReason.NO_STRATEGIES,
            )
        for strategy in toggle.strategies:
            if self._strategy_matches(toggle.name, strategy, context):
                return EvaluationResult(
                    toggle.name,
                    True,
                    select_variant(toggle, context),
                    EvaluationReason.STRATEGY_MATCH,
                )
        return EvaluationResult(toggle.name, False, None, EvaluationReason.NO_MATCH)

    def is_enabled(self, toggle: ToggleDefinition, context: Context) -> bool:
        return self.evaluate(toggle, context).enabled

    def _strategy_matches(
        self, toggle_name: str, strategy: StrategyConfig, context: Context
    ) -> bool:
        predicate = self._strategies.get(strategy.name)
        if predicate is None:
            self._degrade(
                toggle_name,
                strategy.name,
                f"Missing strategy {strategy.name!r} for toggle {toggle_name!r}",
            )
            return False
        if not self._constraints_hold(toggle_name, strategy.constraints, context):
            return False
        try:
            return bool(predicate(MappingProxyType(strategy.parameters), context, toggle_name))
        except Exception as e:
            self._degrade(
                toggle_name,
                strategy.name,
                f"Strategy {strategy.name!r} failed for toggle {toggle_name!r}: {e}",
            )
            return False

    def _constraints_hold(
        self, toggle_name: str, constraints: Iterable[Constraint], context: Context
    ) -> bool:
        try:
            return all_constraints_match(constraints, context)
        except UnsupportedOperatorError as e:
            self._degrade(toggle_name, e.operator, f"{e} (toggle {toggle_name!r})")
            return False
        except Exception as e:
            self._degrade(
                toggle_name,
                "constraints",
                f"Constraint evaluation failed for toggle {toggle_name!r}: {e}",
            )
            return False

    def _degrade(self, toggle_name: str, subject: str, message: str) -> None:
        key = (toggle_name, subject)
        if key in self._warned:
            return
        self._warned.add(key)
        logger.warning(message, extra={"toggle": toggle_name, "subject": subject})
        if self._emitter is not None:
            self._emitter.emit(ToggleEvents.WARNING, message)
