"""k1s0 toggle client library."""

from .bootstrap import BootstrapOptions, BootstrapProvider
from .client import FallbackFunction, ToggleClient
from .config import ToggleClientConfig, load_config, parse_config
from .context import Context
from .engine import StrategyEngine
from .events import EventEmitter, ToggleEvents
from .exceptions import (
    ConfigurationError,
    ParseError,
    PersistenceError,
    ToggleClientError,
    ToggleClientErrorCodes,
    TransportError,
)
from .hashing import normalized_hash
from .http_fetcher import FetcherConfig, HttpToggleFetcher, ToggleFetcher
from .metrics import MetricsBucket, MetricsConfig, MetricsReporter
from .models import (
    Constraint,
    EvaluationReason,
    EvaluationResult,
    FetchResult,
    FetchStatus,
    Operator,
    Payload,
    Snapshot,
    StrategyConfig,
    ToggleDefinition,
    Variant,
    VariantOverride,
)
from .repository import InitialSnapshotPriority, Repository, RepositoryConfig, RepositoryState
from .storage import FileStorageProvider, InMemoryStorageProvider, StorageProvider
from .strategies import BUILTIN_STRATEGIES, StrategyPredicate

__all__ = [
    "BUILTIN_STRATEGIES",
    "BootstrapOptions",
    "BootstrapProvider",
    "ConfigurationError",
    "Constraint",
    "Context",
    "EvaluationReason",
    "EvaluationResult",
    "EventEmitter",
    "FallbackFunction",
    "FetchResult",
    "FetchStatus",
    "FetcherConfig",
    "FileStorageProvider",
    "HttpToggleFetcher",
    "InMemoryStorageProvider",
    "InitialSnapshotPriority",
    "MetricsBucket",
    "MetricsConfig",
    "MetricsReporter",
    "Operator",
    "ParseError",
    "Payload",
    "PersistenceError",
    "Repository",
    "RepositoryConfig",
    "RepositoryState",
    "Snapshot",
    "StorageProvider",
    "StrategyConfig",
    "StrategyEngine",
    "StrategyPredicate",
    "ToggleClient",
    "ToggleClientConfig",
    "ToggleClientError",
    "ToggleClientErrorCodes",
    "ToggleDefinition",
    "ToggleEvents",
    "ToggleFetcher",
    "TransportError",
    "Variant",
    "VariantOverride",
    "load_config",
    "normalized_hash",
    "parse_config",
]
