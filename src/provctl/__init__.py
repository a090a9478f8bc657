"""provctl: declarative provisioning and reconciliation for multi-cloud clusters."""

__version__ = "0.4.0"

from provctl.config import ProvctlConfig, find_config, load_config
from provctl.drift.detector import DriftDetector, format_report
from provctl.engine import CloudProvider, Engine, ProviderRegistry
from provctl.errors import (
    ApplyError,
    ConfigError,
    IntegrityError,
    ProvctlError,
    ProviderNotFoundError,
    RemediationError,
    SerializationError,
    SnapshotError,
    SnapshotNotFoundError,
    StateLockError,
    TransactionError,
)
from provctl.events.log import EventLog, EventStore, verify_log
from provctl.loader import load_desired_state
from provctl.models import (
    Action,
    ActionType,
    ApplyResult,
    Cluster,
    ClusterSpec,
    DriftReport,
    Event,
    NodePool,
    Plan,
    RemediationResult,
    ResourceID,
    RetentionPolicy,
    Snapshot,
    State,
    WorkerPoolSpec,
)
from provctl.planner.planner import format_plan, generate_plan
from provctl.providers.aws import AwsEksProvider
from provctl.providers.local import LocalProvider
from provctl.reconciler.loop import Reconciler
from provctl.sdk.client import Provctl
from provctl.snapshot.manager import SnapshotManager, format_restore_result
from provctl.state.store import MemoryStateManager, SQLiteStateManager, StateManager

__all__ = [
    "Action",
    "ActionType",
    "ApplyError",
    "ApplyResult",
    "AwsEksProvider",
    "CloudProvider",
    "Cluster",
    "ClusterSpec",
    "ConfigError",
    "DriftDetector",
    "DriftReport",
    "Engine",
    "Event",
    "EventLog",
    "EventStore",
    "find_config",
    "format_plan",
    "format_report",
    "format_restore_result",
    "generate_plan",
    "IntegrityError",
    "load_config",
    "load_desired_state",
    "LocalProvider",
    "MemoryStateManager",
    "NodePool",
    "Plan",
    "Provctl",
    "ProvctlConfig",
    "ProvctlError",
    "ProviderNotFoundError",
    "ProviderRegistry",
    "Reconciler",
    "RemediationError",
    "RemediationResult",
    "ResourceID",
    "RetentionPolicy",
    "SerializationError",
    "Snapshot",
    "SnapshotError",
    "SnapshotManager",
    "SnapshotNotFoundError",
    "SQLiteStateManager",
    "State",
    "StateLockError",
    "StateManager",
    "TransactionError",
    "WorkerPoolSpec",
    "__version__",
]
