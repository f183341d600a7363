STATE_DIR_NAME = ".vtm"
CONFIG_FILE = "config.yaml"
SESSION_FILE = "session.json"
STORE_FILE = "vtm.json"

STORE_VERSION = "1.0.0"

TASK_ID_PREFIX = "TASK-"
TASK_ID_WIDTH = 3
TRANSACTION_SEQ_WIDTH = 3

TASK_STATUS_PENDING = "pending"
TASK_STATUS_IN_PROGRESS = "in-progress"
TASK_STATUS_COMPLETED = "completed"
TASK_STATUS_BLOCKED = "blocked"

HISTORY_ACTION_INGEST = "ingest"
HISTORY_ACTION_UPDATE = "update"
HISTORY_ACTION_DELETE = "delete"

ROLLBACK_SOURCE = "rollback"
DEFAULT_UPDATE_SOURCE = "manual"
DEFAULT_INGEST_SOURCE = "manual ingest"

# What to do when a new task depends on an already completed one.
COMPLETED_DEPENDENCY_ERROR = "error"
COMPLETED_DEPENDENCY_WARNING = "warning"
COMPLETED_DEPENDENCY_POLICIES = {
    COMPLETED_DEPENDENCY_ERROR,
    COMPLETED_DEPENDENCY_WARNING,
}
DEFAULT_COMPLETED_DEPENDENCY_POLICY = COMPLETED_DEPENDENCY_ERROR

# Fields a candidate may carry but which the ledger always assigns itself.
ENGINE_OWNED_FIELDS = (
    "id",
    "status",
    "created_at",
    "started_at",
    "completed_at",
)

# Fields accepted by LedgerWriter.update_task.
UPDATABLE_TASK_FIELDS = {
    "status",
    "started_at",
    "completed_at",
    "commits",
    "files",
    "validation",
}

DEFAULT_LOG_LEVEL = "WARNING"

# Pre-provenance source fields and the provenance label each maps to.
LEGACY_SOURCE_FIELDS = {
    "adr_source": "adr",
    "spec_source": "spec",
}
