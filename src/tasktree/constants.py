STATE_DIR_NAME = ".tasktree"
CONFIG_FILE = "config.yaml"
WORKSPACE_FILE = "workspace.yaml"
WORKSPACE_LOCK_FILE = "workspace.lock"
DISPATCH_LOCK_FILE = "dispatch.lock"
LOGS_DIR = "logs"
WORKSPACE_LOG_FILE = "workspace.jsonl"

SCHEMA_VERSION = 1
ROOT_NODE_ID = "root"
WORKSPACE_ID_PREFIX = "ws-"
NODE_ID_PREFIX = "node-"

LOCK_TIMEOUT = 30  # seconds

DEFAULT_BRANCH_PREFIX = "tasktree"
DEFAULT_DISPATCH_MODE = "none"
DEFAULT_DISPATCH_TIMEOUT_MS = 300_000
DEFAULT_DISPATCH_MAX_RETRIES = 3
DEFAULT_MAX_LOG_ENTRIES = 20

EMPTY_PROBLEM_MARKERS = {"", "(none)", "（暂无）"}

OPERATOR_AI = "AI"
OPERATOR_HUMAN = "Human"
OPERATOR_SYSTEM = "system"
OPERATOR_EXECUTOR = "executor"
OPERATOR_VERIFIER = "verifier"

MERGE_STRATEGIES = ("sequential", "squash", "cherry-pick", "skip")
