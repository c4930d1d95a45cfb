"""Constants for the SIGMA hunting core to eliminate string literal duplication."""

# Severity ordering (lowest first)
SEVERITY_ORDER = ["info", "low", "medium", "high", "critical"]
DEFAULT_SEVERITY = "info"

# Rule combinators and contains operators
LOGIC_AND = "and"
LOGIC_OR = "or"
OPERATOR_ANY = "any"
OPERATOR_ALL = "all"

# Field resolution
FIELD_ALIASES = {
    "Provider": "source",
    "EventID": "event_id",
    "Computer": "computer",
}
PAYLOAD_SECTIONS = ["EventData", "UserData", "System"]

# Evidence
MAX_EVIDENCE_LENGTH = 100
EVIDENCE_ELLIPSIS = "..."

# Process identity fields, in lookup priority
PROCESS_GUID_FIELDS = ["ProcessGuid", "SourceProcessGuid", "NewProcessId"]
PARENT_GUID_FIELDS = ["ParentProcessGuid", "ParentProcessId"]
TARGET_GUID_FIELDS = ["TargetProcessGuid"]
PROCESS_IMAGE_FIELDS = ["Image", "SourceImage", "NewProcessName"]

# Sysmon / Security event ids
EID_PROCESS_CREATE = 1
EID_SECURITY_PROCESS_CREATE = 4688
EID_NETWORK_CONNECT = 3
EID_IMAGE_LOAD = 7
EID_CREATE_REMOTE_THREAD = 8
EID_PROCESS_ACCESS = 10
EID_FILE_CREATE = 11
EID_REGISTRY_EVENTS = [12, 13, 14]
EID_REGISTRY_SET = 13
EID_DNS_QUERY = 22
EID_FILE_DELETE = 23
EID_FILE_DELETE_LOGGED = 26
FILE_OPERATION_IDS = [EID_FILE_CREATE, EID_FILE_DELETE, EID_FILE_DELETE_LOGGED]
PROCESS_CREATE_IDS = [EID_PROCESS_CREATE, EID_SECURITY_PROCESS_CREATE]

# Correlation
CORRELATION_WINDOW_SECONDS = 300
MIN_CHAIN_EVENTS = 2
PROGRESS_CHECKPOINTS = 5
CHAIN_ID_PREFIX = "chain-"

# Chain relationships
REL_PROCESS_SPAWN = "process_spawn"
REL_SAME_PROCESS = "same_process"
REL_PROCESS_ACCESS = "process_access"
REL_NETWORK_CONNECTION = "network_connection"
REL_FILE_OPERATION = "file_operation"
REL_REGISTRY_OPERATION = "registry_operation"
PROCESS_ACCESS_CONFIDENCE = 0.8

# Scoring
SEVERITY_WEIGHTS = {
    "critical": 100,
    "high": 50,
    "medium": 20,
    "low": 5,
    "info": 0,
}
EVENT_COUNT_WEIGHT = 2
EVENT_COUNT_CAP = 30
PROCESS_NETWORK_BONUS = 15
REMOTE_THREAD_BONUS = 30
PROCESS_ACCESS_BONUS = 20
EXTRA_HOST_WEIGHT = 5
EXTRA_HOST_CAP = 20
EXTRA_PROCESS_WEIGHT = 2
EXTRA_PROCESS_CAP = 10
TECHNIQUE_WEIGHT = 10
TECHNIQUE_CAP = 30

# Process tree
MAX_PROCESS_TREE_DEPTH = 100

# Performance
METRICS_HISTORY_LIMIT = 100

# Storyline
MAX_STORY_STEPS = 10
STORY_NEIGHBOR_SPAN = 1
STORY_DETAIL_LENGTH = 80

# File ingestion
ENCODING_UTF8 = "utf-8"
DEFAULT_SOURCE_TAG = "events"
SUPPORTED_RULE_EXTENSIONS = [".yml", ".yaml", ".json"]

# Logging
LOG_FILE_PREFIX = "hunt_"
LOG_FILE_LIFESPAN_SECONDS = 2 * 24 * 60 * 60  # 2 days

# Environment Variables
ENV_LOG_LEVEL = "LOG_LEVEL"
ENV_LOG_DIR = "HUNT_LOG_DIR"
ENV_WINDOW = "HUNT_CORRELATION_WINDOW"
ENV_MIN_CHAIN_EVENTS = "HUNT_MIN_CHAIN_EVENTS"
ENV_MAX_TREE_DEPTH = "HUNT_MAX_TREE_DEPTH"
ENV_BATCH_SIZE = "HUNT_BATCH_SIZE"
ENV_RULES_PATH = "HUNT_RULES_PATH"
