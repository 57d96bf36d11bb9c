# store key suffixes appended to a process identifier
BATCH_KEY_INFIX = "_batch_"
STATUS_KEY_SUFFIX = "_status"
LOCK_KEY_SUFFIX = "_process_lock"
CRON_HOOK_SUFFIX = "_cron"
NONCE_KEY_INFIX = "_nonce_"

# process defaults
DEFAULT_PREFIX = "bw"
DEFAULT_ACTION = "background_process"
DEFAULT_QUEUE_LOCK_TIME = 60
DEFAULT_TIME_LIMIT = 20
DEFAULT_MEMORY_THRESHOLD = 0.9
DEFAULT_CRON_INTERVAL_MINUTES = 5
DEFAULT_KEY_LENGTH = 64

# trigger transport defaults
DEFAULT_TRIGGER_PATH = "/async"
DEFAULT_TRIGGER_TIMEOUT = 0.01
DEFAULT_CONNECT_TIMEOUT = 5.0

# lifecycle actions fired on a process hook registry
ACTION_CANCELLED = "cancelled"
ACTION_PAUSED = "paused"
ACTION_RESUMED = "resumed"
ACTION_COMPLETED = "completed"

# filters applied on a process hook registry
FILTER_QUEUE_LOCK_TIME = "queue_lock_time"
FILTER_TIME_LIMIT = "time_limit"
FILTER_TIME_EXCEEDED = "time_exceeded"
FILTER_MEMORY_EXCEEDED = "memory_exceeded"
FILTER_QUERY_ARGS = "query_args"
FILTER_QUERY_URL = "query_url"
FILTER_POST_ARGS = "post_args"
FILTER_CRON_INTERVAL = "cron_interval"

# dispatch error codes
ERROR_ALREADY_PROCESSING = "already_processing"
ERROR_TRANSPORT = "transport_error"

# memory ceiling used when the process has no configured or platform limit
UNLIMITED_MEMORY_LIMIT = "32000M"
