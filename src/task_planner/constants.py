STATE_DIR_NAME = ".task_planner"
CONFIG_FILE = "config.yaml"
TASKS_FILE = "tasks.yaml"
TASKS_LOCK_FILE = "tasks.lock"
WINDOWS_LOCK_BYTES = 4096

DEFAULT_OWNER = "local"
DEFAULT_LOG_LEVEL = "INFO"

TEMP_ID_PREFIX = "temp-"
