APP_NAME = "collab-runner"
APP_DIR_NAME = "CollabRunner"
HOME_ENV_VAR = "COLLAB_RUNNER_HOME"

SETTINGS_FILE = "settings.yaml"
PROJECTS_FILE = "projects.yaml"
APP_LOGS_DIR = "logs"

COLLAB_DIR_NAME = "collaboration"
STATE_DIR_NAME = ".collab_runner"
LOCK_DIR_NAME = "lock"
SUPERVISOR_LOCK_DIR_NAME = "supervisor"
SUPERVISOR_LOCK_ID = "supervisor"
LOGS_DIR_NAME = "logs"
PROJECT_CONFIG_FILE = "config.yaml"
STATUS_FILE = "status.json"

INBOX_FILE = "inbox.md"
PROJECT_PLAN_FILE = "project_plan.md"
SUPERVISOR_GUIDE_FILE = "SUPERVISOR_GUIDE.md"
EXECUTOR_GUIDE_FILE = "EXECUTOR_GUIDE.md"

TASK_SUFFIX = ".md"
LOCK_SUFFIX = ".lock"

INBOX_TEMPLATE = """# Inbox

Write new requirements here. The Supervisor will process them.

---

"""
INBOX_TEMPLATE_HINT = "Write new requirements"

DEFAULT_CHECK_INTERVAL_SECONDS = 60
DEFAULT_AGENT_COMMAND = "claude -p {prompt} --dangerously-skip-permissions"
DEFAULT_ALLOWED_TOOLS_FLAG = "--allowedTools"
DEFAULT_ALLOWED_TOOLS = ["Read", "Write", "Edit", "Bash", "Glob", "Grep"]
DEFAULT_EXECUTOR_TIMEOUT_SECONDS = 30 * 60
DEFAULT_INBOX_TIMEOUT_SECONDS = 15 * 60
DEFAULT_REVIEW_TIMEOUT_SECONDS = 10 * 60
DEFAULT_KILL_GRACE_SECONDS = 10
LOCK_STALE_SECONDS = 60 * 60
MAX_ACQUIRE_ATTEMPTS = 5

SUMMARY_TAIL_CHARS = 500
REVIEW_DECISION_TAIL_CHARS = 100

DEFAULT_PRIORITY = "normal"
DEFAULT_ITERATION = 1
DEFAULT_MAX_ITERATIONS = 3

ROLE_EXECUTOR = "executor"
ROLE_SUPERVISOR = "supervisor"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_SPAWN_ERROR = "spawn-error"

REJECTION_REASON = "Review failed, needs rework"
