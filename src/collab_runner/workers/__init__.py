from .agent import AgentRunResult, build_agent_argv, invoke_agent, run_agent_command
from .executor import Executor, ExecutorOutcome
from .launcher import LaunchedWorker, WorkerLauncher
from .supervisor import Supervisor, SupervisorOutcome, approve_task, is_approved

__all__ = [
    "AgentRunResult",
    "Executor",
    "ExecutorOutcome",
    "LaunchedWorker",
    "Supervisor",
    "SupervisorOutcome",
    "WorkerLauncher",
    "approve_task",
    "build_agent_argv",
    "invoke_agent",
    "is_approved",
    "run_agent_command",
]
