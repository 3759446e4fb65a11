from .executor import ExecutionOutcome, ExecutionStatus, StepExecutor

__all__ = [
    "ExecutionOutcome",
    "ExecutionStatus",
    "StepExecutor",
    "WorkerPool",
    "run_from_env",
]


def __getattr__(name: str):
    if name == "WorkerPool":
        from .pool import WorkerPool as _WorkerPool
        return _WorkerPool
    if name == "run_from_env":
        from .runner import run_from_env as _run_from_env
        return _run_from_env
    raise AttributeError(name)
