from .task_store import TaskStore, InMemoryTaskStore
from .file_task_store import FileTaskStore
from .task_manager import BackgroundTaskManager, TaskResources, KillResult, run_in_background
from .recovery import recover_running_tasks, recover_failed_tasks, cleanup_stale_tasks, RESTART_ERROR
