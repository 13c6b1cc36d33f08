"""bg-jobs - 后台作业子系统。

在单个前台（UI）线程驱动的程序中启动、监视并回收外部进程：
- Spawner: 校验参数、按需连接 stdin/stdout/stderr、创建作业
- JobRegistry: 活动作业列表、周期性回收、运行计数
- JobController: 阻塞/可取消等待、引用计数、退出回调

环境变量:
    BGJ_SHELL: 用户 shell
    BGJ_POLL_INTERVAL: 可取消等待的检查间隔
    BGJ_LOG_DEBUG: 日志调试模式 (默认 false)

用法:
    bg-jobs run "make -j4"
"""

__version__ = "0.1.0"

from .cancellation import NO_CANCELLATION, CancellationToken
from .controller import JobController, JobResult, ResultStatus
from .errors import JobError, SpawnError, SpawnErrorKind, WaitFailed
from .job import Job, JobFlags, JobKind, JobState
from .registry import JobRegistry
from .runtime.spawner import ShellMode, Spawner
from .status import JobStats
from .tasks import BgOp, execute

__all__ = [
    "__version__",
    "BgOp",
    "CancellationToken",
    "Job",
    "JobController",
    "JobError",
    "JobFlags",
    "JobKind",
    "JobRegistry",
    "JobResult",
    "JobState",
    "JobStats",
    "NO_CANCELLATION",
    "ResultStatus",
    "ShellMode",
    "SpawnError",
    "SpawnErrorKind",
    "Spawner",
    "WaitFailed",
    "execute",
]
