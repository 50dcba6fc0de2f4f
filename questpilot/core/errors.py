"""
错误类型
单个任务的失败只影响该任务，调度器记录后继续下一个
"""


class QuestPilotError(Exception):
    """所有引擎错误的基类"""


class UnsupportedEnvironmentError(QuestPilotError):
    """当前环境不支持该任务 (例如桌面专属任务运行在非桌面环境)"""


class UnsupportedTaskTypeError(QuestPilotError):
    """无法识别的任务类型"""


class ApplicationDataError(QuestPilotError):
    """无法获取目标应用的可执行文件信息"""


class QuestTimeoutError(QuestPilotError):
    """桌面/直播任务超过绝对时限"""


class RequestError(QuestPilotError):
    """请求失败 (非限流)"""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class RateLimitedError(RequestError):
    """HTTP 429 限流"""

    def __init__(self, message: str = "rate limited", retry_after: float | None = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after


class TransientRequestFailure(QuestPilotError):
    """重试次数耗尽后仍然失败"""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


def is_rate_limited(exc: BaseException) -> bool:
    """判断异常是否为限流信号 (429)"""
    if isinstance(exc, RateLimitedError):
        return True
    status = getattr(exc, "status", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status == 429
