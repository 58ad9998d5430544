"""
后台任务线程池
导入等耗时任务在线程池中执行，接口立即返回任务 ID
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, Future
from typing import Any, Callable, Optional

from crm_server import config

logger = logging.getLogger(__name__)


class TaskExecutor:
    """
    全局共享的后台线程池

    首次提交任务时按 IMPORT_WORKERS 创建线程池，应用关闭时调用 shutdown
    """

    _executor: Optional[ThreadPoolExecutor] = None
    _lock = threading.Lock()

    @classmethod
    def _get_executor(cls) -> ThreadPoolExecutor:
        with cls._lock:
            if cls._executor is None:
                workers = max(1, config.IMPORT_WORKERS)
                cls._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ImportWorker")
                logger.info(f"后台线程池已创建，线程数: {workers}")
            return cls._executor

    @classmethod
    def submit(cls, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """
        向线程池提交任务

        Args:
            fn: 要执行的函数
            *args: 位置参数
            **kwargs: 关键字参数

        Returns:
            Future 对象
        """
        future = cls._get_executor().submit(fn, *args, **kwargs)
        future.add_done_callback(cls._log_failure)
        return future

    @staticmethod
    def _log_failure(future: Future):
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"后台任务异常退出: {future.exception()}")

    @classmethod
    def shutdown(cls, wait: bool = True):
        """关闭线程池，wait 为 True 时等待正在执行的任务结束"""
        with cls._lock:
            executor, cls._executor = cls._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
            logger.info("后台线程池已关闭")
