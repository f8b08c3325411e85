"""
单次运行的截止时间 / 取消令牌

执行批次、批次间等待、重试等待三个挂起点共用同一个 Deadline，
截止时间一到立即唤醒所有等待并调用已注册的取消回调（例如 KILL QUERY）
"""

import logging
import threading
import time
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class Deadline:
    """运行截止时间"""

    def __init__(self, timeout_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._expires_at = clock() + timeout_seconds
        self._cancelled = threading.Event()
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    def __enter__(self) -> 'Deadline':
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def start(self):
        """启动计时器，到期时自动取消"""
        self._timer = threading.Timer(max(self.remaining(), 0.0), self.cancel)
        self._timer.daemon = True
        self._timer.start()

    def close(self):
        """运行结束后停止计时器"""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def remaining(self) -> float:
        """剩余秒数，不会小于 0"""
        return max(self._expires_at - self._clock(), 0.0)

    @property
    def expired(self) -> bool:
        return self._cancelled.is_set() or self.remaining() <= 0

    def cancel(self):
        """标记为已取消并执行取消回调（只执行一次）"""
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancel callback failed: {e}")

    def add_cancel_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        注册取消回调，返回用于注销的函数

        已经取消时立即执行回调
        """
        with self._lock:
            if not self._cancelled.is_set():
                self._callbacks.append(callback)
                return lambda: self._remove_callback(callback)

        callback()
        return lambda: None

    def _remove_callback(self, callback: Callable[[], None]):
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def sleep(self, seconds: float) -> bool:
        """
        可被截止时间打断的等待

        Returns:
            bool: 等满 seconds 返回 True，截止时间先到返回 False
        """
        if seconds <= 0:
            return not self.expired
        remaining = self.remaining()
        if seconds >= remaining:
            self._cancelled.wait(remaining)
            return False
        return not self._cancelled.wait(seconds)
