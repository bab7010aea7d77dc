"""
日志与性能记录模块
提供统一的日志配置，以及记录推理耗时的性能记录器（可选写入TensorBoard）
"""

import logging
import threading
import time
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Dict, Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(level: Union[int, str] = logging.INFO,
                  log_file: Optional[Union[str, Path]] = None) -> logging.Logger:
    """
    配置根日志记录器：控制台输出 + 可选文件输出

    Args:
        level: 日志级别
        log_file: 日志文件路径（None表示只输出到控制台）

    Returns:
        根日志记录器
    """
    root = logging.getLogger()
    root.setLevel(level)

    # 移除现有的处理器
    root.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_path, mode='a')
        fh.setFormatter(formatter)
        root.addHandler(fh)

    return root


class PerformanceLogger:
    """
    记录各操作（预处理、目标推理、动作推理等）的耗时

    - 只保留最近max_metrics条记录
    - 超过slow_threshold_ms的操作记录警告
    - 提供log_dir时同时写入TensorBoard标量
    """

    def __init__(self, max_metrics: int = 100, slow_threshold_ms: float = 500.0,
                 log_dir: Optional[Union[str, Path]] = None, summary_every: int = 0):
        """
        Args:
            max_metrics: 保留的最近记录数
            slow_threshold_ms: 慢操作阈值（毫秒）
            log_dir: TensorBoard日志目录（None表示不写入）
            summary_every: 每N条记录输出一次摘要（0表示不输出）
        """
        self.logger = logging.getLogger("perception.performance")
        self.slow_threshold_ms = slow_threshold_ms
        self.summary_every = summary_every

        self._metrics: deque = deque(maxlen=max_metrics)
        self._counters: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()
        self._step = 0

        self.writer = None
        if log_dir is not None:
            from torch.utils.tensorboard import SummaryWriter
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            self.writer = SummaryWriter(str(log_dir), flush_secs=10)

    def record(self, operation: str, seconds: float, **metadata: Any):
        """
        记录一次操作耗时

        Args:
            operation: 操作名称
            seconds: 耗时（秒）
            metadata: 附加信息（仅在慢操作警告中输出）
        """
        duration_ms = seconds * 1000.0
        with self._lock:
            self._metrics.append((operation, duration_ms, time.time()))
            self._step += 1
            step = self._step

        if duration_ms > self.slow_threshold_ms:
            if metadata:
                self.logger.warning("Slow operation: %s took %.0fms (%s)", operation, duration_ms, metadata)
            else:
                self.logger.warning("Slow operation: %s took %.0fms", operation, duration_ms)

        if self.writer is not None:
            try:
                self.writer.add_scalar(f"latency_ms/{operation}", duration_ms, step)
            except Exception as e:
                self.logger.error("Failed to log metric %s: %s", operation, e)

        if self.summary_every and step % self.summary_every == 0:
            self.log_summary()

    def increment(self, counter: str, amount: int = 1):
        """累加计数器（如被丢弃的帧数）"""
        with self._lock:
            self._counters[counter] += amount
            value = self._counters[counter]
            step = self._step
        if self.writer is not None:
            try:
                self.writer.add_scalar(f"counters/{counter}", value, step)
            except Exception as e:
                self.logger.error("Failed to log counter %s: %s", counter, e)

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def summary(self) -> Dict[str, Dict[str, float]]:
        """
        按操作分组统计最近的记录

        Returns:
            {operation: {'count', 'avg_ms', 'min_ms', 'max_ms'}}
        """
        with self._lock:
            metrics = list(self._metrics)

        groups: Dict[str, list] = defaultdict(list)
        for operation, duration_ms, _ in metrics:
            groups[operation].append(duration_ms)

        return {
            operation: {
                'count': len(durations),
                'avg_ms': sum(durations) / len(durations),
                'min_ms': min(durations),
                'max_ms': max(durations),
            }
            for operation, durations in groups.items()
        }

    def counters(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def log_summary(self):
        """将摘要写入日志"""
        for operation, stats in self.summary().items():
            self.logger.info(
                "%s: count=%d avg=%.1fms min=%.1fms max=%.1fms",
                operation, stats['count'], stats['avg_ms'], stats['min_ms'], stats['max_ms']
            )

    def clear(self):
        with self._lock:
            self._metrics.clear()
            self._counters.clear()

    def flush(self):
        if self.writer is not None:
            self.writer.flush()

    def close(self):
        """关闭TensorBoard写入器"""
        if self.writer is not None:
            try:
                self.writer.close()
            except Exception as e:
                self.logger.error("Error closing TensorBoard writer: %s", e)
            self.writer = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
