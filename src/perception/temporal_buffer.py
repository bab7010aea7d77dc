"""
时序帧缓冲模块
为动作识别模型维护固定容量的滑动窗口（先进先出）
"""

from collections import deque
from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np

from .preprocessing import InputTensor


@dataclass(frozen=True, eq=False)
class TemporalWindow:
    """
    按到达顺序（最旧在前）排列的N个动作张量快照

    Attributes:
        tensors: N个 (C, H, W) 数组
        timestamps: 对应的采集时间戳
    """

    tensors: Tuple[np.ndarray, ...]
    timestamps: Tuple[float, ...]

    def __len__(self) -> int:
        return len(self.tensors)

    @property
    def last_timestamp(self) -> float:
        """窗口中最后一帧的采集时间戳"""
        return self.timestamps[-1]

    def stack(self) -> np.ndarray:
        """堆叠为 (1, N, C, H, W) 的模型输入"""
        return np.stack(self.tensors, axis=0)[np.newaxis, ...]


class TemporalFrameBuffer:
    """
    固定容量的滑动窗口

    push() 追加最新的动作张量，超出容量时淘汰最旧的一个；
    仅当恰好持有N个张量时 is_ready() 为True。
    缓冲区持有张量的独立副本，与源帧生命周期无关。
    """

    def __init__(self, sequence_length: int):
        """
        Args:
            sequence_length: 窗口长度N
        """
        if sequence_length <= 0:
            raise ValueError(f"sequence_length must be positive, got {sequence_length}")
        self.sequence_length = sequence_length
        self._tensors: deque = deque(maxlen=sequence_length)
        self._timestamps: deque = deque(maxlen=sequence_length)
        self._pushed = 0

    def push(self, tensor: InputTensor) -> bool:
        """
        追加一个动作张量

        Args:
            tensor: 预处理后的动作输入

        Returns:
            缓冲区是否已就绪
        """
        data = np.array(tensor.data, dtype=np.float32, copy=True)
        data.flags.writeable = False
        self._tensors.append(data)
        self._timestamps.append(float(tensor.timestamp))
        self._pushed += 1
        return self.is_ready()

    def is_ready(self) -> bool:
        return len(self._tensors) == self.sequence_length

    def snapshot(self) -> TemporalWindow:
        """
        返回当前内容的有序副本，之后的push()不会影响快照
        """
        return TemporalWindow(
            tensors=tuple(self._tensors),
            timestamps=tuple(self._timestamps),
        )

    def clear(self):
        """清空缓冲区（关闭动作识别或切换相机时）"""
        self._tensors.clear()
        self._timestamps.clear()

    def __len__(self) -> int:
        return len(self._tensors)

    def get_stats(self) -> Dict[str, object]:
        """缓冲区统计信息"""
        return {
            'length': len(self._tensors),
            'capacity': self.sequence_length,
            'frames_pushed': self._pushed,
            'ready_for_processing': self.is_ready(),
        }
