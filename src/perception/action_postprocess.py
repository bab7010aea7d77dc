"""
动作识别后处理模块
数值稳定的softmax + Top-K + 置信度阈值
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from .errors import MalformedOutput

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionObservation:
    """单个动作识别结果"""

    action_id: int
    label: str
    confidence: float
    timestamp: float  # 产生该结果的窗口中最后一帧的采集时间戳


def softmax(logits) -> np.ndarray:
    """
    数值稳定的softmax：先减去最大logit再取指数

    Args:
        logits: 一维logits

    Returns:
        概率分布（float64）
    """
    values = np.asarray(logits, dtype=np.float64).reshape(-1)
    if values.size == 0:
        return values
    shifted = np.exp(values - np.max(values))
    return shifted / np.sum(shifted)


class ActionPostprocessor:
    """
    将原始logits转换为按置信度降序排列的动作结果
    """

    def __init__(self, labels: Sequence[str], confidence_threshold: float = 0.5, top_k: int = 3):
        """
        Args:
            labels: 动作标签表
            confidence_threshold: 动作置信度阈值
            top_k: 最多返回的动作数
        """
        if not labels:
            raise ValueError("labels must not be empty")
        self.labels = list(labels)
        self.confidence_threshold = confidence_threshold
        self.top_k = top_k

    def decode(self, raw_logits, timestamp: float) -> List[ActionObservation]:
        """
        解码logits，格式错误时抛出MalformedOutput

        Args:
            raw_logits: 长度等于动作类别数的logits（允许 (1, C) 批次形状）
            timestamp: 窗口中最后一帧的采集时间戳

        Returns:
            动作结果列表
        """
        logits = np.asarray(raw_logits, dtype=np.float64).reshape(-1)
        if logits.size != len(self.labels):
            raise MalformedOutput(
                f"expected {len(self.labels)} action logits, got {logits.size}"
            )
        if not np.all(np.isfinite(logits)):
            raise MalformedOutput("action logits contain NaN or Inf")

        probs = softmax(logits)
        order = np.argsort(-probs, kind="stable")[:self.top_k]

        return [
            ActionObservation(
                action_id=int(idx),
                label=self.labels[idx],
                confidence=float(probs[idx]),
                timestamp=float(timestamp),
            )
            for idx in order
            if probs[idx] >= self.confidence_threshold
        ]

    def process(self, raw_logits, timestamp: float) -> List[ActionObservation]:
        """与decode()相同，但输出格式错误时记录日志并返回空列表"""
        try:
            return self.decode(raw_logits, timestamp)
        except MalformedOutput as e:
            logger.warning("Malformed action output: %s", e)
            return []
