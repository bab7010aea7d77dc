"""
融合模块
将每种模态最近一次的有效结果合并为一个带时间戳的AnalysisResult
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .action_postprocess import ActionObservation
from .detection_postprocess import Detection


@dataclass(frozen=True)
class AnalysisResult:
    """
    每个被接纳帧的最终结果，创建后不可变

    Attributes:
        detections: 按置信度降序的检测结果
        actions: 按置信度降序的动作结果
        processing_time: 处理耗时（秒）
        timestamp: 帧被接纳的时间
        frame_timestamp: 源帧的采集时间戳
        context: 预留给场景理解等扩展的数据
    """

    detections: Tuple[Detection, ...]
    actions: Tuple[ActionObservation, ...]
    processing_time: float
    timestamp: float
    frame_timestamp: Optional[float] = None
    context: Dict[str, object] = field(default_factory=dict)

    @classmethod
    def empty(cls, timestamp: float = 0.0) -> "AnalysisResult":
        """没有任何结果时给UI使用的 '无检测' 状态"""
        return cls(detections=(), actions=(), processing_time=0.0, timestamp=timestamp)

    @property
    def has_detections(self) -> bool:
        return len(self.detections) > 0

    @property
    def has_actions(self) -> bool:
        return len(self.actions) > 0

    @property
    def unique_labels(self) -> List[str]:
        """检测结果中出现的类别（保持首次出现顺序）"""
        return list(dict.fromkeys(d.label for d in self.detections))

    @property
    def top_action(self) -> Optional[ActionObservation]:
        return self.actions[0] if self.actions else None


class FusionStage:
    """
    合并目标检测与动作识别结果

    两种模态可能在不同帧上计算（动作识别受节流限制），
    融合即 "每种模态最近一次的有效结果"，不做跨模态置信度混合。
    """

    def __init__(self):
        self._latest_actions: Tuple[ActionObservation, ...] = ()

    @property
    def latest_actions(self) -> Tuple[ActionObservation, ...]:
        return self._latest_actions

    def fuse(self, detections: Optional[Sequence[Detection]],
             actions: Optional[Sequence[ActionObservation]],
             admitted_at: float, processing_time: float,
             frame_timestamp: Optional[float] = None) -> AnalysisResult:
        """
        生成当前帧的结果

        Args:
            detections: 当前帧的检测结果（路径失败时为空列表）
            actions: 本帧动作路径的结果；None表示本帧未运行动作路径，沿用最近一次结果
            admitted_at: 帧被接纳的时间
            processing_time: 处理耗时（秒）
            frame_timestamp: 源帧采集时间戳

        Returns:
            AnalysisResult
        """
        if actions is not None:
            self._latest_actions = tuple(sorted(actions, key=lambda a: a.confidence, reverse=True))

        ordered = tuple(sorted(detections or (), key=lambda d: d.confidence, reverse=True))
        return AnalysisResult(
            detections=ordered,
            actions=self._latest_actions,
            processing_time=processing_time,
            timestamp=admitted_at,
            frame_timestamp=frame_timestamp,
        )

    def reset(self):
        self._latest_actions = ()
