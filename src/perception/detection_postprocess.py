"""
目标检测后处理模块
置信度过滤 + letterbox逆变换 + 贪心非极大值抑制(NMS)
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .errors import MalformedOutput
from .preprocessing import LetterboxTransform

logger = logging.getLogger(__name__)

UNKNOWN_LABEL = "Unknown"


@dataclass(frozen=True)
class BoundingBox:
    """原始帧像素坐标下的边界框 (left <= right, top <= bottom)"""

    left: float
    top: float
    right: float
    bottom: float

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    @property
    def center(self) -> Tuple[float, float]:
        return (self.left + self.right) / 2.0, (self.top + self.bottom) / 2.0

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.left, self.top, self.right, self.bottom


@dataclass(frozen=True)
class Detection:
    """单个目标检测结果"""

    class_id: int
    label: str
    confidence: float
    box: BoundingBox


def iou(a: BoundingBox, b: BoundingBox) -> float:
    """两个框的交并比"""
    inter_left = max(a.left, b.left)
    inter_top = max(a.top, b.top)
    inter_right = min(a.right, b.right)
    inter_bottom = min(a.bottom, b.bottom)

    if inter_left >= inter_right or inter_top >= inter_bottom:
        return 0.0

    intersection = (inter_right - inter_left) * (inter_bottom - inter_top)
    union = a.area + b.area - intersection
    return intersection / union if union > 0 else 0.0


def _iou_one_to_many(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    left = np.maximum(box[0], boxes[:, 0])
    top = np.maximum(box[1], boxes[:, 1])
    right = np.minimum(box[2], boxes[:, 2])
    bottom = np.minimum(box[3], boxes[:, 3])

    intersection = np.clip(right - left, 0.0, None) * np.clip(bottom - top, 0.0, None)
    area = (box[2] - box[0]) * (box[3] - box[1])
    areas = (boxes[:, 2] - boxes[:, 0]) * (boxes[:, 3] - boxes[:, 1])
    union = area + areas - intersection
    with np.errstate(divide="ignore", invalid="ignore"):
        result = np.where(union > 0, intersection / union, 0.0)
    return result


def non_max_suppression(boxes: np.ndarray, scores: np.ndarray, iou_threshold: float,
                        max_keep: Optional[int] = None) -> List[int]:
    """
    贪心NMS（与类别无关）

    按置信度降序稳定排序；与任一已保留框的IoU大于阈值的框被抑制。
    置信度相同时排序靠前者（原始顺序更早）优先。

    Args:
        boxes: (N, 4) xyxy
        scores: (N,) 置信度
        iou_threshold: IoU阈值
        max_keep: 最多保留数量

    Returns:
        保留框的索引，按置信度降序
    """
    if len(boxes) == 0:
        return []

    order = np.argsort(-scores, kind="stable")
    suppressed = np.zeros(len(boxes), dtype=bool)
    keep: List[int] = []

    for position, idx in enumerate(order):
        if suppressed[idx]:
            continue
        keep.append(int(idx))
        if max_keep is not None and len(keep) >= max_keep:
            break

        rest = order[position + 1:]
        rest = rest[~suppressed[rest]]
        if rest.size == 0:
            continue
        overlaps = _iou_one_to_many(boxes[idx], boxes[rest])
        suppressed[rest[overlaps > iou_threshold]] = True

    return keep


class DetectionPostprocessor:
    """
    将原始模型输出转换为原始帧坐标下去重后的检测列表

    模型输出可解释为 numPredictions x (4 + numClasses)，
    每行为模型空间下的中心格式框 (cx, cy, w, h) 及各类别置信度。
    """

    def __init__(self, labels: Sequence[str], input_size: int,
                 confidence_threshold: float = 0.4, nms_threshold: float = 0.4,
                 max_detections: int = 100, normalized_boxes: bool = False):
        """
        Args:
            labels: 类别标签表
            input_size: 模型输入边长（用于归一化框坐标）
            confidence_threshold: 检测置信度阈值
            nms_threshold: NMS的IoU阈值
            max_detections: 最多保留的检测数量
            normalized_boxes: 框坐标是否为[0, 1]
        """
        if not labels:
            raise ValueError("labels must not be empty")
        self.labels = list(labels)
        self.input_size = input_size
        self.confidence_threshold = confidence_threshold
        self.nms_threshold = nms_threshold
        self.max_detections = max_detections
        self.normalized_boxes = normalized_boxes

    @property
    def num_classes(self) -> int:
        return len(self.labels)

    @property
    def stride(self) -> int:
        return 4 + self.num_classes

    def reshape(self, raw_output) -> np.ndarray:
        """
        将原始输出整理为 (N, 4 + C)

        Raises:
            MalformedOutput: 长度或形状与期望不符
        """
        output = np.asarray(raw_output, dtype=np.float32)
        if output.ndim == 3 and output.shape[0] == 1:
            output = output[0]
        if output.ndim == 2:
            if output.shape[1] != self.stride:
                raise MalformedOutput(
                    f"expected rows of {self.stride} values, got shape {output.shape}"
                )
            return output
        if output.ndim != 1:
            raise MalformedOutput(f"unsupported output shape {output.shape}")
        if output.size % self.stride != 0:
            raise MalformedOutput(
                f"output length {output.size} is not a multiple of {self.stride}"
            )
        return output.reshape(-1, self.stride)

    def decode(self, raw_output, transform: LetterboxTransform) -> List[Detection]:
        """
        解码并执行NMS，输出格式错误时抛出MalformedOutput

        Args:
            raw_output: 模型原始输出
            transform: 预处理时记录的letterbox变换

        Returns:
            按置信度降序排列的检测列表
        """
        predictions = self.reshape(raw_output)
        if predictions.shape[0] == 0:
            return []

        class_scores = predictions[:, 4:]
        class_ids = np.argmax(np.nan_to_num(class_scores, nan=-np.inf), axis=1)
        confidences = class_scores[np.arange(len(class_scores)), class_ids]

        # NaN永远不会通过阈值
        keep = np.isfinite(confidences) & (confidences >= self.confidence_threshold)
        keep &= np.all(np.isfinite(predictions[:, :4]), axis=1)
        if not np.any(keep):
            return []

        boxes = predictions[keep, :4].astype(np.float64)
        confidences = confidences[keep].astype(np.float64)
        class_ids = class_ids[keep]

        if self.normalized_boxes:
            boxes = boxes * float(self.input_size)

        corners = self._to_frame_corners(boxes, transform)

        # 退化框
        valid = (corners[:, 2] > corners[:, 0]) & (corners[:, 3] > corners[:, 1])
        corners = corners[valid]
        confidences = confidences[valid]
        class_ids = class_ids[valid]

        kept = non_max_suppression(corners, confidences, self.nms_threshold, self.max_detections)

        return [
            Detection(
                class_id=int(class_ids[i]),
                label=self.labels[class_ids[i]] if class_ids[i] < len(self.labels) else UNKNOWN_LABEL,
                confidence=float(confidences[i]),
                box=BoundingBox(*(float(v) for v in corners[i])),
            )
            for i in kept
        ]

    def process(self, raw_output, transform: LetterboxTransform) -> List[Detection]:
        """
        与decode()相同，但输出格式错误时记录日志并返回空列表
        """
        try:
            return self.decode(raw_output, transform)
        except MalformedOutput as e:
            logger.warning("Malformed object detection output: %s", e)
            return []

    @staticmethod
    def _to_frame_corners(boxes: np.ndarray, transform: LetterboxTransform) -> np.ndarray:
        cx, cy, w, h = boxes[:, 0], boxes[:, 1], boxes[:, 2], boxes[:, 3]
        x1 = cx - w / 2.0
        y1 = cy - h / 2.0
        x2 = cx + w / 2.0
        y2 = cy + h / 2.0

        # 逆letterbox变换，并裁剪到原始帧范围
        x1 = np.clip((x1 - transform.pad_x) / transform.scale, 0.0, transform.frame_width)
        x2 = np.clip((x2 - transform.pad_x) / transform.scale, 0.0, transform.frame_width)
        y1 = np.clip((y1 - transform.pad_y) / transform.scale, 0.0, transform.frame_height)
        y2 = np.clip((y2 - transform.pad_y) / transform.scale, 0.0, transform.frame_height)

        return np.stack([x1, y1, x2, y2], axis=1)
