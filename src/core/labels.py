"""
标签表加载
从文本文件读取类别名称，失败时使用内置的回退标签
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

# COCO类别名称（YOLO默认）
COCO_LABELS = [
    'person', 'bicycle', 'car', 'motorcycle', 'airplane', 'bus', 'train', 'truck', 'boat', 'traffic light',
    'fire hydrant', 'stop sign', 'parking meter', 'bench', 'bird', 'cat', 'dog', 'horse', 'sheep', 'cow',
    'elephant', 'bear', 'zebra', 'giraffe', 'backpack', 'umbrella', 'handbag', 'tie', 'suitcase', 'frisbee',
    'skis', 'snowboard', 'sports ball', 'kite', 'baseball bat', 'baseball glove', 'skateboard', 'surfboard',
    'tennis racket', 'bottle', 'wine glass', 'cup', 'fork', 'knife', 'spoon', 'bowl', 'banana', 'apple',
    'sandwich', 'orange', 'broccoli', 'carrot', 'hot dog', 'pizza', 'donut', 'cake', 'chair', 'couch',
    'potted plant', 'bed', 'dining table', 'toilet', 'tv', 'laptop', 'mouse', 'remote', 'keyboard', 'cell phone',
    'microwave', 'oven', 'toaster', 'sink', 'refrigerator', 'book', 'clock', 'vase', 'scissors', 'teddy bear',
    'hair drier', 'toothbrush'
]

# 常见人体动作
DEFAULT_ACTION_LABELS = [
    'walking', 'running', 'sitting', 'standing', 'jumping', 'waving', 'clapping', 'dancing',
    'eating', 'drinking', 'reading', 'writing', 'talking', 'sleeping', 'exercising', 'cooking',
    'playing', 'swimming', 'cycling', 'driving', 'laughing', 'crying', 'hugging', 'kissing',
    'shaking hands', 'applauding', 'stretching', 'yawning', 'pointing', 'nodding', 'shaking head',
    'looking', 'listening', 'thinking', 'working', 'studying', 'teaching', 'cleaning', 'washing',
    'dressing'
]


def parse_labels(text: str) -> List[str]:
    """每行一个标签，忽略空行和首尾空白"""
    return [line.strip() for line in text.splitlines() if line.strip()]


def load_label_file(path: Union[str, Path]) -> List[str]:
    """
    读取标签文件

    Args:
        path: 标签文件路径

    Returns:
        标签列表

    Raises:
        OSError: 文件无法读取
        ValueError: 文件中没有任何标签
    """
    labels = parse_labels(Path(path).read_text(encoding="utf-8"))
    if not labels:
        raise ValueError(f"Label file is empty: {path}")
    return labels


def load_labels(path: Optional[Union[str, Path]], fallback: Sequence[str]) -> List[str]:
    """
    加载标签，文件缺失或为空时回退到内置标签

    Args:
        path: 标签文件路径（None表示直接使用回退标签）
        fallback: 回退标签

    Returns:
        标签列表
    """
    if path is None:
        return list(fallback)
    try:
        labels = load_label_file(path)
        logger.info("Loaded %d labels from %s", len(labels), path)
        return labels
    except (OSError, ValueError) as e:
        logger.warning("Using fallback labels (%d): %s", len(fallback), e)
        return list(fallback)


def get_default_labels(kind: str) -> List[str]:
    """返回 'object' 或 'action' 的内置标签"""
    if kind == "object":
        return list(COCO_LABELS)
    if kind == "action":
        return list(DEFAULT_ACTION_LABELS)
    raise ValueError(f"Unknown label kind: {kind!r}")
