"""
帧预处理模块
letterbox缩放 + 填充 + 归一化，输出通道优先(CHW)的模型输入张量
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from core.config import NORMALIZATION_MODES, imagenet_stats
from core.utils import round_half_up

from .errors import InvalidFrame
from .frames import Frame, frame_to_rgb


@dataclass(frozen=True)
class LetterboxTransform:
    """
    模型空间与帧空间之间的几何映射

    x_frame = (x_model - pad_x) / scale
    """

    scale: float
    pad_x: float
    pad_y: float
    frame_width: int
    frame_height: int

    def to_frame(self, x: float, y: float) -> Tuple[float, float]:
        """模型空间坐标 -> 原始帧坐标（不裁剪）"""
        return (x - self.pad_x) / self.scale, (y - self.pad_y) / self.scale

    def to_model(self, x: float, y: float) -> Tuple[float, float]:
        """原始帧坐标 -> 模型空间坐标"""
        return x * self.scale + self.pad_x, y * self.scale + self.pad_y


@dataclass(frozen=True, eq=False)
class InputTensor:
    """
    归一化后的模型输入 (C, H, W) float32，附带letterbox变换

    Attributes:
        data: 张量数据
        transform: letterbox变换（没有几何变换时为None）
        timestamp: 源帧的采集时间戳
    """

    data: np.ndarray
    transform: Optional[LetterboxTransform] = None
    timestamp: float = 0.0

    def __post_init__(self):
        if self.data.ndim != 3:
            raise ValueError(f"tensor must be (C, H, W), got shape {self.data.shape}")
        channels, height, width = self.data.shape
        if self.data.size != channels * height * width:
            raise ValueError("tensor element count does not match its shape")

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.data.shape


def letterbox(image: np.ndarray, size: int, pad_value: int = 114) -> Tuple[np.ndarray, LetterboxTransform]:
    """
    保持纵横比缩放到size x size画布并居中填充

    Args:
        image: HxWx3 uint8 图像
        size: 目标正方形边长S
        pad_value: 填充颜色（灰度值）

    Returns:
        (画布, LetterboxTransform)
    """
    if image is None or image.ndim != 3 or image.shape[2] != 3:
        raise InvalidFrame("letterbox() expects an HxWx3 image")
    height, width = image.shape[:2]
    if width <= 0 or height <= 0:
        raise InvalidFrame(f"zero-area image: {width}x{height}")
    if size <= 0:
        raise ValueError(f"size must be positive, got {size}")

    scale = min(size / width, size / height)
    new_w = min(size, max(1, round_half_up(width * scale)))
    new_h = min(size, max(1, round_half_up(height * scale)))

    resized = cv2.resize(image, (new_w, new_h), interpolation=cv2.INTER_LINEAR)

    pad_x = (size - new_w) / 2
    pad_y = (size - new_h) / 2
    left = round_half_up(pad_x)
    top = round_half_up(pad_y)
    # 奇数填充时右/下边缘不能越界
    left = min(left, size - new_w)
    top = min(top, size - new_h)

    canvas = np.full((size, size, 3), pad_value, dtype=np.uint8)
    canvas[top:top + new_h, left:left + new_w] = resized

    transform = LetterboxTransform(
        scale=scale,
        pad_x=pad_x,
        pad_y=pad_y,
        frame_width=width,
        frame_height=height,
    )
    return canvas, transform


def normalize(image: np.ndarray, mode: str) -> np.ndarray:
    """
    HxWx3 uint8 -> 3xHxW float32

    Args:
        image: 输入图像
        mode: 'unit' [0,1]、'symmetric' [-1,1] 或 'imagenet' (mean/std)

    Returns:
        通道优先的float32数组
    """
    pixels = image.astype(np.float32) / 255.0
    if mode == "unit":
        pass
    elif mode == "symmetric":
        pixels = (pixels - 0.5) * 2.0
    elif mode == "imagenet":
        mean, std = imagenet_stats()
        pixels = (pixels - np.array(mean, dtype=np.float32)) / np.array(std, dtype=np.float32)
    else:
        raise ValueError(f"normalization must be one of {NORMALIZATION_MODES}, got {mode!r}")
    return np.ascontiguousarray(pixels.transpose(2, 0, 1), dtype=np.float32)


class FramePreprocessor:
    """
    将帧转换为单个模型所需的输入张量
    纯函数式：除配置外不持有状态
    """

    def __init__(self, input_size: int, normalization: str = "unit", pad_value: int = 114):
        if normalization not in NORMALIZATION_MODES:
            raise ValueError(f"normalization must be one of {NORMALIZATION_MODES}, got {normalization!r}")
        self.input_size = input_size
        self.normalization = normalization
        self.pad_value = pad_value

    def process(self, frame: Frame) -> InputTensor:
        """
        预处理一个帧

        Raises:
            InvalidFrame: 帧为空或格式非法，调用方应跳过该帧
        """
        return self.process_rgb(frame_to_rgb(frame), timestamp=frame.timestamp)

    def process_rgb(self, image: np.ndarray, timestamp: float = 0.0) -> InputTensor:
        """预处理已转换好的RGB图像"""
        canvas, transform = letterbox(image, self.input_size, self.pad_value)
        return InputTensor(
            data=normalize(canvas, self.normalization),
            transform=transform,
            timestamp=timestamp,
        )

    __call__ = process
