"""
相机帧模型与像素格式转换
将打包格式（RGB/BGR/RGBA/BGRA）和平面YUV 4:2:0统一转换为RGB数组
"""

import time
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from .errors import InvalidFrame

# 打包格式的通道数
PACKED_CHANNELS = {
    "rgb": 3,
    "bgr": 3,
    "rgba": 4,
    "bgra": 4,
}

YUV420 = "yuv420"
PIXEL_FORMATS = tuple(PACKED_CHANNELS) + (YUV420,)

_TO_RGB = {
    "bgr": cv2.COLOR_BGR2RGB,
    "rgba": cv2.COLOR_RGBA2RGB,
    "bgra": cv2.COLOR_BGRA2RGB,
}


@dataclass(frozen=True, eq=False)
class Frame:
    """
    单个相机帧

    Attributes:
        width: 宽度（像素）
        height: 高度（像素）
        pixel_format: 'rgb'、'bgr'、'rgba'、'bgra' 或 'yuv420'
        planes: 原始字节平面（打包格式1个，YUV 4:2:0为Y、U、V三个）
        timestamp: 采集时间戳（秒）
        row_strides: 每个平面的行跨度（字节），None表示紧密排列
    """

    width: int
    height: int
    pixel_format: str
    planes: Tuple[np.ndarray, ...]
    timestamp: float
    row_strides: Optional[Tuple[int, ...]] = None

    @classmethod
    def from_array(cls, image: np.ndarray, pixel_format: str = "bgr",
                   timestamp: Optional[float] = None) -> "Frame":
        """
        从HxWxC图像数组（如cv2.VideoCapture读取的帧）创建帧

        Args:
            image: 图像数组
            pixel_format: 打包像素格式
            timestamp: 采集时间戳（默认time.monotonic()）

        Returns:
            Frame实例，持有图像的只读副本
        """
        if pixel_format not in PACKED_CHANNELS:
            raise InvalidFrame(f"from_array() needs a packed format, got {pixel_format!r}")
        if image is None or image.ndim != 3:
            raise InvalidFrame("image must be an HxWxC array")
        height, width, channels = image.shape
        if channels != PACKED_CHANNELS[pixel_format]:
            raise InvalidFrame(
                f"{pixel_format} frame needs {PACKED_CHANNELS[pixel_format]} channels, got {channels}"
            )
        data = np.ascontiguousarray(image, dtype=np.uint8).reshape(-1).copy()
        data.flags.writeable = False
        return cls(
            width=int(width),
            height=int(height),
            pixel_format=pixel_format,
            planes=(data,),
            timestamp=time.monotonic() if timestamp is None else float(timestamp),
        )

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height


def _as_bytes(plane) -> np.ndarray:
    if isinstance(plane, np.ndarray):
        return np.asarray(plane, dtype=np.uint8).reshape(-1)
    return np.frombuffer(plane, dtype=np.uint8)


def _read_plane(plane, rows: int, row_bytes: int, stride: Optional[int], name: str) -> np.ndarray:
    """按行跨度读取一个平面，返回 (rows, row_bytes) 视图"""
    data = _as_bytes(plane)
    stride = row_bytes if stride is None else int(stride)
    if stride < row_bytes:
        raise InvalidFrame(f"{name} plane stride {stride} is smaller than row size {row_bytes}")
    needed = stride * (rows - 1) + row_bytes
    if data.size < needed:
        raise InvalidFrame(f"{name} plane has {data.size} bytes, expected at least {needed}")
    if stride == row_bytes:
        return data[:rows * row_bytes].reshape(rows, row_bytes)
    # 最后一行可能没有行尾填充
    if data.size < stride * rows:
        data = np.concatenate([data, np.zeros(stride * rows - data.size, dtype=np.uint8)])
    return data[:stride * rows].reshape(rows, stride)[:, :row_bytes]


def _yuv420_to_rgb(frame: Frame) -> np.ndarray:
    if len(frame.planes) != 3:
        raise InvalidFrame(f"yuv420 frame needs 3 planes, got {len(frame.planes)}")
    w, h = frame.width, frame.height
    cw, ch = (w + 1) // 2, (h + 1) // 2
    strides = frame.row_strides or (None, None, None)

    y = _read_plane(frame.planes[0], h, w, strides[0], "Y").astype(np.float32)
    u = _read_plane(frame.planes[1], ch, cw, strides[1], "U").astype(np.float32)
    v = _read_plane(frame.planes[2], ch, cw, strides[2], "V").astype(np.float32)

    # 色度上采样（最近邻）
    u = np.repeat(np.repeat(u, 2, axis=0), 2, axis=1)[:h, :w] - 128.0
    v = np.repeat(np.repeat(v, 2, axis=0), 2, axis=1)[:h, :w] - 128.0

    # BT.601 全范围
    r = y + 1.402 * v
    g = y - 0.344136 * u - 0.714136 * v
    b = y + 1.772 * u
    rgb = np.stack([r, g, b], axis=-1)
    return np.clip(np.rint(rgb), 0, 255).astype(np.uint8)


def frame_to_rgb(frame: Frame) -> np.ndarray:
    """
    将帧转换为连续的HxWx3 uint8 RGB数组

    Args:
        frame: 输入帧

    Returns:
        RGB图像

    Raises:
        InvalidFrame: 尺寸为零、格式未知或平面数据不足
    """
    if frame is None:
        raise InvalidFrame("frame is None")
    if frame.width <= 0 or frame.height <= 0:
        raise InvalidFrame(f"zero-area frame: {frame.width}x{frame.height}")
    if frame.pixel_format not in PIXEL_FORMATS:
        raise InvalidFrame(f"unsupported pixel format: {frame.pixel_format!r}")
    if not frame.planes:
        raise InvalidFrame("frame has no planes")

    if frame.pixel_format == YUV420:
        return _yuv420_to_rgb(frame)

    channels = PACKED_CHANNELS[frame.pixel_format]
    stride = frame.row_strides[0] if frame.row_strides else None
    rows = _read_plane(frame.planes[0], frame.height, frame.width * channels, stride, "packed")
    image = rows.reshape(frame.height, frame.width, channels)

    if frame.pixel_format == "rgb":
        return np.ascontiguousarray(image)
    return cv2.cvtColor(np.ascontiguousarray(image), _TO_RGB[frame.pixel_format])
