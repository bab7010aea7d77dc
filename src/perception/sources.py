"""
视频源模块
从摄像头或视频文件读取帧并包装为Frame
"""

import logging
import time
from typing import Iterator, Optional, Union

import cv2

from .frames import Frame

logger = logging.getLogger(__name__)


class VideoSource:
    """
    cv2.VideoCapture的包装，按采集顺序产生BGR帧

    摄像头模式下时间戳取自单调时钟；视频文件模式下取自帧位置（CAP_PROP_POS_MSEC）。
    """

    def __init__(self, source: Union[int, str] = 0):
        """
        Args:
            source: 摄像头索引或视频文件路径
        """
        self.source = source
        self.is_camera = isinstance(source, int)
        self.cap: Optional[cv2.VideoCapture] = None
        self.frame_count = 0

    def open(self) -> "VideoSource":
        self.cap = cv2.VideoCapture(self.source)
        if not self.cap.isOpened():
            self.cap.release()
            self.cap = None
            kind = "camera" if self.is_camera else "video file"
            raise IOError(f"Cannot open {kind}: {self.source}")

        logger.info("Opened %s (%dx%d @ %.1ffps)", self.source, self.width, self.height, self.fps)
        return self

    @property
    def width(self) -> int:
        return int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH)) if self.cap is not None else 0

    @property
    def height(self) -> int:
        return int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT)) if self.cap is not None else 0

    @property
    def fps(self) -> float:
        return float(self.cap.get(cv2.CAP_PROP_FPS)) if self.cap is not None else 0.0

    def read(self) -> Optional[Frame]:
        """读取下一帧，流结束时返回None"""
        if self.cap is None:
            return None
        ret, image = self.cap.read()
        if not ret or image is None:
            return None

        if self.is_camera:
            timestamp = time.monotonic()
        else:
            timestamp = self.cap.get(cv2.CAP_PROP_POS_MSEC) / 1000.0
        self.frame_count += 1
        return Frame.from_array(image, pixel_format="bgr", timestamp=timestamp)

    def __iter__(self) -> Iterator[Frame]:
        if self.cap is None:
            self.open()
        while True:
            frame = self.read()
            if frame is None:
                break
            yield frame

    def close(self):
        if self.cap is not None:
            self.cap.release()
            self.cap = None

    def __enter__(self):
        if self.cap is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
