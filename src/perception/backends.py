"""
模型推理后端
流水线只依赖统一的推理接口：load(modelBytes, labels) -> handle、run(handle, tensor)、release(handle)
"""

import io
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Union

import numpy as np
import torch

from core.utils import get_device
from utils.validation import validate_array_dims, validate_array_range

from .errors import ModelLoadFailure

logger = logging.getLogger(__name__)


@dataclass
class ModelHandle:
    """已加载模型的句柄"""

    model: Any
    labels: List[str]
    backend: str
    metadata: dict = field(default_factory=dict)
    released: bool = False


class InferenceBackend(ABC):
    """推理能力接口，调度器只依赖此接口"""

    name = "abstract"

    @abstractmethod
    def load(self, model_bytes: bytes, labels: Sequence[str]) -> ModelHandle:
        """
        从字节加载模型

        Raises:
            ModelLoadFailure: 加载失败
        """

    @abstractmethod
    def run(self, handle: ModelHandle, tensor: np.ndarray) -> np.ndarray:
        """
        运行一次推理

        Args:
            handle: load() 返回的句柄
            tensor: 批次化输入，目标模型为 (1, 3, S, S)，动作模型为 (1, N, 3, S, S)

        Returns:
            扁平或二维的原始输出
        """

    def release(self, handle: ModelHandle):
        """释放模型资源"""
        handle.model = None
        handle.released = True


def _first_output(outputs):
    # 检测头可能返回 (preds, features) 元组
    while isinstance(outputs, (tuple, list)):
        outputs = outputs[0]
    return outputs


class TorchScriptBackend(InferenceBackend):
    """
    TorchScript模型后端（torch.jit导出的目标检测或动作识别模型）
    """

    name = "torchscript"

    def __init__(self, device: str = 'auto'):
        """
        Args:
            device: 'cpu'、'cuda' 或 'auto'（自动检测）
        """
        self.device = get_device(device)

    def load(self, model_bytes: bytes, labels: Sequence[str]) -> ModelHandle:
        logger.info("Loading TorchScript model on %s...", self.device)
        try:
            model = torch.jit.load(io.BytesIO(model_bytes), map_location=self.device)
            model.eval()
        except Exception as e:
            raise ModelLoadFailure(f"Cannot load TorchScript model: {e}") from e
        return ModelHandle(model=model, labels=list(labels), backend=self.name)

    @validate_array_dims([4, 5], arg_positions=[2])
    @validate_array_range(arg_positions=[2])
    def run(self, handle: ModelHandle, tensor: np.ndarray) -> np.ndarray:
        with torch.no_grad():
            inputs = torch.from_numpy(np.ascontiguousarray(tensor, dtype=np.float32)).to(self.device)
            outputs = _first_output(handle.model(inputs))
            return outputs.detach().cpu().numpy()


class UltralyticsBackend(InferenceBackend):
    """
    基于ultralytics YOLO的目标检测后端

    直接调用检测网络，返回未经NMS的原始检测头输出，
    并从 (1, 4 + C, N) 转置为 (N, 4 + C)。
    """

    name = "ultralytics"

    def __init__(self, device: str = 'auto', suffix: str = '.pt'):
        self.device = get_device(device)
        self.suffix = suffix

    def load(self, model_bytes: bytes, labels: Sequence[str]) -> ModelHandle:
        logger.info("Loading YOLO model on %s...", self.device)
        try:
            from ultralytics import YOLO
        except ImportError as e:
            raise ModelLoadFailure("Please install YOLO: pip install ultralytics") from e

        # YOLO() 只接受文件路径
        fd, path = tempfile.mkstemp(suffix=self.suffix)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(model_bytes)
            yolo = YOLO(path)
            network = yolo.model.to(self.device).eval()
        except Exception as e:
            raise ModelLoadFailure(f"Cannot load YOLO model: {e}") from e
        finally:
            Path(path).unlink(missing_ok=True)

        # 未给出标签时使用权重自带的类别名
        names = getattr(yolo, 'names', None) or {}
        resolved = list(labels) if labels else [names[i] for i in sorted(names)]
        metadata = {'names': dict(names)}
        if names:
            metadata['num_classes'] = len(names)
        return ModelHandle(model=network, labels=resolved, backend=self.name, metadata=metadata)

    @validate_array_dims([4], arg_positions=[2])
    @validate_array_range(arg_positions=[2])
    def run(self, handle: ModelHandle, tensor: np.ndarray) -> np.ndarray:
        with torch.no_grad():
            inputs = torch.from_numpy(np.ascontiguousarray(tensor, dtype=np.float32)).to(self.device)
            outputs = _first_output(handle.model(inputs))
            # (1, 4 + C, N) -> (N, 4 + C)
            return outputs[0].transpose(0, 1).detach().cpu().numpy()


class StubBackend(InferenceBackend):
    """
    用可调用对象模拟模型的后端，用于测试和无权重运行

    Args:
        fn: 接收输入数组并返回原始输出的函数
        load_error: 设置后load()抛出ModelLoadFailure
    """

    name = "stub"

    def __init__(self, fn: Callable[[np.ndarray], Any], load_error: Optional[str] = None):
        self.fn = fn
        self.load_error = load_error
        self.calls = 0

    def load(self, model_bytes: bytes, labels: Sequence[str]) -> ModelHandle:
        if self.load_error is not None:
            raise ModelLoadFailure(self.load_error)
        return ModelHandle(model=self.fn, labels=list(labels), backend=self.name)

    def run(self, handle: ModelHandle, tensor: np.ndarray) -> np.ndarray:
        self.calls += 1
        return np.asarray(handle.model(tensor))


def load_model(backend: InferenceBackend, model_path: Optional[Union[str, Path]],
               labels: Sequence[str]) -> ModelHandle:
    """
    从磁盘读取模型字节并交给后端加载

    Args:
        backend: 推理后端
        model_path: 模型文件路径（None表示由后端自行提供模型，例如StubBackend）
        labels: 标签表

    Returns:
        ModelHandle

    Raises:
        ModelLoadFailure: 文件不存在、无法读取或后端加载失败
    """
    try:
        model_bytes = b"" if model_path is None else Path(model_path).read_bytes()
    except OSError as e:
        raise ModelLoadFailure(f"Cannot read model file {model_path}: {e}") from e

    try:
        handle = backend.load(model_bytes, labels)
    except ModelLoadFailure:
        raise
    except Exception as e:
        raise ModelLoadFailure(f"{backend.name} backend failed to load {model_path}: {e}") from e

    logger.info("Loaded %s model (%s, %d labels)", backend.name, model_path or "in-memory", len(handle.labels))
    return handle
