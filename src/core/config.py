"""
配置文件
实时感知流水线的默认参数（模型输入尺寸、阈值、时序窗口、调度节流）
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Optional, Tuple

# =============================================================================
# 根目录
# =============================================================================
ROOT_DIR = Path(__file__).parent.parent.parent.absolute()
MODELS_DIR = ROOT_DIR / "models"  # 统一的模型存储目录
LABELS_DIR = MODELS_DIR / "labels"  # 标签文件子目录
OUTPUTS_DIR = ROOT_DIR / "outputs"
LOGS_DIR = OUTPUTS_DIR / "logs"


# =============================================================================
# 目标检测配置
# =============================================================================
class ObjectModelConfig:
    MODEL_PATH = str(MODELS_DIR / "yolov8s-oiv7.pt")
    LABELS_PATH = str(LABELS_DIR / "object_labels.txt")

    INPUT_SIZE = 320  # 正方形输入尺寸
    CONFIDENCE_THRESHOLD = 0.4
    NMS_THRESHOLD = 0.4  # NMS的IoU阈值
    MAX_DETECTIONS = 100  # 每帧最多保留的检测数
    NORMALIZATION = "unit"  # [0, 1]
    NORMALIZED_BOXES = False  # 模型输出的框坐标是否为[0, 1]
    PAD_VALUE = 114  # letterbox填充颜色（中灰）


# =============================================================================
# 动作识别配置
# =============================================================================
class ActionModelConfig:
    MODEL_PATH = str(MODELS_DIR / "action_model.pt")
    LABELS_PATH = str(LABELS_DIR / "action_labels.txt")

    INPUT_SIZE = 112
    CONFIDENCE_THRESHOLD = 0.5
    SEQUENCE_LENGTH = 8  # 时序窗口长度N
    TOP_K = 3
    NORMALIZATION = "symmetric"  # [-1, 1]
    PAD_VALUE = 114


# =============================================================================
# 调度配置
# =============================================================================
class SchedulerConfig:
    ACTION_PROCESS_INTERVAL = 0.5  # 秒，动作识别的最小间隔
    OBJECT_TIMEOUT = 0.2  # 秒
    ACTION_TIMEOUT = 0.3  # 秒
    ENABLE_ACTIONS = True
    SLOW_OPERATION_MS = 500.0  # 超过该耗时记录为慢操作


NORMALIZATION_MODES = ("unit", "symmetric", "imagenet")


@dataclass(frozen=True)
class ObjectSettings:
    input_size: int = ObjectModelConfig.INPUT_SIZE
    confidence_threshold: float = ObjectModelConfig.CONFIDENCE_THRESHOLD
    nms_threshold: float = ObjectModelConfig.NMS_THRESHOLD
    max_detections: int = ObjectModelConfig.MAX_DETECTIONS
    normalization: str = ObjectModelConfig.NORMALIZATION
    normalized_boxes: bool = ObjectModelConfig.NORMALIZED_BOXES
    pad_value: int = ObjectModelConfig.PAD_VALUE
    labels_path: Optional[str] = ObjectModelConfig.LABELS_PATH  # 模型不自带类别名时使用


@dataclass(frozen=True)
class ActionSettings:
    input_size: int = ActionModelConfig.INPUT_SIZE
    confidence_threshold: float = ActionModelConfig.CONFIDENCE_THRESHOLD
    sequence_length: int = ActionModelConfig.SEQUENCE_LENGTH
    top_k: int = ActionModelConfig.TOP_K
    normalization: str = ActionModelConfig.NORMALIZATION
    pad_value: int = ActionModelConfig.PAD_VALUE
    labels_path: Optional[str] = ActionModelConfig.LABELS_PATH


@dataclass(frozen=True)
class SchedulerSettings:
    action_interval: float = SchedulerConfig.ACTION_PROCESS_INTERVAL
    object_timeout: Optional[float] = SchedulerConfig.OBJECT_TIMEOUT
    action_timeout: Optional[float] = SchedulerConfig.ACTION_TIMEOUT
    enable_actions: bool = SchedulerConfig.ENABLE_ACTIONS


@dataclass(frozen=True)
class PipelineConfig:
    """Complete pipeline configuration.

    Defaults come from the class constants above; override with
    ``dataclasses.replace`` or ``PipelineConfig.from_env()``.
    """

    object: ObjectSettings = field(default_factory=ObjectSettings)
    action: ActionSettings = field(default_factory=ActionSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)

    def validate(self) -> "PipelineConfig":
        """检查取值范围，非法时抛出ValueError"""
        for name, size in (("object.input_size", self.object.input_size),
                           ("action.input_size", self.action.input_size)):
            if not isinstance(size, int) or size <= 0:
                raise ValueError(f"{name} must be a positive integer, got {size}")

        for name, value in (("object.confidence_threshold", self.object.confidence_threshold),
                            ("object.nms_threshold", self.object.nms_threshold),
                            ("action.confidence_threshold", self.action.confidence_threshold)):
            if not (0.0 <= value <= 1.0):
                raise ValueError(f"{name} must be in [0, 1], got {value}")

        if self.object.max_detections <= 0:
            raise ValueError(f"object.max_detections must be positive, got {self.object.max_detections}")
        if self.action.sequence_length <= 0:
            raise ValueError(f"action.sequence_length must be positive, got {self.action.sequence_length}")
        if self.action.top_k <= 0:
            raise ValueError(f"action.top_k must be positive, got {self.action.top_k}")
        if self.scheduler.action_interval < 0:
            raise ValueError(f"scheduler.action_interval must be >= 0, got {self.scheduler.action_interval}")

        for name, mode in (("object.normalization", self.object.normalization),
                           ("action.normalization", self.action.normalization)):
            if mode not in NORMALIZATION_MODES:
                raise ValueError(f"{name} must be one of {NORMALIZATION_MODES}, got {mode!r}")

        for name, timeout in (("scheduler.object_timeout", self.scheduler.object_timeout),
                              ("scheduler.action_timeout", self.scheduler.action_timeout)):
            if timeout is not None and timeout <= 0:
                raise ValueError(f"{name} must be positive or None, got {timeout}")

        return self

    @classmethod
    def from_env(cls, prefix: str = "PERCEPTION_", environ=None) -> "PipelineConfig":
        """
        从环境变量构建配置

        变量名为 ``<prefix><SECTION>_<FIELD>``，例如
        ``PERCEPTION_OBJECT_INPUT_SIZE=640``、``PERCEPTION_SCHEDULER_ACTION_INTERVAL=1.0``。
        超时设置为 ``none`` 表示不限时。

        Args:
            prefix: 环境变量前缀
            environ: 环境映射（默认os.environ）

        Returns:
            校验后的PipelineConfig
        """
        environ = os.environ if environ is None else environ
        config = cls()
        sections = {}
        for section_name in ("object", "action", "scheduler"):
            section = getattr(config, section_name)
            overrides = {}
            for f in fields(section):
                key = f"{prefix}{section_name.upper()}_{f.name.upper()}"
                if key in environ:
                    overrides[f.name] = _coerce(environ[key], getattr(section, f.name), f.name)
            sections[section_name] = replace(section, **overrides) if overrides else section
        return replace(config, **sections).validate()


def _coerce(raw: str, current, name: str):
    text = raw.strip()
    if name.endswith(("timeout", "path")) and text.lower() in ("none", "off", ""):
        return None
    if isinstance(current, bool):
        return text.lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(text)
    if isinstance(current, float) or current is None:
        return float(text)
    return text


def imagenet_stats() -> Tuple[Tuple[float, float, float], Tuple[float, float, float]]:
    """ImageNet归一化常数 (mean, std)"""
    return (0.485, 0.456, 0.406), (0.229, 0.224, 0.225)
