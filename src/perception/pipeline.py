"""
感知流水线
显式构造的组合根：持有模型句柄、时序缓冲区、调度器、融合阶段和结果流
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from core.config import PipelineConfig
from core.labels import get_default_labels, load_labels
from utils.logger import PerformanceLogger

from .action_postprocess import ActionPostprocessor
from .backends import (InferenceBackend, ModelHandle, TorchScriptBackend, UltralyticsBackend,
                       load_model)
from .detection_postprocess import DetectionPostprocessor
from .errors import ModelLoadFailure
from .frames import Frame
from .fusion import AnalysisResult, FusionStage
from .preprocessing import FramePreprocessor
from .scheduler import ActionPath, InferenceScheduler, ObjectPath, SchedulerState
from .temporal_buffer import TemporalFrameBuffer

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
LabelSource = Optional[Union[PathLike, Sequence[str]]]
ResultCallback = Callable[[AnalysisResult], None]


def _resolve_labels(source: LabelSource) -> List[str]:
    """调用方给出的标签；为空时由模型自带的类别表决定"""
    if source is None:
        return []
    if isinstance(source, (str, Path)):
        return load_labels(source, [])
    return list(source)


def _load_with_labels(backend: InferenceBackend, model_path: Optional[PathLike],
                      source: LabelSource, default_path: Optional[str], kind: str) -> ModelHandle:
    """
    加载模型并确定标签表

    优先级：调用方标签 > 模型自带类别名 > 配置的标签文件 > 内置标签。
    模型声明了类别数时，标签数量必须一致。

    Raises:
        ModelLoadFailure: 模型无法加载，或标签数量与模型类别数不一致
    """
    handle = load_model(backend, model_path, _resolve_labels(source))
    if not handle.labels:
        handle.labels = load_labels(default_path, get_default_labels(kind))

    num_classes = handle.metadata.get('num_classes')
    if num_classes is not None and num_classes != len(handle.labels):
        backend.release(handle)
        raise ModelLoadFailure(
            f"{kind} model predicts {num_classes} classes but {len(handle.labels)} labels were given"
        )
    return handle


class PerceptionPipeline:
    """
    实时感知流水线

    用法:
        pipeline = PerceptionPipeline(config)
        pipeline.initialize(object_model="yolov8s.pt", action_model="action.pt")
        pipeline.subscribe(on_result)
        for frame in source:
            pipeline.submit(frame)
        pipeline.dispose()
    """

    def __init__(self, config: Optional[PipelineConfig] = None,
                 object_backend: Optional[InferenceBackend] = None,
                 action_backend: Optional[InferenceBackend] = None,
                 performance: Optional[PerformanceLogger] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            config: 流水线配置（默认使用core.config中的默认值）
            object_backend: 目标检测推理后端（默认UltralyticsBackend）
            action_backend: 动作识别推理后端（默认TorchScriptBackend）
            performance: 性能记录器
            clock: 时间源（秒）
        """
        self.config = (config or PipelineConfig()).validate()
        self.object_backend = object_backend or UltralyticsBackend()
        self.action_backend = action_backend or TorchScriptBackend()
        self.performance = performance or PerformanceLogger()
        self.clock = clock

        self.object_handle: Optional[ModelHandle] = None
        self.action_handle: Optional[ModelHandle] = None
        self.scheduler: Optional[InferenceScheduler] = None
        self.init_error: Optional[ModelLoadFailure] = None

        self._subscribers: List[ResultCallback] = []
        self._subscribers_lock = threading.Lock()
        self._latest: Optional[AnalysisResult] = None
        self._latest_lock = threading.Lock()
        self._results = 0

    # ------------------------------------------------------------------
    # 初始化
    # ------------------------------------------------------------------
    def initialize(self, object_model: Optional[PathLike] = None,
                   action_model: Optional[PathLike] = None,
                   object_labels: LabelSource = None,
                   action_labels: LabelSource = None) -> "PerceptionPipeline":
        """
        加载模型并构建调度器

        目标检测模型加载失败是致命的：抛出ModelLoadFailure，流水线保持不可用状态；
        动作识别模型加载失败时记录警告，降级为仅目标检测模式。

        Args:
            object_model: 目标检测模型路径
            action_model: 动作识别模型路径
            object_labels: 目标标签文件路径或标签列表（默认使用模型自带类别名）
            action_labels: 动作标签文件路径或标签列表（默认config中的标签文件）

        Returns:
            self

        Raises:
            ModelLoadFailure: 目标检测模型无法加载
        """
        if self.scheduler is not None:
            self.scheduler.dispose()
            self._release_handles()
            self.scheduler = None

        cfg = self.config
        self.init_error = None

        try:
            self.object_handle = _load_with_labels(self.object_backend, object_model, object_labels,
                                                   cfg.object.labels_path, "object")
        except ModelLoadFailure as e:
            self.init_error = e
            logger.error("Object detection model failed to load, feature unavailable: %s", e)
            raise

        object_path = ObjectPath(
            backend=self.object_backend,
            handle=self.object_handle,
            preprocessor=FramePreprocessor(cfg.object.input_size, cfg.object.normalization,
                                           cfg.object.pad_value),
            postprocessor=DetectionPostprocessor(
                self.object_handle.labels,
                input_size=cfg.object.input_size,
                confidence_threshold=cfg.object.confidence_threshold,
                nms_threshold=cfg.object.nms_threshold,
                max_detections=cfg.object.max_detections,
                normalized_boxes=cfg.object.normalized_boxes,
            ),
            timeout=cfg.scheduler.object_timeout,
        )

        action_path = None
        if cfg.scheduler.enable_actions:
            action_path = self._build_action_path(action_model, action_labels)
        else:
            logger.info("Action recognition disabled by configuration")

        self.scheduler = InferenceScheduler(
            object_path,
            action_path,
            fusion=FusionStage(),
            action_interval=cfg.scheduler.action_interval,
            enable_actions=cfg.scheduler.enable_actions,
            performance=self.performance,
            on_result=self._publish,
            on_reset=self._clear_latest,
            clock=self.clock,
        )
        logger.info("Perception pipeline initialized (%s)",
                    "object + action" if action_path is not None else "object only")
        return self

    def _build_action_path(self, action_model: Optional[PathLike],
                           action_labels: LabelSource) -> Optional[ActionPath]:
        cfg = self.config
        try:
            self.action_handle = _load_with_labels(self.action_backend, action_model, action_labels,
                                                   cfg.action.labels_path, "action")
        except ModelLoadFailure as e:
            logger.warning("Action model failed to load, running object detection only: %s", e)
            self.action_handle = None
            return None

        return ActionPath(
            backend=self.action_backend,
            handle=self.action_handle,
            preprocessor=FramePreprocessor(cfg.action.input_size, cfg.action.normalization,
                                           cfg.action.pad_value),
            postprocessor=ActionPostprocessor(
                self.action_handle.labels,
                confidence_threshold=cfg.action.confidence_threshold,
                top_k=cfg.action.top_k,
            ),
            buffer=TemporalFrameBuffer(cfg.action.sequence_length),
            timeout=cfg.scheduler.action_timeout,
        )

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------
    @property
    def feature_available(self) -> bool:
        """目标检测可用（初始化成功且未释放）"""
        return self.scheduler is not None and not self.scheduler.is_disposed

    @property
    def action_available(self) -> bool:
        return self.feature_available and self.scheduler.action_available

    @property
    def state(self) -> SchedulerState:
        if self.scheduler is None:
            return SchedulerState.IDLE
        return self.scheduler.state

    # ------------------------------------------------------------------
    # 帧输入
    # ------------------------------------------------------------------
    def submit(self, frame: Frame) -> bool:
        """
        非阻塞提交帧，结果通过subscribe()注册的回调按接纳顺序送达

        Returns:
            帧是否被接纳
        """
        if not self.feature_available:
            logger.debug("Pipeline not available, ignoring frame")
            return False
        return self.scheduler.submit(frame)

    def process_frame(self, frame: Frame) -> Optional[AnalysisResult]:
        """
        在调用线程中同步处理一帧，与submit()共用单飞接纳门

        Returns:
            AnalysisResult；帧被丢弃或非法时返回None
        """
        if not self.feature_available:
            return None
        return self.scheduler.process(frame)

    # ------------------------------------------------------------------
    # 结果流
    # ------------------------------------------------------------------
    def subscribe(self, callback: ResultCallback):
        with self._subscribers_lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: ResultCallback):
        with self._subscribers_lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def latest_result(self) -> AnalysisResult:
        """最近一次结果；还没有结果时返回空结果（UI显示 '无检测'）"""
        with self._latest_lock:
            if self._latest is None:
                return AnalysisResult.empty(self.clock())
            return self._latest

    def _publish(self, result: AnalysisResult):
        with self._latest_lock:
            self._latest = result
            self._results += 1
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(result)
            except Exception:
                logger.exception("Result subscriber %r failed", callback)

    # ------------------------------------------------------------------
    # 控制
    # ------------------------------------------------------------------
    def set_action_enabled(self, enabled: bool) -> bool:
        """启用/关闭动作识别，关闭时清空时序缓冲区"""
        if not self.feature_available:
            return False
        return self.scheduler.set_action_enabled(enabled)

    def reset(self) -> bool:
        """相机切换时调用：清空缓冲区和融合状态，回到Idle"""
        if not self.feature_available:
            return False
        return self.scheduler.reset()

    def _clear_latest(self):
        with self._latest_lock:
            self._latest = None

    def dispose(self, timeout: Optional[float] = 5.0):
        """释放流水线：停止接纳新帧，丢弃正在运行的结果，释放模型"""
        if self.scheduler is not None:
            self.scheduler.dispose(timeout)
        self._release_handles()
        with self._subscribers_lock:
            self._subscribers.clear()
        self.performance.flush()

    def _release_handles(self):
        if self.object_handle is not None:
            self.object_backend.release(self.object_handle)
            self.object_handle = None
        if self.action_handle is not None:
            self.action_backend.release(self.action_handle)
            self.action_handle = None

    def stats(self) -> Dict[str, object]:
        """
        运行统计

        Returns:
            包含状态、帧计数器、各操作耗时摘要和缓冲区状态的字典
        """
        counters = self.performance.counters()
        stats = {
            'state': self.state.value,
            'feature_available': self.feature_available,
            'action_available': self.action_available,
            'frames_submitted': counters.get('frames_submitted', 0),
            'frames_admitted': counters.get('frames_admitted', 0),
            'frames_dropped': counters.get('frames_dropped', 0),
            'frames_invalid': counters.get('frames_invalid', 0),
            'results': self._results,
            'timings': self.performance.summary(),
        }
        if self.scheduler is not None and self.scheduler.action_path is not None:
            stats['buffer'] = self.scheduler.action_path.buffer.get_stats()
        return stats

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.dispose()
        return False
