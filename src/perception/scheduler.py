"""
推理调度模块
单飞（single-flight）控制器：接纳帧、决定运行哪些模型、负载过高时丢帧，
并为每个被接纳的帧产生一个AnalysisResult
"""

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, NamedTuple, Optional

import numpy as np

from utils.logger import PerformanceLogger

from .action_postprocess import ActionObservation, ActionPostprocessor
from .backends import InferenceBackend, ModelHandle
from .detection_postprocess import Detection, DetectionPostprocessor
from .errors import (InferenceRuntimeError, InferenceTimeout, InvalidFrame,
                     MalformedOutput, PerceptionError)
from .frames import Frame, frame_to_rgb
from .fusion import AnalysisResult, FusionStage
from .preprocessing import FramePreprocessor, InputTensor
from .temporal_buffer import TemporalFrameBuffer, TemporalWindow

logger = logging.getLogger(__name__)

_STOP = object()


class Admission(NamedTuple):
    """被接纳帧的凭据：接纳时间和当时的重置代数"""

    admitted_at: float
    epoch: int


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING_OBJECT = "running_object"
    RUNNING_OBJECT_ACTION = "running_object_action"
    DISPOSED = "disposed"


@dataclass
class ObjectPath:
    backend: InferenceBackend
    handle: ModelHandle
    preprocessor: FramePreprocessor
    postprocessor: DetectionPostprocessor
    timeout: Optional[float] = None


@dataclass
class ActionPath:
    backend: InferenceBackend
    handle: ModelHandle
    preprocessor: FramePreprocessor
    postprocessor: ActionPostprocessor
    buffer: TemporalFrameBuffer
    timeout: Optional[float] = None


class InferenceScheduler:
    """
    流水线的并发控制中心

    - 接纳是对单个 "运行中" 标志的非阻塞检查并设置；标志已被占用时新帧直接丢弃，不排队
    - 目标检测在每个被接纳的帧上运行
    - 动作识别仅在时序缓冲区就绪且距上次运行至少action_interval秒时运行
    - 所有模型调用都在同一个单线程推理执行器上串行执行，设备上最多只有一个推理
    - 每条路径的失败（超时、运行时错误、输出格式错误）只会让该模态的结果为空
    """

    def __init__(self, object_path: ObjectPath, action_path: Optional[ActionPath] = None,
                 fusion: Optional[FusionStage] = None, action_interval: float = 0.5,
                 enable_actions: bool = True, performance: Optional[PerformanceLogger] = None,
                 on_result: Optional[Callable[[AnalysisResult], None]] = None,
                 on_reset: Optional[Callable[[], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            object_path: 目标检测路径
            action_path: 动作识别路径（None表示仅目标检测模式）
            fusion: 融合阶段
            action_interval: 两次动作识别之间的最小间隔（秒）
            enable_actions: 是否启用动作识别
            performance: 性能记录器
            on_result: 接收结果的回调（异步模式下在工作线程中调用）
            on_reset: reset()清空状态时调用，与结果投递互斥
            clock: 时间源（秒），用于接纳时间戳和动作节流
        """
        self.object_path = object_path
        self.action_path = action_path
        self.fusion = fusion or FusionStage()
        self.action_interval = action_interval
        self.performance = performance or PerformanceLogger()
        self.on_result = on_result
        self.on_reset = on_reset
        self.clock = clock

        self._action_enabled = enable_actions
        self._last_action_run: Optional[float] = None

        # 单飞标志：持有者是当前唯一在处理的帧
        self._in_flight = threading.Lock()
        self._state = SchedulerState.IDLE
        self._state_lock = threading.Lock()
        self._disposed = threading.Event()

        # 每次reset()加一；接纳早于重置的结果不再投递
        self._epoch = 0
        self._delivery_lock = threading.RLock()

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="inference")

        # 生产者与工作线程之间容量为1的通道
        self._channel: queue.Queue = queue.Queue(maxsize=1)
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------
    @property
    def state(self) -> SchedulerState:
        with self._state_lock:
            return self._state

    @property
    def is_disposed(self) -> bool:
        return self._disposed.is_set()

    @property
    def action_available(self) -> bool:
        return self.action_path is not None

    @property
    def action_enabled(self) -> bool:
        return self._action_enabled and self.action_path is not None

    def _set_state(self, state: SchedulerState):
        with self._state_lock:
            if self._state is not SchedulerState.DISPOSED:
                self._state = state

    # ------------------------------------------------------------------
    # 接纳
    # ------------------------------------------------------------------
    def _try_admit(self) -> Optional[Admission]:
        self.performance.increment('frames_submitted')
        if self._disposed.is_set():
            return None
        if not self._in_flight.acquire(blocking=False):
            self.performance.increment('frames_dropped')
            logger.debug("Already processing, dropping frame")
            return None
        # dispose()可能在上面的检查之后开始
        if self._disposed.is_set():
            self._in_flight.release()
            return None
        self.performance.increment('frames_admitted')
        return Admission(self.clock(), self._epoch)

    def _finish(self):
        self._set_state(SchedulerState.IDLE)
        self._in_flight.release()

    def process(self, frame: Frame) -> Optional[AnalysisResult]:
        """
        在调用线程中同步处理一帧（与submit()共用同一接纳门），结果同时交给on_result

        Returns:
            AnalysisResult；帧被丢弃、非法、已被reset()作废或流水线已释放时返回None
        """
        admission = self._try_admit()
        if admission is None:
            return None
        try:
            result = self._run(frame, admission.admitted_at)
        finally:
            self._finish()
        if result is None or not self._deliver(result, admission):
            return None
        return result

    def submit(self, frame: Frame) -> bool:
        """
        非阻塞地把帧交给工作线程

        Returns:
            帧是否被接纳（False表示已被丢弃）
        """
        admission = self._try_admit()
        if admission is None:
            return False
        if not self._ensure_worker():
            self._in_flight.release()
            return False
        try:
            self._channel.put_nowait((frame, admission))
        except queue.Full:
            self._in_flight.release()
            self.performance.increment('frames_dropped')
            return False
        return True

    def _ensure_worker(self) -> bool:
        with self._worker_lock:
            if self._disposed.is_set():
                return False
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._worker_loop, name="perception-worker",
                                                daemon=True)
                self._worker.start()
            return True

    def _worker_loop(self):
        while True:
            item = self._channel.get()
            if item is _STOP:
                break
            frame, admission = item
            result = None
            try:
                result = self._run(frame, admission.admitted_at)
            except Exception:
                logger.exception("Unexpected error while processing frame")
            finally:
                self._finish()

            if result is not None:
                self._deliver(result, admission)

    def _deliver(self, result: AnalysisResult, admission: Admission) -> bool:
        # 与reset()互斥：重置之后不会再投递重置之前接纳的帧
        with self._delivery_lock:
            if self._disposed.is_set() or admission.epoch != self._epoch:
                self.performance.increment('results_discarded')
                logger.debug("Discarding result admitted before reset/dispose")
                return False
            if self.on_result is not None:
                try:
                    self.on_result(result)
                except Exception:
                    logger.exception("Result callback failed")
            return True

    # ------------------------------------------------------------------
    # 单帧处理
    # ------------------------------------------------------------------
    def _run(self, frame: Frame, admitted_at: float) -> Optional[AnalysisResult]:
        start = time.perf_counter()

        try:
            rgb = frame_to_rgb(frame)
            object_tensor = self.object_path.preprocessor.process_rgb(rgb, timestamp=frame.timestamp)
        except InvalidFrame as e:
            self.performance.increment('frames_invalid')
            logger.warning("Skipping invalid frame: %s", e)
            return None

        run_action = False
        if self.action_enabled:
            action_tensor = self.action_path.preprocessor.process_rgb(rgb, timestamp=frame.timestamp)
            self.action_path.buffer.push(action_tensor)
            run_action = self.action_path.buffer.is_ready() and self._action_due(admitted_at)
        self.performance.record('preprocess', time.perf_counter() - start)

        self._set_state(SchedulerState.RUNNING_OBJECT_ACTION if run_action
                        else SchedulerState.RUNNING_OBJECT)

        detections = self._run_object(object_tensor)

        actions: Optional[List[ActionObservation]] = None
        if run_action:
            self._last_action_run = admitted_at
            actions = self._run_action(self.action_path.buffer.snapshot())

        if self._disposed.is_set():
            self.performance.increment('results_discarded')
            logger.debug("Pipeline disposed during inference, discarding result")
            return None

        elapsed = time.perf_counter() - start
        result = self.fusion.fuse(detections, actions, admitted_at=admitted_at,
                                  processing_time=elapsed, frame_timestamp=frame.timestamp)
        self.performance.record('frame', elapsed)
        logger.debug("Detections - Objects: %d, Actions: %d, Time: %.1fms",
                     len(result.detections), len(result.actions), elapsed * 1000.0)
        return result

    def _action_due(self, now: float) -> bool:
        return self._last_action_run is None or now - self._last_action_run >= self.action_interval

    def _infer(self, backend: InferenceBackend, handle: ModelHandle, inputs: np.ndarray,
               timeout: Optional[float]):
        future = self._executor.submit(backend.run, handle, inputs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as e:
            future.cancel()
            raise InferenceTimeout(f"inference exceeded {timeout:.3f}s") from e
        except PerceptionError:
            raise
        except Exception as e:
            raise InferenceRuntimeError(f"{type(e).__name__}: {e}") from e

    def _run_object(self, tensor: InputTensor) -> List[Detection]:
        path = self.object_path
        start = time.perf_counter()
        try:
            raw = self._infer(path.backend, path.handle, tensor.data[np.newaxis, ...], path.timeout)
            return path.postprocessor.decode(raw, tensor.transform)
        except InferenceTimeout as e:
            logger.warning("Object detection timeout: %s", e)
        except MalformedOutput as e:
            logger.warning("Malformed object detection output: %s", e)
        except InferenceRuntimeError as e:
            logger.error("Object detection error: %s", e)
        except Exception:
            logger.exception("Object detection postprocessing failed")
        finally:
            self.performance.record('object_inference', time.perf_counter() - start)
        self.performance.increment('object_failures')
        return []

    def _run_action(self, window: TemporalWindow) -> List[ActionObservation]:
        path = self.action_path
        start = time.perf_counter()
        try:
            raw = self._infer(path.backend, path.handle, window.stack(), path.timeout)
            return path.postprocessor.decode(raw, window.last_timestamp)
        except InferenceTimeout as e:
            logger.warning("Action recognition timeout: %s", e)
        except MalformedOutput as e:
            logger.warning("Malformed action output: %s", e)
        except InferenceRuntimeError as e:
            logger.error("Action recognition error: %s", e)
        except Exception:
            logger.exception("Action recognition postprocessing failed")
        finally:
            self.performance.record('action_inference', time.perf_counter() - start)
        self.performance.increment('action_failures')
        return []

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------
    def _clear_state(self):
        if self.action_path is not None:
            self.action_path.buffer.clear()
        self.fusion.reset()
        self._last_action_run = None

    def reset(self, timeout: Optional[float] = 1.0) -> bool:
        """
        相机切换或生产者重启：清空缓冲区和融合状态并回到Idle

        在接纳门内执行，等待正在处理的帧完成。

        Returns:
            是否成功清空（超时返回False）
        """
        if self._disposed.is_set():
            return False
        if not self._in_flight.acquire(timeout=-1 if timeout is None else timeout):
            logger.warning("Reset timed out waiting for in-flight frame")
            return False
        try:
            with self._delivery_lock:
                self._epoch += 1
                self._clear_state()
                self._set_state(SchedulerState.IDLE)
                if self.on_reset is not None:
                    self.on_reset()
        finally:
            self._in_flight.release()
        logger.info("Pipeline state reset")
        return True

    def set_action_enabled(self, enabled: bool, timeout: Optional[float] = 1.0) -> bool:
        """启用/关闭动作识别；关闭时清空时序缓冲区"""
        if not self._in_flight.acquire(timeout=-1 if timeout is None else timeout):
            logger.warning("Timed out waiting for in-flight frame")
            return False
        try:
            self._action_enabled = enabled
            if not enabled and self.action_path is not None:
                self.action_path.buffer.clear()
                self.fusion.reset()
                self._last_action_run = None
        finally:
            self._in_flight.release()
        return True

    def dispose(self, timeout: Optional[float] = 5.0):
        """
        关闭调度器：不再接纳新帧，允许正在运行的推理完成但丢弃其结果，清空所有缓冲区
        """
        if self._disposed.is_set():
            return
        self._disposed.set()
        with self._state_lock:
            self._state = SchedulerState.DISPOSED

        with self._worker_lock:
            worker = self._worker
        if worker is not None:
            # 丢弃尚未被工作线程取走的帧
            try:
                pending = self._channel.get_nowait()
                if pending is not _STOP:
                    self._in_flight.release()
            except queue.Empty:
                pass
            self._channel.put(_STOP)
            worker.join(timeout)
            if worker.is_alive():
                logger.warning("Worker thread did not stop within %.1fs", timeout)

        acquired = self._in_flight.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            logger.warning("In-flight frame still running during dispose")
        self._clear_state()
        if acquired:
            self._in_flight.release()

        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("Inference scheduler disposed")
