"""
Real-time perception pipeline: object detection + action recognition
"""

from .errors import (PerceptionError, InvalidFrame, ModelLoadFailure, InferenceTimeout,
                     InferenceRuntimeError, MalformedOutput)
from .frames import Frame, frame_to_rgb
from .preprocessing import FramePreprocessor, InputTensor, LetterboxTransform, letterbox, normalize
from .detection_postprocess import (BoundingBox, Detection, DetectionPostprocessor, iou,
                                    non_max_suppression)
from .temporal_buffer import TemporalFrameBuffer, TemporalWindow
from .action_postprocess import ActionObservation, ActionPostprocessor, softmax
from .backends import (InferenceBackend, ModelHandle, TorchScriptBackend, UltralyticsBackend,
                       StubBackend, load_model)
from .fusion import AnalysisResult, FusionStage
from .scheduler import InferenceScheduler, SchedulerState, ObjectPath, ActionPath
from .pipeline import PerceptionPipeline
from .sources import VideoSource

__all__ = [
    'PerceptionError', 'InvalidFrame', 'ModelLoadFailure', 'InferenceTimeout',
    'InferenceRuntimeError', 'MalformedOutput',
    'Frame', 'frame_to_rgb',
    'FramePreprocessor', 'InputTensor', 'LetterboxTransform', 'letterbox', 'normalize',
    'BoundingBox', 'Detection', 'DetectionPostprocessor', 'iou', 'non_max_suppression',
    'TemporalFrameBuffer', 'TemporalWindow',
    'ActionObservation', 'ActionPostprocessor', 'softmax',
    'InferenceBackend', 'ModelHandle', 'TorchScriptBackend', 'UltralyticsBackend',
    'StubBackend', 'load_model',
    'AnalysisResult', 'FusionStage',
    'InferenceScheduler', 'SchedulerState', 'ObjectPath', 'ActionPath',
    'PerceptionPipeline',
    'VideoSource',
]
