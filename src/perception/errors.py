"""
感知流水线的异常类型

单路径失败（超时、推理错误、输出格式错误）在路径边界被捕获并转换为空结果；
只有目标检测模型的加载失败会向调用方传播。
"""


class PerceptionError(Exception):
    """流水线异常基类"""


class InvalidFrame(PerceptionError):
    """帧为空、尺寸非法或像素数据与声明的格式不符，跳过该帧"""


class ModelLoadFailure(PerceptionError):
    """模型加载失败：目标模型为致命错误，动作模型降级为仅目标检测"""


class InferenceTimeout(PerceptionError):
    """单路径推理超时"""


class InferenceRuntimeError(PerceptionError):
    """单路径推理运行时错误"""


class MalformedOutput(PerceptionError):
    """模型输出长度与期望形状不匹配"""
