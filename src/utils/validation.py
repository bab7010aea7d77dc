"""
输入验证工具模块
提供装饰器用于验证模型输入数组的维度、数值范围等
"""

import functools
import os
from typing import Callable, List, Optional

import numpy as np
import torch


# 环境变量控制验证开关
VALIDATION_ENABLED = os.getenv('VALIDATION_ENABLED', 'false').lower() == 'true'


def _dims(arg) -> Optional[int]:
    if isinstance(arg, torch.Tensor):
        return arg.dim()
    if isinstance(arg, np.ndarray):
        return arg.ndim
    return None


def validate_array_dims(expected_dims: List[int], arg_positions: Optional[List[int]] = None,
                        min_dim_size: Optional[int] = None):
    """
    装饰器：验证数组/张量维度

    Args:
        expected_dims: 期望的维度列表，例如[4, 5]表示接受4维或5维输入
        arg_positions: 要验证的参数位置列表（默认验证第一个参数）
        min_dim_size: 每个维度的最小尺寸要求（可选）
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            # 如果验证未启用，直接执行函数
            if not VALIDATION_ENABLED:
                return func(*args, **kwargs)

            positions = arg_positions if arg_positions is not None else [0]

            for pos in positions:
                if pos >= len(args):
                    continue
                arg = args[pos]
                actual_dims = _dims(arg)
                if actual_dims is None:
                    continue

                if actual_dims not in expected_dims:
                    raise ValueError(
                        f"[Validation] {func.__name__}(): "
                        f"Expected input with dimensions {expected_dims}, "
                        f"got {actual_dims}D input with shape {tuple(arg.shape)}. "
                        f"Argument position: {pos}"
                    )

                if min_dim_size is not None:
                    for i, size in enumerate(arg.shape):
                        if size < min_dim_size:
                            raise ValueError(
                                f"[Validation] {func.__name__}(): "
                                f"Dimension {i} has size {size}, "
                                f"expected at least {min_dim_size}. "
                                f"Shape: {tuple(arg.shape)}"
                            )

            return func(*args, **kwargs)

        return wrapper
    return decorator


def validate_array_range(min_value: Optional[float] = None, max_value: Optional[float] = None,
                         arg_positions: Optional[List[int]] = None):
    """
    装饰器：验证数组数值范围（同时拒绝NaN/Inf）

    Args:
        min_value: 允许的最小值（None表示不检查）
        max_value: 允许的最大值（None表示不检查）
        arg_positions: 要验证的参数位置列表
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            if not VALIDATION_ENABLED:
                return func(*args, **kwargs)

            positions = arg_positions if arg_positions is not None else [0]

            for pos in positions:
                if pos >= len(args):
                    continue
                arg = args[pos]
                if isinstance(arg, torch.Tensor):
                    arg = arg.detach().cpu().numpy()
                if not isinstance(arg, np.ndarray) or arg.size == 0:
                    continue

                if not np.all(np.isfinite(arg)):
                    raise ValueError(
                        f"[Validation] {func.__name__}(): "
                        f"Input contains NaN or Inf. Argument position: {pos}"
                    )

                if min_value is not None:
                    min_val = float(arg.min())
                    if min_val < min_value:
                        raise ValueError(
                            f"[Validation] {func.__name__}(): "
                            f"Input minimum value {min_val} < {min_value}. "
                            f"Argument position: {pos}"
                        )

                if max_value is not None:
                    max_val = float(arg.max())
                    if max_val > max_value:
                        raise ValueError(
                            f"[Validation] {func.__name__}(): "
                            f"Input maximum value {max_val} > {max_value}. "
                            f"Argument position: {pos}"
                        )

            return func(*args, **kwargs)

        return wrapper
    return decorator


def enable_validation():
    """启用输入验证"""
    global VALIDATION_ENABLED
    VALIDATION_ENABLED = True


def disable_validation():
    """禁用输入验证"""
    global VALIDATION_ENABLED
    VALIDATION_ENABLED = False


def is_validation_enabled() -> bool:
    """检查验证是否启用"""
    return VALIDATION_ENABLED
