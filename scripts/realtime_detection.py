#!/usr/bin/env python3
"""
实时感知脚本
使用摄像头或视频文件驱动感知流水线（目标检测 + 动作识别）的命令行界面
"""

import sys
import argparse
import logging
import time
from dataclasses import replace
from pathlib import Path

import cv2

# 将src目录添加到路径
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR / "src"))

from core.config import ActionModelConfig, ObjectModelConfig, PipelineConfig, LOGS_DIR
from core.utils import format_ms
from perception import (AnalysisResult, ModelLoadFailure, PerceptionPipeline, TorchScriptBackend,
                        UltralyticsBackend, VideoSource)
from utils.logger import PerformanceLogger, setup_logging

WINDOW_NAME = 'Real-time Perception'


def draw_result(image, result: AnalysisResult):
    """在BGR帧上绘制检测框和动作列表"""
    output = image.copy()
    font = cv2.FONT_HERSHEY_SIMPLEX

    for det in result.detections:
        x1, y1, x2, y2 = (int(v) for v in det.box.as_xyxy())
        cv2.rectangle(output, (x1, y1), (x2, y2), (0, 255, 0), 2)
        cv2.putText(output, f"{det.label} {det.confidence:.2f}", (x1 + 2, max(y1 - 6, 12)),
                    font, 0.5, (0, 255, 0), 1)

    for i, action in enumerate(result.actions):
        cv2.putText(output, f"{action.label}: {action.confidence:.2f}", (10, 25 + i * 20),
                    font, 0.55, (255, 255, 255), 1)

    cv2.putText(output, f"{result.processing_time * 1000.0:.0f}ms", (10, output.shape[0] - 10),
                font, 0.45, (200, 200, 200), 1)
    return output


def main():
    """主检测函数"""
    parser = argparse.ArgumentParser(
        description='Real-time object detection and action recognition'
    )

    # 输入模式
    parser.add_argument('--mode', type=str, default='webcam',
                        choices=['webcam', 'video'],
                        help='Input mode: webcam or video file')
    parser.add_argument('--input', type=str, default=None,
                        help='Path to video file (required for video mode)')
    parser.add_argument('--camera', type=int, default=0,
                        help='Camera index for webcam mode (default: 0)')

    # 模型参数
    parser.add_argument('--object_model', type=str, default=ObjectModelConfig.MODEL_PATH,
                        help='Path to YOLO object detection weights')
    parser.add_argument('--object_labels', type=str, default=None,
                        help='Object label file (default: class names embedded in the weights)')
    parser.add_argument('--action_model', type=str, default=ActionModelConfig.MODEL_PATH,
                        help='Path to TorchScript action recognition model')
    parser.add_argument('--action_labels', type=str, default=None,
                        help='Action label file (default: labels_path from config)')
    parser.add_argument('--no_actions', action='store_true',
                        help='Disable action recognition')
    parser.add_argument('--device', type=str, default='auto',
                        choices=['auto', 'cpu', 'cuda'],
                        help='Inference device')
    parser.add_argument('--confidence', type=float, default=None,
                        help='Object detection confidence threshold (0.0-1.0)')

    # 输出参数
    parser.add_argument('--no_display', action='store_true',
                        help='Disable display window (headless mode)')
    parser.add_argument('--tensorboard', action='store_true',
                        help='Write latency metrics to TensorBoard')
    parser.add_argument('--log_level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])

    args = parser.parse_args()

    # 验证参数
    if args.mode == 'video' and args.input is None:
        print("Error: --input required for video mode")
        parser.print_help()
        sys.exit(1)

    setup_logging(getattr(logging, args.log_level))

    config = PipelineConfig.from_env()
    if args.confidence is not None:
        config = replace(config, object=replace(config.object, confidence_threshold=args.confidence))
    if args.no_actions:
        config = replace(config, scheduler=replace(config.scheduler, enable_actions=False))
    config.validate()

    # 打印配置
    print("="*60)
    print("Real-time Perception")
    print("="*60)
    print(f"Mode: {args.mode}")
    if args.mode == 'webcam':
        print(f"Camera Index: {args.camera}")
    else:
        print(f"Input Video: {args.input}")
    print(f"Object Model: {args.object_model}")
    print(f"Action Model: {'Disabled' if args.no_actions else args.action_model}")
    print(f"Detection Confidence: {config.object.confidence_threshold}")
    print(f"Action Interval: {config.scheduler.action_interval}s")
    print(f"Display: {'Disabled' if args.no_display else 'Enabled'}")
    print("="*60)

    performance = PerformanceLogger(
        slow_threshold_ms=500.0,
        log_dir=LOGS_DIR / time.strftime("perception_%Y%m%d_%H%M%S") if args.tensorboard else None,
        summary_every=300,
    )
    pipeline = PerceptionPipeline(
        config,
        object_backend=UltralyticsBackend(device=args.device),
        action_backend=TorchScriptBackend(device=args.device),
        performance=performance,
    )

    try:
        print("\nInitializing perception pipeline...")
        pipeline.initialize(
            object_model=args.object_model,
            action_model=None if args.no_actions else args.action_model,
            object_labels=args.object_labels,
            action_labels=args.action_labels,
        )
    except ModelLoadFailure as e:
        print(f"Error: object detection unavailable: {e}")
        sys.exit(1)

    source = VideoSource(args.camera if args.mode == 'webcam' else args.input)
    start_time = time.time()
    frames_read = 0

    try:
        source.open()
        if not args.no_display:
            cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_NORMAL)

        print("Starting detection...")
        print("Press 'q' to quit")

        for frame in source:
            frames_read += 1
            pipeline.submit(frame)

            if not args.no_display:
                image = frame.planes[0].reshape(frame.height, frame.width, 3)
                cv2.imshow(WINDOW_NAME, draw_result(image, pipeline.latest_result()))
                if cv2.waitKey(1) & 0xFF == ord('q'):
                    break
            elif args.mode == 'video':
                # 文件输入没有天然的帧率限制，给工作线程留出时间
                time.sleep(0.01)

    except KeyboardInterrupt:
        print("\nDetection interrupted by user")
    except IOError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        source.close()
        stats = pipeline.stats()
        pipeline.dispose()
        performance.log_summary()
        performance.close()
        if not args.no_display:
            cv2.destroyAllWindows()

    elapsed = time.time() - start_time

    # 打印最终统计
    print("\n" + "="*60)
    print("Detection Complete")
    print("="*60)
    print(f"Frames read: {frames_read}")
    print(f"Frames admitted: {stats['frames_admitted']}")
    print(f"Frames dropped: {stats['frames_dropped']}")
    print(f"Results: {stats['results']}")
    frame_timing = stats["timings"].get("frame")
    if frame_timing:
        print(f"Average processing time: {format_ms(frame_timing['avg_ms'] / 1000.0)}")
    if elapsed > 0:
        print(f"Average input FPS: {frames_read / elapsed:.1f}")
    print(f"Total time: {elapsed:.1f}s")
    print("="*60)


if __name__ == '__main__':
    main()
