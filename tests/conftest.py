import sys
import threading
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from perception.frames import Frame  # noqa: E402

OBJECT_LABELS = ["person", "car", "dog"]
ACTION_LABELS = ["walking", "running", "sitting", "waving"]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_frame(width=64, height=48, timestamp=0.0, value=None, pixel_format="bgr"):
    channels = 4 if pixel_format in ("rgba", "bgra") else 3
    if value is None:
        rng = np.random.default_rng(0)
        image = rng.integers(0, 256, size=(height, width, channels), dtype=np.uint8)
    else:
        image = np.full((height, width, channels), value, dtype=np.uint8)
    return Frame.from_array(image, pixel_format=pixel_format, timestamp=timestamp)


def detection_rows(*rows, num_classes=len(OBJECT_LABELS)):
    """Build a raw (N, 4 + C) object output from (cx, cy, w, h, class_id, score) tuples."""
    out = np.zeros((len(rows), 4 + num_classes), dtype=np.float32)
    for i, (cx, cy, w, h, class_id, score) in enumerate(rows):
        out[i, :4] = (cx, cy, w, h)
        out[i, 4 + class_id] = score
    return out


def one_box_output(tensor):
    # 320 input, centered box with high person score
    return detection_rows((160.0, 160.0, 80.0, 80.0, 0, 0.9))


def confident_logits(tensor):
    logits = np.zeros(len(ACTION_LABELS), dtype=np.float32)
    logits[1] = 10.0
    return logits


class BlockingModel:
    """Model stub that blocks until released, to hold an inference in flight."""

    def __init__(self, output):
        self.output = output
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def __call__(self, tensor):
        self.calls += 1
        self.started.set()
        self.release.wait(5.0)
        return self.output


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def frame():
    return make_frame()
