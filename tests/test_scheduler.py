import threading

import numpy as np
import pytest

from perception.action_postprocess import ActionPostprocessor
from perception.backends import StubBackend
from perception.detection_postprocess import DetectionPostprocessor
from perception.preprocessing import FramePreprocessor
from perception.scheduler import ActionPath, InferenceScheduler, ObjectPath, SchedulerState
from perception.temporal_buffer import TemporalFrameBuffer
from perception.frames import Frame

from conftest import (ACTION_LABELS, OBJECT_LABELS, BlockingModel, confident_logits, make_frame,
                      one_box_output)


def build(object_fn=one_box_output, action_fn=confident_logits, clock=None, sequence_length=2,
          action_interval=0.5, object_timeout=None, action_timeout=None, on_result=None):
    object_backend = StubBackend(object_fn)
    object_path = ObjectPath(
        backend=object_backend,
        handle=object_backend.load(b"", OBJECT_LABELS),
        preprocessor=FramePreprocessor(320),
        postprocessor=DetectionPostprocessor(OBJECT_LABELS, input_size=320),
        timeout=object_timeout,
    )
    action_path = None
    if action_fn is not None:
        action_backend = StubBackend(action_fn)
        action_path = ActionPath(
            backend=action_backend,
            handle=action_backend.load(b"", ACTION_LABELS),
            preprocessor=FramePreprocessor(32, normalization="symmetric"),
            postprocessor=ActionPostprocessor(ACTION_LABELS, confidence_threshold=0.5),
            buffer=TemporalFrameBuffer(sequence_length),
            timeout=action_timeout,
        )
    kwargs = {} if clock is None else {'clock': clock}
    return InferenceScheduler(object_path, action_path, action_interval=action_interval,
                              on_result=on_result, **kwargs)


@pytest.fixture
def schedulers():
    created = []
    yield created
    for scheduler in created:
        scheduler.dispose(timeout=2.0)


def test_object_path_runs_every_frame(schedulers):
    scheduler = build(action_fn=None)
    schedulers.append(scheduler)

    for i in range(3):
        result = scheduler.process(make_frame(timestamp=float(i)))
        assert [d.label for d in result.detections] == ["person"]
        assert result.actions == ()
        assert result.frame_timestamp == float(i)
        assert 0 <= result.detections[0].box.left <= result.detections[0].box.right <= 64

    assert scheduler.object_path.backend.calls == 3
    assert scheduler.state is SchedulerState.IDLE


def test_action_path_waits_for_full_window_and_interval(clock, schedulers):
    scheduler = build(clock=clock, sequence_length=2, action_interval=0.5)
    schedulers.append(scheduler)
    action_backend = scheduler.action_path.backend

    first = scheduler.process(make_frame(timestamp=0.0))
    assert first.actions == ()
    assert action_backend.calls == 0

    clock.advance(0.1)
    second = scheduler.process(make_frame(timestamp=0.1))
    assert [a.label for a in second.actions] == ["running"]
    assert second.actions[0].timestamp == 0.1
    assert action_backend.calls == 1

    clock.advance(0.1)
    third = scheduler.process(make_frame(timestamp=0.2))
    # throttled: latest actions are carried forward
    assert action_backend.calls == 1
    assert [a.label for a in third.actions] == ["running"]
    assert third.actions[0].timestamp == 0.1

    clock.advance(0.5)
    fourth = scheduler.process(make_frame(timestamp=0.7))
    assert action_backend.calls == 2
    assert fourth.actions[0].timestamp == 0.7
    assert scheduler.object_path.backend.calls == 4


def test_second_frame_dropped_while_first_in_flight(schedulers):
    model = BlockingModel(one_box_output(None))
    results = []
    delivered = threading.Event()

    def on_result(result):
        results.append(result)
        delivered.set()

    scheduler = build(object_fn=model, action_fn=None, on_result=on_result)
    schedulers.append(scheduler)

    assert scheduler.submit(make_frame(timestamp=1.0)) is True
    assert model.started.wait(2.0)
    assert scheduler.state is SchedulerState.RUNNING_OBJECT

    assert scheduler.submit(make_frame(timestamp=2.0)) is False
    assert scheduler.process(make_frame(timestamp=3.0)) is None

    model.release.set()
    assert delivered.wait(2.0)

    assert model.calls == 1
    assert [r.frame_timestamp for r in results] == [1.0]
    assert scheduler.performance.counter('frames_dropped') == 2
    assert scheduler.performance.counter('frames_admitted') == 1


def test_results_delivered_in_admission_order(schedulers):
    results = []
    done = threading.Semaphore(0)

    def on_result(result):
        results.append(result.frame_timestamp)
        done.release()

    scheduler = build(action_fn=None, on_result=on_result)
    schedulers.append(scheduler)

    admitted = []
    for i in range(5):
        if scheduler.submit(make_frame(timestamp=float(i))):
            admitted.append(float(i))
            assert done.acquire(timeout=2.0)

    assert results == admitted == [0.0, 1.0, 2.0, 3.0, 4.0]


def test_object_failure_still_surfaces_actions(schedulers):
    def broken(tensor):
        raise RuntimeError("delegate crashed")

    scheduler = build(object_fn=broken, sequence_length=1)
    schedulers.append(scheduler)

    result = scheduler.process(make_frame())
    assert result.detections == ()
    assert [a.label for a in result.actions] == ["running"]
    assert scheduler.performance.counter('object_failures') == 1


def test_action_failure_still_surfaces_detections(schedulers):
    scheduler = build(action_fn=lambda tensor: np.zeros(7), sequence_length=1)
    schedulers.append(scheduler)

    result = scheduler.process(make_frame())
    assert [d.label for d in result.detections] == ["person"]
    assert result.actions == ()
    assert scheduler.performance.counter('action_failures') == 1


def test_malformed_object_output_yields_empty_detections(schedulers):
    scheduler = build(object_fn=lambda tensor: np.zeros(13), action_fn=None)
    schedulers.append(scheduler)
    assert scheduler.process(make_frame()).detections == ()


def test_object_timeout_is_per_path_failure(schedulers):
    model = BlockingModel(one_box_output(None))
    scheduler = build(object_fn=model, action_fn=None, object_timeout=0.05)
    schedulers.append(scheduler)

    result = scheduler.process(make_frame())
    assert result is not None
    assert result.detections == ()
    assert scheduler.performance.counter('object_failures') == 1

    model.release.set()
    recovered = scheduler.process(make_frame())
    assert [d.label for d in recovered.detections] == ["person"]


def test_invalid_frame_is_skipped(schedulers):
    scheduler = build(action_fn=None)
    schedulers.append(scheduler)

    bad = Frame(0, 0, "rgb", (np.zeros(0, dtype=np.uint8),), 0.0)
    assert scheduler.process(bad) is None
    assert scheduler.performance.counter('frames_invalid') == 1
    assert scheduler.process(make_frame()) is not None


def test_state_while_running_both_paths(schedulers):
    seen = []
    holder = {}

    def action_fn(tensor):
        seen.append(holder['scheduler'].state)
        return confident_logits(tensor)

    scheduler = build(action_fn=action_fn, sequence_length=1)
    holder['scheduler'] = scheduler
    schedulers.append(scheduler)

    scheduler.process(make_frame())
    assert seen == [SchedulerState.RUNNING_OBJECT_ACTION]
    assert scheduler.state is SchedulerState.IDLE


def test_action_tensor_shape(schedulers):
    shapes = []

    def action_fn(tensor):
        shapes.append(tensor.shape)
        return confident_logits(tensor)

    scheduler = build(action_fn=action_fn, sequence_length=3)
    schedulers.append(scheduler)
    for _ in range(3):
        scheduler.process(make_frame())
    assert shapes == [(1, 3, 3, 32, 32)]


def test_reset_clears_buffer_and_actions(clock, schedulers):
    scheduler = build(clock=clock, sequence_length=2)
    schedulers.append(scheduler)
    scheduler.process(make_frame())
    assert scheduler.process(make_frame()).actions

    assert scheduler.reset() is True
    assert len(scheduler.action_path.buffer) == 0
    assert scheduler.state is SchedulerState.IDLE

    result = scheduler.process(make_frame())
    assert result.actions == ()
    assert scheduler.action_path.backend.calls == 1


def test_disabling_actions_clears_buffer(schedulers):
    scheduler = build(sequence_length=1)
    schedulers.append(scheduler)
    assert scheduler.process(make_frame()).actions

    scheduler.set_action_enabled(False)
    assert len(scheduler.action_path.buffer) == 0
    result = scheduler.process(make_frame())
    assert result.actions == ()
    assert scheduler.action_path.backend.calls == 1

    scheduler.set_action_enabled(True)
    assert scheduler.process(make_frame()).actions
    assert scheduler.action_path.backend.calls == 2


def test_dispose_discards_in_flight_result():
    model = BlockingModel(one_box_output(None))
    results = []
    scheduler = build(object_fn=model, action_fn=None, on_result=results.append)

    assert scheduler.submit(make_frame())
    assert model.started.wait(2.0)

    releaser = threading.Timer(0.1, model.release.set)
    releaser.start()
    scheduler.dispose(timeout=2.0)
    releaser.join()

    assert results == []
    assert scheduler.state is SchedulerState.DISPOSED
    assert scheduler.performance.counter('results_discarded') == 1
    assert scheduler.submit(make_frame()) is False
    assert scheduler.process(make_frame()) is None


def test_dispose_clears_buffer():
    scheduler = build(sequence_length=3)
    scheduler.process(make_frame())
    scheduler.dispose()
    assert len(scheduler.action_path.buffer) == 0
    assert scheduler.is_disposed
    scheduler.dispose()


def test_action_timeout_keeps_detections(schedulers):
    model = BlockingModel(confident_logits(None))
    scheduler = build(action_fn=model, sequence_length=1, action_timeout=0.05)
    schedulers.append(scheduler)

    result = scheduler.process(make_frame())
    model.release.set()

    assert [d.label for d in result.detections] == ["person"]
    assert result.actions == ()
    assert scheduler.performance.counter('action_failures') == 1
    assert scheduler.performance.counter('object_failures') == 0


def test_action_runtime_error_keeps_detections(schedulers):
    def broken(tensor):
        raise RuntimeError("action delegate crashed")

    scheduler = build(action_fn=broken, sequence_length=1)
    schedulers.append(scheduler)

    result = scheduler.process(make_frame())
    assert [d.label for d in result.detections] == ["person"]
    assert result.actions == ()
    assert scheduler.performance.counter('action_failures') == 1


def test_reset_drops_result_admitted_before_it():
    model = BlockingModel(one_box_output(None))
    events = []
    scheduler = build(object_fn=model, action_fn=None,
                      on_result=lambda result: events.append("result"))
    scheduler.on_reset = lambda: events.append("reset")

    assert scheduler.submit(make_frame())
    assert model.started.wait(2.0)

    outcome = []
    resetter = threading.Thread(target=lambda: outcome.append(scheduler.reset(timeout=2.0)))
    resetter.start()
    model.release.set()
    resetter.join(3.0)
    scheduler.dispose(timeout=2.0)

    assert outcome == [True]
    assert events[-1] == "reset"


def test_admission_time_taken_on_submitting_thread(schedulers):
    submitter = threading.get_ident()
    results = []
    delivered = threading.Event()

    def clock():
        return 1.0 if threading.get_ident() == submitter else 2.0

    def on_result(result):
        results.append(result)
        delivered.set()

    scheduler = build(action_fn=None, clock=clock, on_result=on_result)
    schedulers.append(scheduler)

    assert scheduler.submit(make_frame())
    assert delivered.wait(2.0)
    assert results[0].timestamp == 1.0


class DisposedAfterFirstCheck:
    """Reports not-disposed once, then disposed: dispose() lands mid-admission."""

    def __init__(self):
        self.checks = 0

    def is_set(self):
        self.checks += 1
        return self.checks > 1


def test_dispose_during_admission_starts_no_worker():
    scheduler = build(action_fn=None)
    disposed = scheduler._disposed
    scheduler._disposed = DisposedAfterFirstCheck()

    assert scheduler.submit(make_frame()) is False
    assert scheduler._worker is None
    assert scheduler._in_flight.acquire(blocking=False)
    scheduler._in_flight.release()

    scheduler._disposed = disposed
    scheduler.dispose()
    assert scheduler._ensure_worker() is False
    assert scheduler._worker is None
