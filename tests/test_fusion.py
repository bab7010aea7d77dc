import dataclasses

import pytest

from perception.action_postprocess import ActionObservation
from perception.detection_postprocess import BoundingBox, Detection
from perception.fusion import AnalysisResult, FusionStage


def det(label, confidence):
    return Detection(class_id=0, label=label, confidence=confidence, box=BoundingBox(0, 0, 1, 1))


def act(label, confidence, timestamp=0.0):
    return ActionObservation(action_id=0, label=label, confidence=confidence, timestamp=timestamp)


def test_orders_by_confidence():
    fusion = FusionStage()
    result = fusion.fuse([det("a", 0.5), det("b", 0.9)], [act("x", 0.6), act("y", 0.8)],
                         admitted_at=3.0, processing_time=0.01)

    assert [d.label for d in result.detections] == ["b", "a"]
    assert [a.label for a in result.actions] == ["y", "x"]
    assert result.timestamp == 3.0
    assert result.top_action.label == "y"


def test_reuses_latest_actions_when_action_path_skipped():
    fusion = FusionStage()
    fusion.fuse([], [act("wave", 0.9, timestamp=1.0)], admitted_at=1.0, processing_time=0.0)

    result = fusion.fuse([det("person", 0.7)], None, admitted_at=2.0, processing_time=0.0)
    assert [a.label for a in result.actions] == ["wave"]
    assert result.actions[0].timestamp == 1.0
    assert result.timestamp == 2.0


def test_failed_action_run_replaces_latest():
    fusion = FusionStage()
    fusion.fuse([], [act("wave", 0.9)], admitted_at=1.0, processing_time=0.0)
    result = fusion.fuse([], [], admitted_at=2.0, processing_time=0.0)
    assert result.actions == ()


def test_reset_clears_latest_actions():
    fusion = FusionStage()
    fusion.fuse([], [act("wave", 0.9)], admitted_at=1.0, processing_time=0.0)
    fusion.reset()
    assert fusion.fuse([], None, admitted_at=2.0, processing_time=0.0).actions == ()


def test_result_is_immutable():
    result = FusionStage().fuse([det("a", 0.5)], None, admitted_at=0.0, processing_time=0.0)
    with pytest.raises(dataclasses.FrozenInstanceError):
        result.timestamp = 1.0
    assert isinstance(result.detections, tuple)


def test_empty_result():
    result = AnalysisResult.empty(5.0)
    assert not result.has_detections
    assert not result.has_actions
    assert result.top_action is None
    assert result.context == {}


def test_unique_labels():
    result = FusionStage().fuse([det("a", 0.9), det("b", 0.8), det("a", 0.7)], None,
                                admitted_at=0.0, processing_time=0.0)
    assert result.unique_labels == ["a", "b"]
