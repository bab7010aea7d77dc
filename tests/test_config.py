from dataclasses import replace

import pytest

from core.config import PipelineConfig
from core.labels import COCO_LABELS, get_default_labels, load_label_file, load_labels
from core.utils import round_half_up


def test_defaults():
    config = PipelineConfig().validate()
    assert config.object.input_size == 320
    assert config.object.confidence_threshold == 0.4
    assert config.object.nms_threshold == 0.4
    assert config.object.max_detections == 100
    assert config.action.input_size == 112
    assert config.action.confidence_threshold == 0.5
    assert config.action.sequence_length == 8
    assert config.action.top_k == 3
    assert config.scheduler.action_interval == 0.5
    assert config.scheduler.object_timeout == 0.2
    assert config.scheduler.action_timeout == 0.3


def test_from_env_overrides():
    config = PipelineConfig.from_env(environ={
        'PERCEPTION_OBJECT_INPUT_SIZE': '640',
        'PERCEPTION_ACTION_SEQUENCE_LENGTH': '16',
        'PERCEPTION_SCHEDULER_ACTION_INTERVAL': '1.5',
        'PERCEPTION_SCHEDULER_OBJECT_TIMEOUT': 'none',
        'PERCEPTION_SCHEDULER_ENABLE_ACTIONS': 'false',
        'PERCEPTION_ACTION_NORMALIZATION': 'imagenet',
        'UNRELATED': 'x',
    })
    assert config.object.input_size == 640
    assert config.action.sequence_length == 16
    assert config.scheduler.action_interval == 1.5
    assert config.scheduler.object_timeout is None
    assert config.scheduler.enable_actions is False
    assert config.action.normalization == 'imagenet'
    assert config.action.input_size == 112


def test_from_env_rejects_invalid_values():
    with pytest.raises(ValueError):
        PipelineConfig.from_env(environ={'PERCEPTION_OBJECT_CONFIDENCE_THRESHOLD': '1.5'})
    with pytest.raises(ValueError):
        PipelineConfig.from_env(environ={'PERCEPTION_OBJECT_INPUT_SIZE': 'big'})


@pytest.mark.parametrize("section,field,value", [
    ("object", "input_size", 0),
    ("object", "nms_threshold", -0.1),
    ("object", "max_detections", 0),
    ("object", "normalization", "zscore"),
    ("action", "sequence_length", 0),
    ("action", "top_k", 0),
    ("scheduler", "action_interval", -1.0),
    ("scheduler", "action_timeout", 0.0),
])
def test_validate_rejects(section, field, value):
    config = PipelineConfig()
    bad = replace(config, **{section: replace(getattr(config, section), **{field: value})})
    with pytest.raises(ValueError):
        bad.validate()


def test_label_file(tmp_path):
    path = tmp_path / "labels.txt"
    path.write_text("a\n\n b \n", encoding="utf-8")
    assert load_label_file(path) == ["a", "b"]

    empty = tmp_path / "empty.txt"
    empty.write_text("\n\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_label_file(empty)


def test_load_labels_falls_back(tmp_path):
    assert load_labels(tmp_path / "missing.txt", ["x"]) == ["x"]
    assert load_labels(None, ["y"]) == ["y"]


def test_default_labels():
    assert get_default_labels("object") == list(COCO_LABELS)
    assert len(get_default_labels("object")) == 80
    assert get_default_labels("action")
    with pytest.raises(ValueError):
        get_default_labels("scene")


@pytest.mark.parametrize("value,expected", [(0.5, 1), (1.5, 2), (2.5, 3), (2.4, 2), (-0.5, -1), (360.0, 360)])
def test_round_half_up(value, expected):
    assert round_half_up(value) == expected
