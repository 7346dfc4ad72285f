import numpy as np
import pytest
import torch

from yolov3.config import COCO_CLASSES
from yolov3.errors import GraphExecutionError, InputBindingError, PostprocessError, TargetError
from yolov3.loss import YOLOv3Loss
from yolov3.model import construct


@pytest.fixture
def model(cfg_path, weights_path):
    return construct((1, 3, 416, 416), 80, 3, 0.1, cfg_path, weights_path)


class TestBinding:

    def test_let_accepts_chw_and_nchw(self, model):
        model.let(np.full((3, 416, 416), 0.5, dtype=np.float32))
        assert torch.all(model.input == 0.5)
        model.let(torch.zeros(1, 3, 416, 416))
        assert torch.all(model.input == 0)

    def test_let_rejects_wrong_shape(self, model):
        with pytest.raises(InputBindingError, match="shape"):
            model.let(np.zeros((3, 224, 224), dtype=np.float32))

    def test_let_rejects_nested_list(self, model):
        with pytest.raises(InputBindingError, match=r"shape \(1, 1\)"):
            model.let([[0.0]])


class TestTargets:

    def test_class_records(self, model):
        model.set_target([16, 0.5, 0.5, 0.2, 0.3, 0, 0.1, 0.1, 0.05, 0.05])
        assert model.target.shape == (2, 5)
        assert model.target[:, 0].tolist() == [16.0, 0.0]

    def test_classless_records(self, model):
        model.set_target(np.array([0.1, 0.2, 0.3, 0.4], dtype=np.float32))
        assert model.target.tolist() == pytest.approx([[-1.0, 0.1, 0.2, 0.3, 0.4]])

    def test_empty_target(self, model):
        model.set_target([])
        assert model.target.shape == (0, 5)

    @pytest.mark.parametrize("vector", [
        [1, 2, 3],
        [80, 0.5, 0.5, 0.1, 0.1],
        [1.5, 0.5, 0.5, 0.1, 0.1],
        [0, float("nan"), 0.5, 0.1, 0.1],
    ])
    def test_rejected(self, model, vector):
        with pytest.raises(TargetError):
            model.set_target(vector)


class TestForward:

    def test_inference_and_postprocess(self, model):
        model.let(np.random.default_rng(0).random((3, 416, 416), dtype=np.float32))
        with torch.no_grad():
            outs = model.forward()
        assert len(outs) == 2 and model.get_output()[0] is outs[0]
        dets = model.process_output(COCO_CLASSES, 0.8, 0.3)
        assert all(d.score >= 0.8 for d in dets)

    def test_process_output_before_forward(self, model):
        with pytest.raises(PostprocessError, match="not been evaluated"):
            model.process_output(COCO_CLASSES, 0.8, 0.3)

    def test_process_output_label_count(self, model):
        with torch.no_grad():
            model.forward()
        with pytest.raises(PostprocessError, match="labels"):
            model.process_output(COCO_CLASSES[:10], 0.8, 0.3)

    def test_training_mode_needs_target(self, model):
        model.activate_training_mode()
        assert model.net.training
        assert all(isinstance(layer.loss, YOLOv3Loss) for layer in model.net.yolo_layers)
        with pytest.raises(GraphExecutionError, match="no target"):
            model.forward()

    def test_training_outputs_are_loss_terms(self, model):
        model.activate_training_mode()
        model.set_target([16, 0.5, 0.5, 0.2, 0.3])
        outs = model.forward()
        assert [tuple(o.shape) for o in outs] == [(1, 507, 85), (1, 2028, 85)]
        cost = torch.cat(outs, 1).sum()
        assert torch.isfinite(cost) and cost.item() > 0
        with pytest.raises(PostprocessError, match="training"):
            model.process_output(COCO_CLASSES, 0.8, 0.3)
