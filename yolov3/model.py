from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
import torch.nn as nn

from .config import Config
from .darknet import Darknet, PathLike, load_darknet_weights, parse_cfg
from .errors import GraphExecutionError, InputBindingError, ModelConstructionError, PostprocessError, TargetError
from .loss import YOLOv3Loss
from .utils import Detection, postprocess


class YOLOv3:
    """
    Handle around a Darknet-built YOLOv3 network.
    Holds the declared input tensor (1, C, W, H), the optional training target
    and the outputs of the yolo heads from the last forward pass.
    """
    def __init__(self, net: Darknet, input_shape: Tuple[int, int, int, int], num_classes: int,
                 num_boxes: int, device: Union[str, torch.device] = "cpu"):
        self.device = torch.device(device)
        self.net = net.to(self.device)
        self.net.eval()
        self.num_classes = num_classes
        self.num_boxes = num_boxes
        self.input = torch.zeros(input_shape, dtype=torch.float32, device=self.device)
        self.target: Optional[torch.Tensor] = None
        self.training = False
        self._outputs: List[torch.Tensor] = []

    @property
    def learning_nodes(self) -> List[nn.Parameter]:
        return list(self.net.parameters())

    def summary(self) -> str:
        return self.net.summary()

    def let(self, image: Union[np.ndarray, torch.Tensor]) -> None:
        """Bind image data, (C, H, W) or (1, C, H, W), to the declared input."""
        data = torch.as_tensor(image, dtype=torch.float32)
        if data.dim() == 3:
            data = data.unsqueeze(0)
        if tuple(data.shape) != tuple(self.input.shape):
            raise InputBindingError(
                f"Can't bind data of shape {tuple(data.shape)} to input of shape {tuple(self.input.shape)}"
            )
        self.input.copy_(data.to(self.device))

    def activate_training_mode(self, lambda_coord: float = 5.0, lambda_noobj: float = 0.5,
                               ignore_thresh: float = 0.7) -> None:
        for layer in self.net.yolo_layers:
            layer.loss = YOLOv3Loss(
                layer.anchor_pairs, layer.mask, self.num_classes,
                lambda_coord=lambda_coord, lambda_noobj=lambda_noobj, ignore_thresh=ignore_thresh,
            ).to(self.device)
        self.net.train()
        self.training = True

    def set_target(self, vector: Sequence[float]) -> None:
        """
        Target for the next training step, a flat float vector of
          class cx cy w h  records (darknet labels, box normalized to [0, 1])
        or, when the length is a multiple of 4 but not of 5,
          cx cy w h  records without a class label.
        An empty vector means an image without objects.
        """
        values = np.asarray(vector, dtype=np.float32).ravel()
        if not np.all(np.isfinite(values)):
            raise TargetError("target contains non-finite values")

        if values.size % 5 == 0:
            records = values.reshape(-1, 5)
            classes = records[:, 0]
            bad = (classes != np.round(classes)) | (classes < 0) | (classes >= self.num_classes)
            if bad.any():
                raise TargetError(
                    f"target class ids must be integers in [0, {self.num_classes}), got {classes[bad].tolist()}"
                )
        elif values.size % 4 == 0:
            boxes = values.reshape(-1, 4)
            records = np.concatenate([np.full((len(boxes), 1), -1.0, dtype=np.float32), boxes], axis=1)
        else:
            raise TargetError(f"target of {values.size} values is neither 5-value nor 4-value records")

        self.target = torch.from_numpy(np.ascontiguousarray(records)).to(self.device)

    def forward(self) -> List[torch.Tensor]:
        targets = None
        if self.training:
            if self.target is None:
                raise GraphExecutionError("training mode is active but no target is set")
            targets = self.target
        self._outputs = self.net(self.input, targets)
        return self._outputs

    def get_output(self) -> List[torch.Tensor]:
        return list(self._outputs)

    def process_output(self, class_labels: Sequence[str], score_threshold: float,
                       iou_threshold: float) -> List[Detection]:
        if not self._outputs:
            raise PostprocessError("network has not been evaluated yet")
        if self.training:
            raise PostprocessError("outputs hold loss terms while training mode is active")
        if len(class_labels) != self.num_classes:
            raise PostprocessError(f"got {len(class_labels)} class labels for {self.num_classes} classes")
        preds = torch.cat([out.detach() for out in self._outputs], dim=1)[0]
        return postprocess(preds, class_labels, score_threshold, iou_threshold)


def construct(input_shape: Tuple[int, int, int, int], num_classes: int, num_boxes: int, leaky_coef: float,
              cfg_path: PathLike, weights_path: PathLike,
              device: Union[str, torch.device] = "cpu") -> YOLOv3:
    """Build YOLOv3 from a Darknet cfg and weights file; ModelConstructionError on any mismatch."""
    blocks = parse_cfg(cfg_path)
    _, channels, width, height = input_shape
    net = Darknet(blocks, channels, num_classes, num_boxes, leaky_coef)
    if not net.yolo_layers:
        raise ModelConstructionError(f"network config '{cfg_path}' has no [yolo] layers")

    stride = max(net.strides)
    if width % stride or height % stride:
        raise ModelConstructionError(f"input {width}x{height} is not divisible by network stride {stride}")

    load_darknet_weights(net, weights_path)
    return YOLOv3(net, input_shape, num_classes, num_boxes, device)


def load_model(cfg: Config, device: Union[str, torch.device] = "cpu") -> YOLOv3:
    return construct(cfg.input_shape, cfg.num_classes, cfg.boxes, cfg.leaky_coef, cfg.cfg, cfg.weights, device)
