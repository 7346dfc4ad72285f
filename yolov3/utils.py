from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple, Union

import cv2
import numpy as np
import torch
from torchvision.ops import batched_nms, box_convert

from .errors import ImageLoadError


@dataclass(frozen=True)
class Detection:
    label: str
    class_id: int
    score: float
    bbox: Tuple[float, float, float, float]  # x1, y1, x2, y2 in input pixels

    def __str__(self) -> str:
        x1, y1, x2, y2 = self.bbox
        return f"{self.label} {self.score:.3f} [{x1:.1f}, {y1:.1f}, {x2:.1f}, {y2:.1f}]"


def load_float32_image(path: Union[str, Path], height: int, width: int) -> np.ndarray:
    """Decode an image file into a (3, H, W) float32 RGB array scaled to [0, 1]."""
    img = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if img is None:
        raise ImageLoadError(f"Failed to read image: {path}")
    img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
    img = cv2.resize(img, (width, height), interpolation=cv2.INTER_LINEAR)
    img = img.astype(np.float32) / 255.0
    return np.ascontiguousarray(img.transpose(2, 0, 1))


def make_grid(gh: int, gw: int, device=None) -> torch.Tensor:
    """Cell offsets (1, 1, gh, gw, 2) holding (x, y) per cell."""
    ys, xs = torch.meshgrid(
        torch.arange(gh, device=device), torch.arange(gw, device=device), indexing="ij"
    )
    return torch.stack((xs, ys), dim=-1).view(1, 1, gh, gw, 2).float()


def decode_boxes(pred: torch.Tensor, anchors: torch.Tensor, img_size: Tuple[int, int]) -> torch.Tensor:
    """
    pred: raw head output (B, A, G, G, 5+C)
    anchors: (A, 2) in input pixels
    returns (B, A, G, G, 4) boxes as cx, cy, w, h in input pixels
    """
    gh, gw = pred.shape[2], pred.shape[3]
    img_h, img_w = img_size
    stride = pred.new_tensor([img_w / gw, img_h / gh])
    xy = (pred[..., 0:2].sigmoid() + make_grid(gh, gw, pred.device)) * stride
    wh = pred[..., 2:4].exp() * anchors.view(1, -1, 1, 1, 2)
    return torch.cat((xy, wh), dim=-1)


def postprocess(preds: torch.Tensor, class_labels: Sequence[str], score_thresh: float = 0.8,
                iou_thresh: float = 0.3) -> List[Detection]:
    """
    preds: (N, 5+C) rows of [cx, cy, w, h, obj, class probs...] for a single image.
    Score is obj * best class prob. Boxes scoring below score_thresh are dropped,
    the rest go through per-class NMS. Result is ordered by score, highest first.
    """
    if preds.numel() == 0:
        return []

    cls_prob, cls_id = preds[:, 5:].max(dim=1)
    scores = preds[:, 4] * cls_prob
    keep = scores >= score_thresh
    if not keep.any():
        return []

    boxes = box_convert(preds[keep, :4], in_fmt="cxcywh", out_fmt="xyxy")
    scores = scores[keep]
    cls_id = cls_id[keep]
    idx = batched_nms(boxes, scores, cls_id, iou_thresh)

    detections = []
    for box, score, c in zip(boxes[idx].tolist(), scores[idx].tolist(), cls_id[idx].tolist()):
        detections.append(Detection(label=class_labels[c], class_id=c, score=score, bbox=tuple(box)))
    return detections
