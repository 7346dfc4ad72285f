import math
from typing import Sequence, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F
from torchvision.ops import box_convert, box_iou

from .utils import decode_boxes


class YOLOv3Loss(nn.Module):
    """
    YOLOv3 loss for one detection head, kept element-wise.
    pred: raw head output (B, A, G, G, 5+C)
    targets: (N, 5) rows [class, cx, cy, w, h], box normalized to the input
             image; class -1 marks a box without a class label
    Returns a tensor shaped like pred, so the total cost is a plain sum.
    """
    def __init__(self, anchors: Sequence[Tuple[float, float]], mask: Sequence[int], num_classes: int,
                 lambda_coord: float = 5.0, lambda_noobj: float = 0.5, ignore_thresh: float = 0.7):
        super().__init__()
        self.register_buffer("all_anchors", torch.tensor(anchors, dtype=torch.float32))
        self.mask = list(mask)
        self.num_classes = num_classes
        self.lambda_coord = lambda_coord
        self.lambda_noobj = lambda_noobj
        self.ignore_thresh = ignore_thresh

    def build_targets(self, pred: torch.Tensor, targets: torch.Tensor, img_size: Tuple[int, int]):
        """
        Assign each box to the anchor (over all heads) with the best shape IoU.
        Boxes whose best anchor belongs to another head are skipped here.
        If two boxes land in the same cell and anchor, the later one wins.
        """
        _, na, gh, gw, ch = pred.shape
        img_h, img_w = img_size
        tgt = pred.new_zeros((na, gh, gw, ch))
        obj = pred.new_zeros((na, gh, gw))
        cls_mask = pred.new_zeros((na, gh, gw))
        anchors = self.all_anchors

        for cls, cx, cy, w, h in targets.tolist():
            if w <= 0 or h <= 0:
                continue
            bw, bh = w * img_w, h * img_h
            inter = anchors[:, 0].clamp(max=bw) * anchors[:, 1].clamp(max=bh)
            ious = inter / (bw * bh + anchors[:, 0] * anchors[:, 1] - inter)
            best = int(ious.argmax())
            if best not in self.mask:
                continue
            a = self.mask.index(best)

            gi = min(max(int(cx * gw), 0), gw - 1)
            gj = min(max(int(cy * gh), 0), gh - 1)
            tgt[a, gj, gi, 0] = cx * gw - gi
            tgt[a, gj, gi, 1] = cy * gh - gj
            tgt[a, gj, gi, 2] = math.log(bw / float(anchors[best, 0]) + 1e-16)
            tgt[a, gj, gi, 3] = math.log(bh / float(anchors[best, 1]) + 1e-16)
            tgt[a, gj, gi, 4] = 1.0
            obj[a, gj, gi] = 1.0

            tgt[a, gj, gi, 5:] = 0.0
            if cls >= 0:
                tgt[a, gj, gi, 5 + int(cls)] = 1.0
                cls_mask[a, gj, gi] = 1.0
            else:
                cls_mask[a, gj, gi] = 0.0
        return tgt, obj, cls_mask

    def ignore_mask(self, pred: torch.Tensor, targets: torch.Tensor, img_size: Tuple[int, int]) -> torch.Tensor:
        """0 where a predicted box already overlaps some target above ignore_thresh, else 1."""
        keep = pred.new_ones(pred.shape[:4])
        truth = targets[(targets[:, 3] > 0) & (targets[:, 4] > 0), 1:5]
        if truth.numel() == 0:
            return keep

        img_h, img_w = img_size
        truth = truth * truth.new_tensor([img_w, img_h, img_w, img_h])
        boxes = decode_boxes(pred, self.all_anchors[self.mask], img_size).view(-1, 4)
        ious = box_iou(box_convert(boxes, "cxcywh", "xyxy"), box_convert(truth, "cxcywh", "xyxy"))
        best = ious.max(dim=1).values.view(pred.shape[:4])
        keep[best > self.ignore_thresh] = 0.0
        return keep

    def forward(self, pred: torch.Tensor, targets: torch.Tensor, img_size: Tuple[int, int]) -> torch.Tensor:
        tgt, obj, cls_mask = self.build_targets(pred, targets, img_size)
        noobj = (1.0 - obj) * self.ignore_mask(pred.detach(), targets, img_size)
        obj_e = obj.unsqueeze(-1)

        # x,y through sigmoid (offset in cell), w,h as raw log-space against the anchor
        xy_loss = self.lambda_coord * (pred[..., 0:2].sigmoid() - tgt[..., 0:2]).pow(2) * obj_e
        wh_loss = self.lambda_coord * (pred[..., 2:4] - tgt[..., 2:4]).pow(2) * obj_e

        bce = F.binary_cross_entropy_with_logits(pred[..., 4], obj.expand_as(pred[..., 4]), reduction="none")
        obj_loss = bce * obj + self.lambda_noobj * bce * noobj

        class_loss = F.binary_cross_entropy_with_logits(
            pred[..., 5:], tgt[..., 5:].expand_as(pred[..., 5:]), reduction="none"
        )
        class_loss = class_loss * cls_mask.unsqueeze(-1)

        return torch.cat((xy_loss, wh_loss, obj_loss.unsqueeze(-1), class_loss), dim=-1)
