import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
import torch.nn as nn

from .errors import ModelConstructionError
from .utils import decode_boxes

logger = logging.getLogger(__name__)

Block = Dict[str, str]
PathLike = Union[str, Path]


def parse_cfg(path: PathLike) -> List[Block]:
    """
    Read a Darknet .cfg file into a list of blocks:
      [{"type": "net", "width": "416", ...}, {"type": "convolutional", ...}, ...]
    Values stay strings; layers convert what they need.
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ModelConstructionError(f"Can't read network config '{p}': {e}") from e
    except UnicodeDecodeError as e:
        raise ModelConstructionError(f"Network config '{p}' is not a text file: {e}") from e

    blocks: List[Block] = []
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.split("#", 1)[0].split(";", 1)[0].strip()
        if not line:
            continue
        if line.startswith("["):
            if not line.endswith("]"):
                raise ModelConstructionError(f"{p}:{lineno}: unterminated section header '{line}'")
            blocks.append({"type": line[1:-1].strip().lower()})
            continue
        if not blocks:
            raise ModelConstructionError(f"{p}:{lineno}: option '{line}' outside of any section")
        key, sep, value = line.partition("=")
        if not sep:
            raise ModelConstructionError(f"{p}:{lineno}: expected 'key=value', got '{line}'")
        blocks[-1][key.strip()] = value.strip()

    if not blocks or blocks[0]["type"] not in ("net", "network"):
        raise ModelConstructionError(f"{p}: first section must be [net]")
    if len(blocks) == 1:
        raise ModelConstructionError(f"{p}: no layers after [net]")
    return blocks


def _int(block: Block, key: str, default: Optional[int] = None) -> int:
    if key not in block:
        if default is None:
            raise ModelConstructionError(f"[{block['type']}] is missing '{key}'")
        return default
    try:
        return int(block[key])
    except ValueError as e:
        raise ModelConstructionError(f"[{block['type']}] {key}={block[key]!r} is not an integer") from e


def _numbers(block: Block, key: str, cast=int) -> List:
    try:
        return [cast(v) for v in block[key].split(",") if v.strip()]
    except KeyError as e:
        raise ModelConstructionError(f"[{block['type']}] is missing '{key}'") from e
    except ValueError as e:
        raise ModelConstructionError(f"[{block['type']}] {key}={block[key]!r} is not a number list") from e


def _resolve(index: int, ref: int) -> int:
    # negative references are relative to the current layer
    target = index + ref if ref < 0 else ref
    if not 0 <= target < index:
        raise ModelConstructionError(f"layer {index}: reference {ref} points outside of previous layers")
    return target


class Route(nn.Module):
    def __init__(self, layers: Sequence[int]):
        super().__init__()
        self.layers = list(layers)


class Shortcut(nn.Module):
    def __init__(self, source: int):
        super().__init__()
        self.source = source


class YOLOLayer(nn.Module):
    """
    Detection head. Inference output is (B, A*G*G, 5+C) with
      [cx, cy, w, h] in input pixels, objectness and class probabilities.
    With a loss attached and targets given, it returns the element-wise loss
    terms in the same layout instead.
    """
    def __init__(self, anchors: Sequence[Tuple[float, float]], mask: Sequence[int], num_classes: int):
        super().__init__()
        self.anchor_pairs = [tuple(a) for a in anchors]
        self.mask = list(mask)
        self.num_classes = num_classes
        self.num_anchors = len(self.mask)
        self.register_buffer(
            "anchors", torch.tensor([self.anchor_pairs[i] for i in self.mask], dtype=torch.float32)
        )
        self.loss: Optional[nn.Module] = None

    def forward(self, x: torch.Tensor, img_size: Tuple[int, int], targets: Optional[torch.Tensor] = None) -> torch.Tensor:
        b, _, gh, gw = x.shape
        ch = 5 + self.num_classes
        # (B, A, G, G, 5+C)
        pred = x.view(b, self.num_anchors, ch, gh, gw).permute(0, 1, 3, 4, 2).contiguous()

        if targets is not None:
            if self.loss is None:
                raise RuntimeError("yolo layer has no loss attached; activate training mode first")
            return self.loss(pred, targets, img_size).view(b, -1, ch)

        boxes = decode_boxes(pred, self.anchors, img_size)
        return torch.cat((boxes, pred[..., 4:].sigmoid()), dim=-1).view(b, -1, ch)


def create_modules(blocks: List[Block], in_channels: int, num_classes: int, num_boxes: int,
                   leaky_coef: float) -> Tuple[nn.ModuleList, List[int], List[int]]:
    """Build one module per layer block; also returns output channels and stride per layer."""
    module_list = nn.ModuleList()
    out_channels: List[int] = []
    strides: List[int] = []
    prev_channels, prev_stride = in_channels, 1

    for i, block in enumerate(blocks):
        kind = block["type"]
        if kind == "convolutional":
            bn = _int(block, "batch_normalize", 0)
            filters = _int(block, "filters")
            size = _int(block, "size")
            stride = _int(block, "stride", 1)
            pad = (size - 1) // 2 if _int(block, "pad", 0) else 0

            module = nn.Sequential()
            module.add_module("conv", nn.Conv2d(prev_channels, filters, size, stride, pad, bias=not bn))
            if bn:
                module.add_module("bn", nn.BatchNorm2d(filters, momentum=0.01, eps=1e-5))
            activation = block.get("activation", "linear")
            if activation == "leaky":
                module.add_module("act", nn.LeakyReLU(leaky_coef))
            elif activation != "linear":
                raise ModelConstructionError(f"layer {i}: unsupported activation '{activation}'")
            channels, layer_stride = filters, prev_stride * stride

        elif kind == "maxpool":
            size = _int(block, "size")
            stride = _int(block, "stride", 1)
            module = nn.Sequential()
            if size == 2 and stride == 1:
                # darknet keeps the spatial size for the 2x2/1 pool of the tiny model
                module.add_module("pad", nn.ReplicationPad2d((0, 1, 0, 1)))
            module.add_module("pool", nn.MaxPool2d(size, stride, padding=(size - 1) // 2))
            channels, layer_stride = prev_channels, prev_stride * stride

        elif kind == "upsample":
            factor = _int(block, "stride", 2)
            module = nn.Upsample(scale_factor=factor, mode="nearest")
            channels, layer_stride = prev_channels, max(1, prev_stride // factor)

        elif kind == "route":
            layers = [_resolve(i, ref) for ref in _numbers(block, "layers")]
            if not layers:
                raise ModelConstructionError(f"layer {i}: route without layers")
            module = Route(layers)
            channels = sum(out_channels[l] for l in layers)
            layer_stride = strides[layers[0]]

        elif kind == "shortcut":
            source = _resolve(i, _int(block, "from"))
            if block.get("activation", "linear") != "linear":
                raise ModelConstructionError(f"layer {i}: unsupported shortcut activation")
            if out_channels[source] != prev_channels:
                raise ModelConstructionError(
                    f"layer {i}: shortcut joins {prev_channels} and {out_channels[source]} channels"
                )
            module = Shortcut(source)
            channels, layer_stride = prev_channels, prev_stride

        elif kind == "yolo":
            mask = _numbers(block, "mask")
            values = _numbers(block, "anchors", cast=float)
            if len(values) % 2:
                raise ModelConstructionError(f"layer {i}: anchors must come in (w, h) pairs")
            anchors = list(zip(values[::2], values[1::2]))
            classes = _int(block, "classes")
            if classes != num_classes:
                raise ModelConstructionError(f"layer {i}: cfg has {classes} classes, expected {num_classes}")
            if len(mask) != num_boxes:
                raise ModelConstructionError(f"layer {i}: mask has {len(mask)} boxes, expected {num_boxes}")
            if any(m < 0 or m >= len(anchors) for m in mask):
                raise ModelConstructionError(f"layer {i}: mask {mask} refers to missing anchors")
            expected = num_boxes * (5 + num_classes)
            if prev_channels != expected:
                raise ModelConstructionError(
                    f"layer {i}: yolo input has {prev_channels} channels, expected {expected}"
                )
            module = YOLOLayer(anchors, mask, classes)
            channels, layer_stride = prev_channels, prev_stride

        else:
            raise ModelConstructionError(f"layer {i}: unsupported section [{kind}]")

        module_list.append(module)
        out_channels.append(channels)
        strides.append(layer_stride)
        prev_channels, prev_stride = channels, layer_stride

    return module_list, out_channels, strides


class Darknet(nn.Module):
    def __init__(self, blocks: List[Block], in_channels: int, num_classes: int, num_boxes: int,
                 leaky_coef: float = 0.1):
        super().__init__()
        self.hyperparams = blocks[0]
        self.blocks = blocks[1:]

        net_channels = _int(self.hyperparams, "channels", in_channels)
        if net_channels != in_channels:
            raise ModelConstructionError(f"[net] declares {net_channels} channels, input has {in_channels}")

        self.module_list, self.out_channels, self.strides = create_modules(
            self.blocks, in_channels, num_classes, num_boxes, leaky_coef
        )

    @property
    def yolo_layers(self) -> List[YOLOLayer]:
        return [m for m in self.module_list if isinstance(m, YOLOLayer)]

    def forward(self, x: torch.Tensor, targets: Optional[torch.Tensor] = None) -> List[torch.Tensor]:
        img_size = (x.shape[2], x.shape[3])
        outputs, layer_outputs = [], []
        for module in self.module_list:
            if isinstance(module, Route):
                x = torch.cat([layer_outputs[l] for l in module.layers], dim=1)
            elif isinstance(module, Shortcut):
                x = layer_outputs[-1] + layer_outputs[module.source]
            elif isinstance(module, YOLOLayer):
                x = module(x, img_size, targets)
                outputs.append(x)
            else:
                x = module(x)
            layer_outputs.append(x)
        return outputs

    def summary(self) -> str:
        lines = [f"{'layer':>5}  {'type':<14}{'filters':>8}{'stride':>8}  detail"]
        for i, (block, channels, stride) in enumerate(zip(self.blocks, self.out_channels, self.strides)):
            kind = block["type"]
            if kind == "convolutional":
                detail = f"{block['size']}x{block['size']}/{block.get('stride', '1')}"
                if _int(block, "batch_normalize", 0):
                    detail += " bn"
                detail += f" {block.get('activation', 'linear')}"
            elif kind == "maxpool":
                detail = f"{block['size']}x{block['size']}/{block.get('stride', '1')}"
            elif kind == "upsample":
                detail = f"x{block.get('stride', '2')}"
            elif kind == "route":
                detail = "layers " + ", ".join(str(l) for l in self.module_list[i].layers)
            elif kind == "shortcut":
                detail = f"from {self.module_list[i].source}"
            else:
                detail = f"mask {block['mask']}"
            lines.append(f"{i:>5}  {kind:<14}{channels:>8}{stride:>8}  {detail}")
        return "\n".join(lines)


def load_darknet_weights(net: Darknet, path: PathLike) -> int:
    """
    Copy a Darknet .weights file into the convolutional layers of `net`.
    Layout: int32 major, minor, revision; `seen` (int64 for format >= 0.2);
    then float32 values per conv layer:
      bn bias, bn weight, bn running mean, bn running var, conv weight
    or, without batch norm, conv bias and conv weight.
    Returns the number of floats read.
    """
    p = Path(path)
    try:
        with p.open("rb") as f:
            header = np.fromfile(f, dtype=np.int32, count=3)
            if header.size < 3:
                raise ModelConstructionError(f"weights file '{p}' has a truncated header")
            major, minor = int(header[0]), int(header[1])
            wide_seen = major * 10 + minor >= 2 and major < 1000 and minor < 1000
            seen = np.fromfile(f, dtype=np.int64 if wide_seen else np.int32, count=1)
            if seen.size < 1:
                raise ModelConstructionError(f"weights file '{p}' has a truncated header")
            weights = np.fromfile(f, dtype=np.float32)
    except OSError as e:
        raise ModelConstructionError(f"Can't read weights file '{p}': {e}") from e

    ptr = 0
    for block, module in zip(net.blocks, net.module_list):
        if block["type"] != "convolutional":
            continue
        conv = module.conv
        if hasattr(module, "bn"):
            bn = module.bn
            tensors = [bn.bias, bn.weight, bn.running_mean, bn.running_var]
        else:
            tensors = [conv.bias]
        tensors.append(conv.weight)

        for t in tensors:
            n = t.numel()
            if ptr + n > weights.size:
                raise ModelConstructionError(
                    f"weights file '{p}' ends after {weights.size} values, network needs more"
                )
            with torch.no_grad():
                t.copy_(torch.from_numpy(weights[ptr:ptr + n]).view_as(t))
            ptr += n

    if ptr != weights.size:
        raise ModelConstructionError(
            f"weights file '{p}' has {weights.size - ptr} values left over; it does not match the network"
        )
    logger.debug("Loaded %d weights (format %d.%d, seen=%d) from %s", ptr, major, minor, int(seen[0]), p)
    return ptr
