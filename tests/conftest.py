"""Pytest configuration and fixtures."""

from pathlib import Path

import cv2
import numpy as np
import pytest

from yolov3.config import Config
from yolov3.darknet import Darknet, parse_cfg

# Small YOLOv3-tiny shaped network: two heads (13x13 and 26x26), 80 classes,
# 3 boxes per head. Exercises conv/bn, both maxpool flavours, route,
# upsample and shortcut.
TINY_CFG = """
[net]
width=416
height=416
channels=3

[convolutional]
batch_normalize=1
filters=4
size=3
stride=2
pad=1
activation=leaky

[maxpool]
size=2
stride=2

[convolutional]
batch_normalize=1
filters=8
size=3
stride=2
pad=1
activation=leaky

[maxpool]
size=2
stride=2

[convolutional]
batch_normalize=1
filters=8
size=3
stride=1
pad=1
activation=leaky

[maxpool]
size=2
stride=2

[maxpool]
size=2
stride=1

[convolutional]
size=1
stride=1
pad=1
filters=255
activation=linear

[yolo]
mask = 3,4,5
anchors = 10,14,  23,27,  37,58,  81,82,  135,169,  344,319
classes=80
num=6

[route]
layers = -3

[upsample]
stride=2

[route]
layers = -1, 4

[convolutional]
batch_normalize=1
filters=16
size=3
stride=1
pad=1
activation=leaky

[shortcut]
from=-2
activation=linear

[convolutional]
size=1
stride=1
pad=1
filters=255
activation=linear

[yolo]
mask = 0,1,2
anchors = 10,14,  23,27,  37,58,  81,82,  135,169,  344,319
classes=80
num=6
"""


def write_darknet_weights(cfg_path: Path, path: Path, head_bias: float = 0.0, extra: int = 0,
                          seed: int = 0) -> int:
    """Write random weights matching cfg_path in darknet layout; returns the float count."""
    net = Darknet(parse_cfg(cfg_path), 3, 80, 3, 0.1)
    rng = np.random.default_rng(seed)
    chunks = []
    for block, module in zip(net.blocks, net.module_list):
        if block["type"] != "convolutional":
            continue
        conv = module.conv
        n = conv.out_channels
        if hasattr(module, "bn"):
            chunks += [np.zeros(n), np.ones(n), np.zeros(n), np.ones(n)]
        else:
            chunks.append(np.full(n, head_bias))
        chunks.append(rng.normal(0.0, 0.05, conv.weight.numel()))
    chunks.append(np.zeros(extra))
    values = np.concatenate(chunks).astype(np.float32)

    with open(path, "wb") as f:
        np.array([0, 2, 5], dtype=np.int32).tofile(f)
        np.array([32013], dtype=np.int64).tofile(f)
        values.tofile(f)
    return values.size


def write_image(path: Path, seed: int = 0, size=(300, 400)) -> Path:
    rng = np.random.default_rng(seed)
    img = rng.integers(0, 256, (*size, 3), dtype=np.uint8)
    assert cv2.imwrite(str(path), img)
    return path


@pytest.fixture
def cfg_path(tmp_path):
    p = tmp_path / "tiny.cfg"
    p.write_text(TINY_CFG)
    return p


@pytest.fixture
def weights_path(tmp_path, cfg_path):
    p = tmp_path / "tiny.weights"
    write_darknet_weights(cfg_path, p)
    return p


@pytest.fixture
def confident_weights_path(tmp_path, cfg_path):
    """Head biases pushed high so nearly every box clears the score threshold."""
    p = tmp_path / "confident.weights"
    write_darknet_weights(cfg_path, p, head_bias=5.0)
    return p


@pytest.fixture
def image_path(tmp_path):
    return write_image(tmp_path / "dog.jpg")


@pytest.fixture
def train_folder(tmp_path):
    folder = tmp_path / "train"
    folder.mkdir()
    (folder / "sample1.txt").write_text("0.1 0.2 0.3 0.4")
    write_image(folder / "sample1.jpg", seed=1)
    return folder


@pytest.fixture
def config(cfg_path, weights_path, image_path, train_folder):
    return Config(cfg=str(cfg_path), weights=str(weights_path), image=str(image_path),
                  train_folder=str(train_folder))
