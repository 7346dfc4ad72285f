from dataclasses import dataclass
from enum import Enum
from typing import Tuple

COCO_CLASSES: Tuple[str, ...] = (
    "person", "bicycle", "car", "motorbike", "aeroplane", "bus", "train", "truck",
    "boat", "traffic light", "fire hydrant", "stop sign", "parking meter", "bench",
    "bird", "cat", "dog", "horse", "sheep", "cow", "elephant", "bear", "zebra",
    "giraffe", "backpack", "umbrella", "handbag", "tie", "suitcase", "frisbee",
    "skis", "snowboard", "sports ball", "kite", "baseball bat", "baseball glove",
    "skateboard", "surfboard", "tennis racket", "bottle", "wine glass", "cup",
    "fork", "knife", "spoon", "bowl", "banana", "apple", "sandwich", "orange",
    "broccoli", "carrot", "hot dog", "pizza", "donut", "cake", "chair", "sofa",
    "pottedplant", "bed", "diningtable", "toilet", "tvmonitor", "laptop", "mouse",
    "remote", "keyboard", "cell phone", "microwave", "oven", "toaster", "sink",
    "refrigerator", "book", "clock", "vase", "scissors", "teddy bear", "hair drier",
    "toothbrush",
)


class Mode(str, Enum):
    DETECT = "detector"
    TRAIN = "training"

    @classmethod
    def parse(cls, value: str) -> "Mode":
        """Case-insensitive lookup; raises ValueError for unknown modes."""
        return cls(value.lower())


@dataclass(frozen=True)
class Config:
    mode: Mode = Mode.DETECT

    # Paths
    weights: str = "test_network_data/yolov3-tiny.weights"
    cfg: str = "test_network_data/yolov3-tiny.cfg"
    image: str = "test_network_data/dog_416x416.jpg"
    train_folder: str = "test_yolo_op_data"

    # Network input
    img_width: int = 416
    img_height: int = 416
    channels: int = 3
    boxes: int = 3          # anchors per yolo layer
    leaky_coef: float = 0.1

    # Post-processing
    class_labels: Tuple[str, ...] = COCO_CLASSES
    score_threshold: float = 0.8
    iou_threshold: float = 0.3

    # Training (RMSprop, one epoch)
    lr: float = 1e-5
    lr_schedule: Tuple[Tuple[int, float], ...] = ((15, 1e-6), (150, 1e-7))

    # Loss weights (YOLO-ish)
    lambda_coord: float = 5.0
    lambda_noobj: float = 0.5
    ignore_thresh: float = 0.7

    @property
    def num_classes(self) -> int:
        return len(self.class_labels)

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        return (1, self.channels, self.img_width, self.img_height)
