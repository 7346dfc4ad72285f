import time
from typing import List

from .config import Config
from .engine import Executor
from .model import YOLOv3
from .utils import Detection, load_float32_image


def run_detector(model: YOLOv3, cfg: Config) -> List[Detection]:
    img = load_float32_image(cfg.image, cfg.img_height, cfg.img_width)
    model.let(img)

    with Executor(model) as tm:
        st = time.perf_counter()
        tm.run_all()
        print(f"[INFO] feedforwarded in {(time.perf_counter() - st) * 1000:.1f} ms")

    st = time.perf_counter()
    dets = model.process_output(cfg.class_labels, cfg.score_threshold, cfg.iou_threshold)
    print(f"[INFO] postprocessed in {(time.perf_counter() - st) * 1000:.1f} ms")
    return dets
