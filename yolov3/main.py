import argparse
import logging

import torch

from .config import Config, Mode
from .dataset import parse_folder
from .detect import run_detector
from .errors import ModelConstructionError, YOLOError
from .model import load_model
from .train import Trainer


def parse_args(argv=None):
    defaults = Config()
    p = argparse.ArgumentParser(description="YOLOv3 (Darknet cfg + weights) detector and toy trainer")
    p.add_argument("-mode", "--mode", type=str, default=defaults.mode.value, help="Choose the mode: detector/training")
    p.add_argument("-weights", "--weights", type=str, default=defaults.weights, help="Path to weights file")
    p.add_argument("-cfg", "--cfg", type=str, default=defaults.cfg, help="Path to net configuration file")
    p.add_argument("-image", "--image", type=str, default=defaults.image,
                   help="Path to image file for 'detector' mode")
    p.add_argument("-train", "--train", type=str, default=defaults.train_folder,
                   help="Path to folder with labeled data")
    return p.parse_args(argv)


def config_from_args(args) -> Config:
    return Config(
        mode=Mode.parse(args.mode),
        weights=args.weights,
        cfg=args.cfg,
        image=args.image,
        train_folder=args.train,
    )


def main(argv=None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="[%(levelname)s] %(name)s: %(message)s")

    try:
        cfg = config_from_args(args)
    except ValueError:
        print(f"Mode '{args.mode}' is not implemented")
        return

    device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    print("[INFO] device:", device)

    try:
        model = load_model(cfg, device)
    except ModelConstructionError as e:
        print(f"[ERROR] Can't prepare YOLOv3 network: {e}")
        return
    print(model.summary())

    if cfg.mode is Mode.DETECT:
        try:
            dets = run_detector(model, cfg)
        except YOLOError as e:
            print(f"[ERROR] Detection failed: {e}")
            return
        print("Detections:")
        for det in dets:
            print(det)
        return

    try:
        labeled_data = parse_folder(cfg.train_folder)
        Trainer(model, cfg).run(labeled_data)
    except YOLOError as e:
        print(f"[ERROR] Training failed: {e}")


if __name__ == "__main__":
    main()
