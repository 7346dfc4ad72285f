from yolov3.config import Mode
from yolov3.main import config_from_args, main, parse_args


def _args(config, *extra):
    return ["-cfg", config.cfg, "-weights", config.weights, "-image", config.image,
            "-train", config.train_folder, *extra]


def test_defaults():
    args = parse_args([])
    cfg = config_from_args(args)
    assert cfg.mode is Mode.DETECT
    assert cfg.weights.endswith("yolov3-tiny.weights")
    assert cfg.train_folder == "test_yolo_op_data"


def test_double_dash_aliases():
    args = parse_args(["--mode", "training", "--train", "data"])
    cfg = config_from_args(args)
    assert cfg.mode is Mode.TRAIN and cfg.train_folder == "data"


def test_unknown_mode(capsys):
    assert main(["-mode", "segmentation"]) is None
    assert "Mode 'segmentation' is not implemented" in capsys.readouterr().out


def test_missing_network_files(tmp_path, capsys):
    main(["-cfg", str(tmp_path / "none.cfg"), "-weights", str(tmp_path / "none.weights")])
    assert "[ERROR] Can't prepare YOLOv3 network" in capsys.readouterr().out


def test_detector_mode(config, capsys):
    main(_args(config, "-mode", "Detector"))
    out = capsys.readouterr().out
    assert "yolo" in out
    assert "Detections:" in out


def test_detector_mode_bad_image(config, tmp_path, capsys):
    main(_args(config, "-image", str(tmp_path / "missing.jpg")))
    out = capsys.readouterr().out
    assert "[ERROR] Detection failed" in out
    assert "Detections:" not in out


def test_training_mode(config, capsys):
    main(_args(config, "-mode", "training"))
    assert "[DONE] 1 iterations, 1 solver steps" in capsys.readouterr().out


def test_training_mode_empty_folder(config, tmp_path, capsys):
    empty = tmp_path / "empty"
    empty.mkdir()
    main(_args(config, "-mode", "training", "-train", str(empty)))
    assert "[ERROR] Training failed" in capsys.readouterr().out


def test_mode_is_case_insensitive_but_not_trimmed(capsys):
    assert Mode.parse("DETECTOR") is Mode.DETECT
    main(["-mode", " detector"])
    assert "Mode ' detector' is not implemented" in capsys.readouterr().out


def test_binary_network_config(config, tmp_path, capsys):
    cfg = tmp_path / "binary.cfg"
    cfg.write_bytes(b"\xff\xfe\x00garbage")
    main(["-cfg", str(cfg), "-weights", config.weights])
    assert "[ERROR] Can't prepare YOLOv3 network" in capsys.readouterr().out


def test_training_mode_binary_annotation(config, tmp_path, capsys):
    folder = tmp_path / "binary"
    folder.mkdir()
    (folder / "x.txt").write_bytes(b"\xff\xfe\x00 1.0")
    main(_args(config, "-mode", "training", "-train", str(folder)))
    assert "[ERROR] Training failed" in capsys.readouterr().out
