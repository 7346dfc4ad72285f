import logging
from pathlib import Path
from typing import Dict, Union

import numpy as np

from .errors import AnnotationError, EmptyDatasetError, MalformedAnnotationError

logger = logging.getLogger(__name__)


def extension(name: str) -> str:
    # suffix from the last dot, so a file named ".txt" has extension ".txt"
    dot = name.rfind(".")
    return name[dot:] if dot >= 0 else ""


def annotation_key(name: str) -> str:
    # everything before the first dot: "img.v2.txt" -> "img"
    return name.split(".")[0]


def parse_annotation(text: str, source: str = "<annotation>") -> np.ndarray:
    """Whitespace separated decimal tokens -> float32 vector, in file order."""
    values = []
    for token in text.split():
        try:
            if "_" in token:
                raise ValueError(token)
            values.append(float(token))
        except ValueError as e:
            raise MalformedAnnotationError(f"{source}: '{token}' is not a valid float") from e

    wide = np.array(values, dtype=np.float64)
    with np.errstate(over="ignore"):
        narrow = wide.astype(np.float32)
    overflow = np.isinf(narrow) & np.isfinite(wide)
    if overflow.any():
        raise MalformedAnnotationError(f"{source}: {wide[overflow][0]!r} is out of float32 range")
    return narrow


def parse_folder(directory: Union[str, Path]) -> Dict[str, np.ndarray]:
    """
    Read every *.txt file of `directory` as a target vector keyed by file stem.
    Files are visited in name order; a stem seen twice keeps the later file.
    """
    root = Path(directory)
    try:
        entries = sorted(root.iterdir(), key=lambda p: p.name)
    except OSError as e:
        raise AnnotationError(f"Can't list annotation folder '{root}': {e}") from e

    targets: Dict[str, np.ndarray] = {}
    for path in entries:
        # Parse only *.txt files
        if path.is_dir() or extension(path.name) != ".txt":
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise AnnotationError(f"Can't read annotation file '{path}': {e}") from e
        except UnicodeDecodeError as e:
            raise MalformedAnnotationError(f"{path.name}: not a text file: {e}") from e

        key = annotation_key(path.name)
        if key in targets:
            logger.warning("Annotation '%s' reuses key '%s' and replaces an earlier file", path.name, key)
        targets[key] = parse_annotation(text, source=path.name)

    if not targets:
        raise EmptyDatasetError(f"Folder '{root}' doesn't contain any *.txt files (annotation files for YOLO)")
    logger.debug("Parsed %d annotation files from %s", len(targets), root)
    return targets
