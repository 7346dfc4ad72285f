import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
from tqdm import tqdm

from .config import Config
from .engine import Executor
from .errors import OptimizerStepError
from .model import YOLOv3
from .utils import load_float32_image

Schedule = Sequence[Tuple[int, float]]
SolverFactory = Callable[[List[torch.nn.Parameter], float], torch.optim.Optimizer]


def rmsprop(params: List[torch.nn.Parameter], lr: float) -> torch.optim.Optimizer:
    return torch.optim.RMSprop(params, lr=lr)


def learning_rate_at(iteration: int, base_lr: float, schedule: Schedule) -> float:
    """Rate used for the step of `iteration` (0-based): last breakpoint reached, else base_lr."""
    lr = base_lr
    for at, rate in sorted(schedule):
        if iteration >= at:
            lr = rate
    return lr


def total_cost(outputs: List[torch.Tensor]) -> torch.Tensor:
    # heads return element-wise loss terms in training mode
    return torch.cat(outputs, dim=1).sum()


def solver_step(solver: torch.optim.Optimizer, params: List[torch.nn.Parameter]) -> None:
    for p in params:
        if p.grad is None:
            raise OptimizerStepError(f"parameter of shape {tuple(p.shape)} has no gradient")
        if not torch.isfinite(p.grad).all():
            raise OptimizerStepError(f"parameter of shape {tuple(p.shape)} has a non-finite gradient")
    try:
        solver.step()
    except RuntimeError as e:
        raise OptimizerStepError(str(e)) from e


@dataclass
class IterationStats:
    iteration: int
    key: str
    cost: float
    lr: float
    stepped: bool
    seconds: float


class Trainer:
    """
    One pass over a labeled folder, one solver step per image.
    The solver is recreated whenever the scheduled rate changes, that is when
    the iteration index reaches a breakpoint (15 -> 1e-6, 150 -> 1e-7 by default).
    """
    def __init__(self, model: YOLOv3, cfg: Config, schedule: Optional[Schedule] = None,
                 solver_factory: SolverFactory = rmsprop):
        self.model = model
        self.cfg = cfg
        self.schedule: List[Tuple[int, float]] = sorted(cfg.lr_schedule if schedule is None else schedule)
        self.solver_factory = solver_factory

    def image_path(self, key: str) -> Path:
        return Path(self.cfg.train_folder) / f"{key}.jpg"

    def run(self, labeled_data: Dict[str, np.ndarray]) -> List[IterationStats]:
        cfg = self.cfg
        self.model.activate_training_mode(cfg.lambda_coord, cfg.lambda_noobj, cfg.ignore_thresh)
        params = self.model.learning_nodes
        lr = cfg.lr
        solver = self.solver_factory(params, lr)

        history: List[IterationStats] = []
        with Executor(self.model, cost_fn=total_cost) as tm, \
                tqdm(labeled_data.items(), total=len(labeled_data), desc="[train]") as pbar:
            for it, (key, target) in enumerate(pbar):
                img = load_float32_image(self.image_path(key), cfg.img_height, cfg.img_width)
                self.model.set_target(target)
                self.model.let(img)

                st = time.perf_counter()
                cost = float(tm.run_all())
                elapsed = time.perf_counter() - st

                # Reduce learning rate with more iteration steps
                scheduled = learning_rate_at(it, cfg.lr, self.schedule)
                if scheduled != lr:
                    lr = scheduled
                    solver = self.solver_factory(params, lr)
                    tqdm.write(f"[INFO] iteration #{it}: learning rate -> {lr:g}")

                stepped = True
                try:
                    solver_step(solver, params)
                except OptimizerStepError as e:
                    stepped = False
                    tqdm.write(f"[ERROR] Can't do solver step on iteration #{it}: {e}")

                tm.reset()
                history.append(IterationStats(it, key, cost, lr, stepped, elapsed))
                pbar.set_postfix(cost=f"{cost:.4f}", lr=f"{lr:g}")

        print(f"[DONE] {len(history)} iterations, {sum(s.stepped for s in history)} solver steps")
        return history
