from typing import Callable, List, Optional

import torch

from .errors import GraphExecutionError
from .model import YOLOv3

CostFn = Callable[[List[torch.Tensor]], torch.Tensor]


class Executor:
    """
    Runs the model on whatever is bound to its input.

    Without a cost function a run is a plain forward pass under no_grad.
    With one, the cost of the head outputs is back-propagated into the
    model's learning nodes. Gradients accumulate across runs, so reset()
    must be called between runs; leaving a `with` block always resets.
    Model outputs survive a reset and stay readable for post-processing.
    """
    def __init__(self, model: YOLOv3, cost_fn: Optional[CostFn] = None):
        self.model = model
        self.cost_fn = cost_fn
        self.cost: Optional[torch.Tensor] = None
        self.closed = False

    def run_all(self) -> Optional[torch.Tensor]:
        if self.closed:
            raise GraphExecutionError("executor is closed")
        try:
            if self.cost_fn is None:
                with torch.no_grad():
                    self.model.forward()
                return None
            cost = self.cost_fn(self.model.forward())
            cost.backward()
        except GraphExecutionError:
            raise
        except RuntimeError as e:
            raise GraphExecutionError(f"graph evaluation failed: {e}") from e
        self.cost = cost.detach()
        return self.cost

    def reset(self) -> None:
        self.model.net.zero_grad(set_to_none=True)
        self.cost = None

    def close(self) -> None:
        self.reset()
        self.closed = True

    def __enter__(self) -> "Executor":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False
