class YOLOError(RuntimeError):
    """Base class for every failure reported by the detector and trainer."""


class ModelConstructionError(YOLOError):
    """Darknet cfg or weights file is missing, malformed or does not fit the input."""


class ImageLoadError(YOLOError):
    pass


class InputBindingError(YOLOError):
    pass


class GraphExecutionError(YOLOError):
    pass


class PostprocessError(YOLOError):
    pass


class TargetError(YOLOError):
    pass


class OptimizerStepError(YOLOError):
    """A solver step could not be applied. The trainer reports it and goes on."""


class AnnotationError(YOLOError):
    pass


class MalformedAnnotationError(AnnotationError):
    pass


class EmptyDatasetError(AnnotationError):
    pass
