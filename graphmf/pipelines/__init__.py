"""Training pipelines: iteration state machine, graph driver and orchestration."""

from .controller import GraphContext, TrainingController, TrainingHistory, TrainingState  # noqa: F401
from .driver import GraphDriver  # noqa: F401
from .training import TrainingResult, build_feature_cache, build_recommenders, run_training  # noqa: F401
