"""
evoprompt package initialization.

Evolutionary prompt optimization core: a priority evaluation scheduler, a
population store, and diversity analysis and promotion for evolving prompt
populations.
"""

from .callbacks import EvolutionCallback, notify_callbacks  # noqa: F401
from .config import DEFAULT_CONFIG, Config, adaptive_config  # noqa: F401
from .dispatcher import EvaluationDispatcher, TaskType  # noqa: F401
from .diversity import (  # noqa: F401
    DiversityConfig,
    DiversityEngine,
    DiversityLevel,
    DiversityMetrics,
    DiversityMonitor,
    DiversityPromoter,
    NoveltyArchive,
    PromoterConfig,
    PromotionStrategy,
    SimilarityMatrix,
    SimilarityStrategy,
)
from .errors import (  # noqa: F401
    CollaboratorUnavailableError,
    EmptyCollectionError,
    EvaluationError,
    EvoPromptError,
    InvalidTransitionError,
    NotFoundError,
    QueueFullError,
    UnknownStrategyError,
    ValidationError,
)
from .interfaces import Candidate, EvalOutcome  # noqa: F401
from .metrics import Metrics  # noqa: F401
from .orchestrator import Orchestrator, RunResult  # noqa: F401
from .population import PopulationStore  # noqa: F401
from .queue import PriorityTaskQueue  # noqa: F401
from .scheduler import EvaluationScheduler, SchedulerConfig  # noqa: F401
from .task import EvaluationTask, Priority, TaskStatus  # noqa: F401
