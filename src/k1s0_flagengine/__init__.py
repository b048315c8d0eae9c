"""k1s0 flagengine library."""

from .abtest import ABTestManager
from .analytics import AnalyticsRecorder, AnalyticsReporter, AnalyticsSink
from .cache import EvaluationCache
from .client import FeatureFlagClientProtocol
from .config import EngineConfig, load_config
from .defaults import default_flags
from .engine import FlagEngine
from .evaluator import Evaluator
from .exceptions import (
    EvaluationError,
    FlagEngineError,
    FlagEngineErrorCodes,
    FlagValidationError,
)
from .logger import new_logger
from .models import (
    ABTestConfig,
    ABTestResults,
    ABTestStatus,
    ABTestVariation,
    ConditionOperator,
    EvaluationReason,
    FallthroughConfig,
    FeatureFlag,
    FlagAnalytics,
    FlagEvaluation,
    FlagFilter,
    FlagMetadata,
    FlagStatus,
    FlagTargeting,
    FlagType,
    FlagVariation,
    ReasonKind,
    RolloutConfig,
    RolloutType,
    SystemStatus,
    TargetingCondition,
    TargetingRule,
    TimeRange,
    UserContext,
    WeightedVariation,
)
from .refresh import FlagRefresher
from .registry import FlagRegistry
from .rollout import RolloutBucketer
from .serialization import flag_from_dict, flag_to_dict
from .source import (
    DefinitionSource,
    HttpDefinitionSource,
    StaticDefinitionSource,
    YamlDefinitionSource,
)
from .targeting import ConditionEvaluator, RuleEvaluator

__all__ = [
    "ABTestConfig",
    "ABTestManager",
    "ABTestResults",
    "ABTestStatus",
    "ABTestVariation",
    "AnalyticsRecorder",
    "AnalyticsReporter",
    "AnalyticsSink",
    "ConditionEvaluator",
    "ConditionOperator",
    "DefinitionSource",
    "EngineConfig",
    "EvaluationCache",
    "EvaluationError",
    "EvaluationReason",
    "Evaluator",
    "FallthroughConfig",
    "FeatureFlag",
    "FeatureFlagClientProtocol",
    "FlagAnalytics",
    "FlagEngine",
    "FlagEngineError",
    "FlagEngineErrorCodes",
    "FlagEvaluation",
    "FlagFilter",
    "FlagMetadata",
    "FlagRefresher",
    "FlagRegistry",
    "FlagStatus",
    "FlagTargeting",
    "FlagType",
    "FlagValidationError",
    "FlagVariation",
    "HttpDefinitionSource",
    "ReasonKind",
    "RolloutBucketer",
    "RolloutConfig",
    "RolloutType",
    "RuleEvaluator",
    "StaticDefinitionSource",
    "SystemStatus",
    "TargetingCondition",
    "TargetingRule",
    "TimeRange",
    "UserContext",
    "WeightedVariation",
    "YamlDefinitionSource",
    "default_flags",
    "flag_from_dict",
    "flag_to_dict",
    "load_config",
    "new_logger",
]
