from enum import Enum
from typing import FrozenSet, Tuple


class PipelineStage(str, Enum):
    """
    The seven fixed stages of every audit, in execution order.
    """

    PREPROCESS = "preprocess"
    PARSER = "parser"
    STATIC_ANALYSIS = "static-analysis"
    SEMANTIC_ANALYSIS = "semantic-analysis"
    AI_ANALYSIS = "ai-analysis"
    EXTERNAL_TOOLS = "external-tools"
    AGGREGATION = "aggregation"


PIPELINE_STAGES: Tuple[PipelineStage, ...] = tuple(PipelineStage)

# Failures in these stages degrade to the stage input instead of failing the job
OPTIONAL_STAGES: FrozenSet[PipelineStage] = frozenset(
    {
        PipelineStage.SEMANTIC_ANALYSIS,
        PipelineStage.AI_ANALYSIS,
        PipelineStage.EXTERNAL_TOOLS,
    }
)
