# Model-agnostic generation engine
#
# This package serializes all inference for one model through a single
# dispatcher thread and streams decoded text back to asyncio callers.
#
# Key components:
#   - adapters/       Forward-pass backends (model + tokenizer + cache)
#   - registry.py     Maps model families to backends
#   - dispatcher.py   Worker thread, task queue, completion signals
#   - model.py        Decode loop over one backend
#   - detokenizer.py  Incremental decoding and stop-phrase matching
#   - session.py      Attention cache + token history, (de)serialization
#   - llm.py          Async front end (`LLM`, `TextStream`)

from .constraints import ChoiceConstraint, ConstraintOracle, LiteralConstraint
from .errors import (
    CorruptSession,
    EncodingError,
    ForwardPassError,
    KilnError,
    ModelStopped,
    NoValidTokens,
    SessionCopyError,
    SinkError,
    SnapshotCompatibilityError,
)
from .interface import LanguageModel
from .llm import LLM, TextStream
from .model import EngineConfig, LocalModel
from .sampler import GenerationParameters, GreedySampler, Logits, Sampler
from .session import Session
from .types import ConstrainedOutput, GenerationResult, ModelInfo, Timing, Usage

__all__ = [
    "LLM",
    "TextStream",
    "LanguageModel",
    "LocalModel",
    "EngineConfig",
    "Session",
    "Logits",
    "Sampler",
    "GreedySampler",
    "GenerationParameters",
    "ConstraintOracle",
    "LiteralConstraint",
    "ChoiceConstraint",
    "GenerationResult",
    "ConstrainedOutput",
    "ModelInfo",
    "Timing",
    "Usage",
    "KilnError",
    "EncodingError",
    "ForwardPassError",
    "NoValidTokens",
    "SinkError",
    "CorruptSession",
    "SnapshotCompatibilityError",
    "SessionCopyError",
    "ModelStopped",
]
