"""
Kiln - a single-owner generation engine for locally loaded language models.

One dispatcher thread owns the model and its attention caches; callers stream
confirmed text chunks from any asyncio task.

Quick Start:
    from kiln import LLM, GenerationParameters

    llm = LLM.from_pretrained("Qwen/Qwen2.5-0.5B-Instruct", device="cpu")

    async def main():
        session = llm.new_session()
        stream = llm.stream_text(
            "The capital of France is",
            session=session,
            sampler=GenerationParameters(temperature=0.0),
            max_tokens=16,
        )
        async for chunk in stream:
            print(chunk, end="")

Submodules:
    - kiln.engine: Dispatcher, decode loop, sessions, samplers, detokenizer
    - kiln.engine.adapters: Forward-pass backends
    - kiln.runtime: Device helpers
"""

from kiln._version import __version__

from kiln.engine import (
    ChoiceConstraint,
    ConstrainedOutput,
    ConstraintOracle,
    CorruptSession,
    EncodingError,
    EngineConfig,
    ForwardPassError,
    GenerationParameters,
    GenerationResult,
    GreedySampler,
    KilnError,
    LanguageModel,
    LiteralConstraint,
    LLM,
    ModelStopped,
    NoValidTokens,
    Sampler,
    Session,
    SinkError,
    TextStream,
)

__all__ = [
    # Version
    "__version__",
    # Engine
    "LLM",
    "LanguageModel",
    "EngineConfig",
    "TextStream",
    "Session",
    # Sampling
    "Sampler",
    "GreedySampler",
    "GenerationParameters",
    # Constraints
    "ConstraintOracle",
    "LiteralConstraint",
    "ChoiceConstraint",
    # Results
    "GenerationResult",
    "ConstrainedOutput",
    # Errors
    "KilnError",
    "EncodingError",
    "ForwardPassError",
    "NoValidTokens",
    "SinkError",
    "CorruptSession",
    "ModelStopped",
]
