"""Kiln inference server entrypoint (FastAPI + uvicorn).

Example:
    python -m apps.server.main --model Qwen/Qwen2.5-0.5B-Instruct --host 0.0.0.0 --port 8787
"""

from __future__ import annotations

import argparse
import logging
import os
from typing import Any

from apps.server.app import create_app, default_snapshot_dir
from kiln.engine.llm import LLM
from kiln.engine.model import EngineConfig
from kiln.engine.registry import list_backend_families
from kiln.engine.sampler import DEFAULT_TOP_K_LOGITS

logger = logging.getLogger("kiln.server")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Kiln inference server")
    p.add_argument("--model", required=True, help="Model path or HF repo id")
    p.add_argument("--model-id", default=None, help="Model id reported by the API (default: basename of --model)")
    p.add_argument(
        "--family",
        default="transformers",
        choices=list_backend_families(),
        help="Backend family (default: transformers)",
    )
    p.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    p.add_argument("--port", type=int, default=8787, help="Bind port (default: 8787)")

    p.add_argument("--device", default=None, help="Torch device (default: best available)")
    p.add_argument("--dtype", default=None, help="Torch dtype: float16|bfloat16|float32 (default: per device)")
    p.add_argument("--trust-remote-code", action="store_true", help="Allow custom modeling code from the hub")
    p.add_argument(
        "--top-k-logits",
        type=int,
        default=DEFAULT_TOP_K_LOGITS,
        help=f"Logits kept per decode step before sampling (default: {DEFAULT_TOP_K_LOGITS})",
    )
    p.add_argument(
        "--max-prompt-tokens",
        type=int,
        default=262_144,
        help="Reject prompts longer than this many tokens",
    )
    p.add_argument(
        "--snapshot-dir",
        default=None,
        help="Snapshot directory (default: $KILN_SNAPSHOT_DIR or ~/.cache/kiln/snapshots)",
    )
    p.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug"],
        help="Log level for kiln and uvicorn (default: info)",
    )
    return p.parse_args(argv)


def _dtype_from_string(dtype: str) -> Any:
    import torch

    dt = dtype.strip().lower()
    if dt in {"fp16", "float16", "half"}:
        return torch.float16
    if dt in {"bf16", "bfloat16"}:
        return torch.bfloat16
    if dt in {"fp32", "float32"}:
        return torch.float32
    raise ValueError(f"Unknown dtype: {dtype!r}")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    load_kwargs: dict[str, Any] = {"trust_remote_code": bool(args.trust_remote_code)}
    if args.device:
        load_kwargs["device"] = args.device
    if args.dtype:
        load_kwargs["dtype"] = _dtype_from_string(args.dtype)

    logger.info("Loading model %r (family=%s, device=%s, dtype=%s)", args.model, args.family, args.device, args.dtype)
    llm = LLM.from_pretrained(
        args.model,
        family=args.family,
        config=EngineConfig(
            top_k_logits=args.top_k_logits,
            max_prompt_tokens=args.max_prompt_tokens,
        ),
        **load_kwargs,
    )
    logger.info("Model loaded: %s", llm.model_info)

    model_id = args.model_id or os.path.basename(args.model.rstrip("/")) or "kiln"
    snapshot_dir = args.snapshot_dir or default_snapshot_dir()
    app = create_app(llm=llm, model_id=model_id, snapshot_dir=snapshot_dir)

    import uvicorn

    try:
        uvicorn.run(
            app,
            host=args.host,
            port=args.port,
            log_level=args.log_level,
        )
    finally:
        llm.shutdown()


if __name__ == "__main__":
    main()
