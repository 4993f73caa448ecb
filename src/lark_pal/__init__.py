"""lark-pal: debounced LLM replies for a Lark group chat."""

__all__ = [
    "composer",
    "config",
    "controller",
    "cursor",
    "ingest",
    "interfaces",
    "lark_client",
    "llm",
    "models",
    "pipeline",
    "scheduler",
    "server",
    "store",
    "time_utils",
    "tokens",
]
