from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any

from novelctx.core.config import settings

_LOGGER = logging.getLogger(__name__)
_CLIENT_LOCK = Lock()
_LANGFUSE_CLIENT: Any | None = None
_LANGFUSE_INIT_ERROR: str | None = None


@dataclass
class AssemblyTracePayload:
    project_id: int
    chapter_id: int
    cursor_position: int
    context_hash: str
    strategy: dict[str, Any]
    section_tokens: dict[str, int]
    total_tokens: int
    pre_compression_tokens: int
    compression_ratio: float
    budget_exceeded: bool
    included_count: int
    dropped_count: int
    elapsed_ms: float


def _get_langfuse_client() -> Any | None:
    global _LANGFUSE_CLIENT
    global _LANGFUSE_INIT_ERROR
    if not settings.core.langfuse_enabled:
        return None
    if _LANGFUSE_CLIENT is not None:
        return _LANGFUSE_CLIENT
    if _LANGFUSE_INIT_ERROR is not None:
        return None

    with _CLIENT_LOCK:
        if _LANGFUSE_CLIENT is not None:
            return _LANGFUSE_CLIENT
        if _LANGFUSE_INIT_ERROR is not None:
            return None
        try:
            from langfuse import Langfuse  # type: ignore

            _LANGFUSE_CLIENT = Langfuse(
                public_key=settings.core.langfuse_public_key,
                secret_key=settings.core.langfuse_secret_key,
                host=settings.core.langfuse_host,
            )
            return _LANGFUSE_CLIENT
        except Exception as exc:  # pragma: no cover - optional dependency/network
            _LANGFUSE_INIT_ERROR = str(exc)
            _LOGGER.warning("langfuse_init_failed error=%s", exc)
            return None


def emit_assembly_trace(payload: AssemblyTracePayload) -> None:
    client = _get_langfuse_client()
    if client is None:
        return

    metadata = {
        "project_id": payload.project_id,
        "chapter_id": payload.chapter_id,
        "strategy": payload.strategy,
        "section_tokens": payload.section_tokens,
        "compression_ratio": payload.compression_ratio,
        "budget_exceeded": payload.budget_exceeded,
        "included_count": payload.included_count,
        "dropped_count": payload.dropped_count,
        "elapsed_ms": payload.elapsed_ms,
    }
    try:
        client.trace(
            name="context_assemble",
            session_id=str(payload.project_id),
            input={"chapter_id": payload.chapter_id, "cursor_position": payload.cursor_position},
            output={
                "context_hash": payload.context_hash,
                "total_tokens": payload.total_tokens,
                "pre_compression_tokens": payload.pre_compression_tokens,
            },
            metadata=metadata,
        )
        if hasattr(client, "flush"):
            client.flush()
    except Exception as exc:
        _LOGGER.debug("langfuse_trace_failed error=%s", exc)
        return
