"""Failure classification: trace + triggering error -> FailureSummary."""

import logging
import re
from typing import Any

from motor_cortex.llm.protocol import CompletionRequest, ModelBackend
from motor_cortex.models import FailureCategory, FailureSummary, RunTrace, ToolOutcome

logger = logging.getLogger(__name__)

NON_RETRYABLE_CATEGORIES = frozenset({"budget_exhausted", "invalid_task", "infra_failure"})
RECENT_STEPS = 2
OUTCOME_OUTPUT_CHARS = 200
FAILURE_HINT_MAX_TOKENS = 256
MIN_HINT_CHARS = 10

# Crash messages that point at the execution environment rather than the model.
INFRA_ERROR_RE = re.compile(r"container|docker|image|network policy|storage", re.IGNORECASE)


def classify(
    trace: RunTrace,
    consecutive_failures: int = 0,
    last_error_code: str | None = None,
    category: FailureCategory | None = None,
) -> FailureSummary:
    """Deterministic classification; no model involved.

    A forced category wins. Otherwise a triggering tool error means
    tool_failure and no error means unknown.
    """
    resolved: FailureCategory = category or ("tool_failure" if last_error_code else "unknown")
    retryable = resolved not in NON_RETRYABLE_CATEGORIES
    if not retryable:
        action = "stop"
    elif last_error_code == "auth_failed":
        action = "ask_user"
    else:
        action = "retry_with_guidance"

    recent = [
        ToolOutcome(
            tool=call.tool,
            ok=call.result.ok,
            error_code=call.result.error_code,
            output=call.result.output[:OUTCOME_OUTPUT_CHARS],
        )
        for step in trace.steps[-RECENT_STEPS:]
        for call in step.tool_calls
    ]
    if consecutive_failures:
        logger.debug(
            "failure: classified %s after %d consecutive failures", resolved, consecutive_failures
        )
    return FailureSummary(
        category=resolved,
        retryable=retryable,
        suggested_action=action,
        last_error_code=last_error_code,
        last_tool_results=recent,
    )


def classify_crash(trace: RunTrace, message: str) -> FailureSummary:
    """Summary for an attempt that died with an exception (e.g. backend retries exhausted)."""
    category: FailureCategory = "infra_failure" if INFRA_ERROR_RE.search(message) else "model_failure"
    summary = classify(trace, category=category)
    summary.hint = message[:500] or None
    return summary


async def get_failure_hint(
    backend: ModelBackend, messages: list[dict[str, Any]], reason: str
) -> str | None:
    """Ask the model, outside the main transcript, what went wrong. Best-effort."""
    side_messages = [
        *messages,
        {
            "role": "user",
            "content": (
                f"The task failed: {reason}\n\n"
                "In 1-2 sentences, what went wrong and what should be tried differently? "
                "Be specific about the root cause."
            ),
        },
    ]
    try:
        response = await backend.complete(
            CompletionRequest(messages=side_messages, max_tokens=FAILURE_HINT_MAX_TOKENS)
        )
    except Exception as e:
        logger.debug("failure: hint request failed (non-critical): %s", e)
        return None
    hint = (response.content or "").strip()
    return hint if len(hint) > MIN_HINT_CHARS else None
