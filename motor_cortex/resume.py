"""Resuming a paused attempt: answer the pending tool call, clear the pause markers.

Both helpers are idempotent. A second call with the same input finds no
pending call (or an existing answer for it) and leaves the transcript alone.
The step cursor is never touched; the loop re-enters exactly where it stopped.
"""

from motor_cortex.models import Attempt, json_dumps_unicode

APPROVED_MESSAGE = "Approved. Proceed."
DENIED_MESSAGE = "Denied. Do not proceed with this action."


def has_tool_response(attempt: Attempt, tool_call_id: str) -> bool:
    return any(
        m.get("role") == "tool" and m.get("tool_call_id") == tool_call_id for m in attempt.messages
    )


def answer_content(answer: str, granted_domains: list[str] | None = None) -> str:
    text = f"User answered: {answer}"
    if granted_domains:
        text += f" Network access granted for: {', '.join(granted_domains)}."
    return text


def approval_content(approved: bool) -> str:
    return APPROVED_MESSAGE if approved else DENIED_MESSAGE


def apply_tool_response(attempt: Attempt, content: str, ok: bool = True) -> bool:
    """Append content as the result of the pending tool call. Returns True if appended."""
    call_id = attempt.pending_tool_call_id
    if call_id is None:
        return False
    appended = False
    if not has_tool_response(attempt, call_id):
        attempt.messages.append(
            {
                "role": "tool",
                "tool_call_id": call_id,
                "content": json_dumps_unicode({"ok": ok, "output": content}),
            }
        )
        appended = True
    attempt.clear_pending()
    attempt.status = "running"
    return appended


def apply_user_answer(
    attempt: Attempt, answer: str, granted_domains: list[str] | None = None
) -> bool:
    return apply_tool_response(attempt, answer_content(answer, granted_domains))


def apply_approval(attempt: Attempt, approved: bool) -> bool:
    return apply_tool_response(attempt, approval_content(approved), ok=approved)
