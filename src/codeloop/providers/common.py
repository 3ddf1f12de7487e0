from __future__ import annotations

from loguru import logger
from tenacity import RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from codeloop.errors import BackendUnavailableError

# Stands in for the first user turn when compaction left an assistant
# summary at the head of the history.
CONTINUATION_STUB = "(Earlier conversation was compacted. The summary follows.)"


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, BackendUnavailableError) and exc.retryable


def _on_retry(retry_state: RetryCallState) -> None:
    attempt = retry_state.attempt_number
    limit = getattr(retry_state.retry_object.stop, "max_attempt_number", "?")
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = f"{type(exc).__name__}: {exc}" if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.0f}s (attempt {attempt}/{limit})...")


def default_retry_kwargs(
    *,
    attempts: int = 4,
    initial_seconds: float = 2.0,
    max_seconds: float = 60.0,
) -> dict:
    return {
        "retry": retry_if_exception(is_retryable),
        "wait": wait_exponential(multiplier=initial_seconds, min=initial_seconds, max=max_seconds),
        "stop": stop_after_attempt(max(1, attempts)),
        "before_sleep": _on_retry,
        "reraise": True,
    }


def ensure_user_first(messages: list[dict]) -> list[dict]:
    if messages and messages[0].get("role") == "assistant":
        return [{"role": "user", "content": CONTINUATION_STUB}, *messages]
    return messages
