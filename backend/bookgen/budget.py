"""
BookGen V1.0 - Per-Session Call Budget
======================================
Counters only ever grow. ``check_limits`` is the abort gate the orchestrator
runs before and after each phase.
"""

from __future__ import annotations

from bookgen.errors import BudgetExceeded


def record_call(session, tokens: int = 0) -> None:
    session.call_count += 1
    if tokens and tokens > 0:
        session.token_count += int(tokens)


def check_limits(session) -> None:
    config = session.config
    if session.call_count > config.max_calls:
        raise BudgetExceeded(f"Call limit exceeded ({session.call_count}/{config.max_calls})")
    if session.token_count > config.max_tokens:
        raise BudgetExceeded(f"Token limit exceeded ({session.token_count}/{config.max_tokens})")


def remaining(session) -> dict:
    config = session.config
    return {
        "calls": max(0, config.max_calls - session.call_count),
        "tokens": max(0, config.max_tokens - session.token_count),
    }
