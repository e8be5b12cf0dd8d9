"""Keyword signals that push a conversation toward a human.

These run on the raw inbound text before the interpreter sees it and record
their findings in ``session.derived`` so the interpreter's escalation
short-circuit can act on them.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from intakeflow.engine.session import SessionState
from intakeflow.flows.models import HandoffPolicy

logger = logging.getLogger(__name__)


def _mentions(text: str, keywords: Iterable[str]) -> bool:
    lowered = text.lower()
    return any(
        re.search(rf"\b{re.escape(keyword.lower())}\b", lowered)
        for keyword in keywords
        if keyword
    )


def detect_human_request(text: str, policy: HandoffPolicy) -> bool:
    return _mentions(text, policy.human_request_keywords)


def detect_negative_sentiment(text: str, policy: HandoffPolicy) -> bool:
    return _mentions(text, policy.negative_keywords)


def apply_signals(session: SessionState, text: str | None, policy: HandoffPolicy) -> list[str]:
    """Set escalation facts found in *text*.  Returns the names that were set."""
    if not text:
        return []
    raised: list[str] = []
    if detect_human_request(text, policy):
        session.derived["human_requested"] = True
        raised.append("human_requested")
    if detect_negative_sentiment(text, policy):
        session.derived["negative_sentiment_detected"] = True
        raised.append("negative_sentiment_detected")
    if raised:
        logger.info("Session %s raised signals: %s", session.session_id, ", ".join(raised))
    return raised
