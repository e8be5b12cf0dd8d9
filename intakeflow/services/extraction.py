"""LLM-backed field extraction for free-form SMS answers.

Question nodes marked ``extract: true`` send the raw inbound text through a
small, deterministic Haiku call that normalizes it to the node's expected
value (an option key, a list of keys, a cleaned address …) and flags
sentiment and explicit requests for a human.  The interpreter still validates
whatever comes back, so a bad extraction costs one attempt, never a crash.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel

from intakeflow.config import Settings
from intakeflow.flows.models import QuestionNode

logger = logging.getLogger(__name__)

_JSON_BLOCK_RE = re.compile(r"\{.*\}", re.DOTALL)


# ── Prompt ───────────────────────────────────────────────────────────

EXTRACTION_SYSTEM_PROMPT = (
    "You normalize customer text-message replies for a service-business "
    "intake form. Reply with a single JSON object and nothing else:\n"
    '{"value": <normalized answer or null>, '
    '"sentiment": "positive" | "neutral" | "negative", '
    '"human_requested": true | false}\n\n'
    "- For select questions, value must be one option key (or a list of "
    "keys for multi-select). Never invent keys.\n"
    "- For yes/no questions, value is \"yes\" or \"no\".\n"
    "- For addresses, value is the address on one line.\n"
    "- If the reply does not answer the question, value is null.\n"
    "- human_requested is true only if the customer asks to talk to a person."
)

EXTRACTION_USER_PROMPT = (
    "Question: {question}\n"
    "Input type: {input_type}\n"
    "{options}"
    "Customer reply: {answer}"
)


class ExtractionResult(BaseModel):
    value: Any = None
    sentiment: str = "neutral"
    human_requested: bool = False


class ExtractionError(ValueError):
    """The model reply could not be parsed into an ``ExtractionResult``."""


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    # Anthropic replies may arrive as a list of content blocks
    parts = []
    for block in content or []:
        if isinstance(block, dict):
            parts.append(block.get("text", ""))
        else:
            parts.append(str(block))
    return "".join(parts)


def parse_extraction(content: Any) -> ExtractionResult:
    text = _content_text(content).strip()
    match = _JSON_BLOCK_RE.search(text)
    if not match:
        raise ExtractionError(f"No JSON object in extraction reply: {text[:200]!r}")
    try:
        return ExtractionResult.model_validate(json.loads(match.group(0)))
    except ValueError as exc:
        raise ExtractionError(f"Malformed extraction reply: {exc}") from exc


class FieldExtractor:
    """Wraps a chat model; one ``extract`` call per inbound answer."""

    def __init__(self, settings: Settings, *, llm: BaseChatModel | None = None):
        self._llm = llm or ChatAnthropic(
            model=settings.extraction_model,
            api_key=settings.anthropic_api_key,
            temperature=0.0,  # Deterministic normalization
            max_tokens=256,
            timeout=settings.extraction_timeout_seconds,
            max_retries=1,
        )
        self._model_name = settings.extraction_model

    def extract(self, node: QuestionNode, answer: str) -> ExtractionResult:
        options = ""
        if node.options:
            listed = ", ".join(f"{o.key} ({o.label})" for o in node.options)
            options = f"Options: {listed}\n"
        prompt = EXTRACTION_USER_PROMPT.format(
            question=node.prompt,
            input_type=node.input_type,
            options=options,
            answer=answer,
        )
        response = self._llm.invoke(
            [SystemMessage(content=EXTRACTION_SYSTEM_PROMPT), HumanMessage(content=prompt)]
        )
        result = parse_extraction(response.content)
        logger.debug(
            "Extraction (%s) for %s: value=%r sentiment=%s human=%s",
            self._model_name, node.id, result.value, result.sentiment, result.human_requested,
        )
        return result
