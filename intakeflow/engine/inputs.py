"""Answer parsing and validation per question ``inputType``.

Every parser takes the raw inbound answer (usually SMS text, sometimes an
already-structured value from a web form) and returns the normalized value to
store in ``collected``, or raises ``InputValidationError`` with a short,
user-facing message.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from typing import Any

from intakeflow.errors import InputValidationError
from intakeflow.flows.models import Option, QuestionNode

# RFC 5322-ish pattern, enough for real-world addresses
# without requiring an external dependency.
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)
_ZIP_RE = re.compile(r"^\d{5}(?:-\d{4})?$")
_SPLIT_RE = re.compile(r"\s*(?:,|;|\band\b)\s*")
_NUMBERS_RE = re.compile(r"^\d+(?:\s+\d+)+$")

YES_WORDS = frozenset({"yes", "y", "yeah", "yep", "sure", "ok", "okay", "confirm", "1"})
NO_WORDS = frozenset({"no", "n", "nah", "nope", "cancel", "stop", "2"})
SKIP_WORDS = frozenset({"skip", "none", "n/a", "nothing", "pass"})


def _text(answer: Any) -> str:
    if answer is None:
        return ""
    if isinstance(answer, str):
        return answer.strip()
    return str(answer).strip()


# ── Choice helpers ───────────────────────────────────────────────────


def parse_choice(answer: Any, options: Sequence[Option]) -> str:
    """Match a key, a label (case-insensitive) or a 1-based number."""
    text = _text(answer)
    lowered = text.lower()
    for option in options:
        if lowered in (option.key.lower(), option.label.lower()):
            return option.key
    if text.isdigit() and 1 <= int(text) <= len(options):
        return options[int(text) - 1].key
    raise InputValidationError(f"Please reply with a number from 1 to {len(options)}.")


def parse_multi_choice(answer: Any, options: Sequence[Option]) -> list[str]:
    """Accept ``"1, 3"``, ``"mowing and cleanup"`` or a list of keys."""
    if isinstance(answer, (list, tuple)):
        tokens = [_text(a) for a in answer]
    else:
        tokens = []
        for token in _SPLIT_RE.split(_text(answer)):
            if _NUMBERS_RE.match(token):
                tokens.extend(token.split())
            elif token:
                tokens.append(token)
    if not tokens:
        raise InputValidationError("Please choose at least one option.")

    keys: list[str] = []
    for token in tokens:
        try:
            key = parse_choice(token, options)
        except InputValidationError:
            raise InputValidationError(
                f'"{token}" is not one of the options. Reply with the numbers, e.g. 1,3.'
            ) from None
        if key not in keys:
            keys.append(key)
    return keys


def parse_yes_no(answer: Any) -> str:
    if isinstance(answer, bool):
        return "yes" if answer else "no"
    lowered = _text(answer).lower()
    if lowered in YES_WORDS:
        return "yes"
    if lowered in NO_WORDS:
        return "no"
    raise InputValidationError("Please reply YES or NO.")


# ── Free-form parsers ────────────────────────────────────────────────


def _free_text(answer: Any, node: QuestionNode) -> str:
    return _text(answer)


def _number(answer: Any, node: QuestionNode) -> int | float:
    if isinstance(answer, (int, float)) and not isinstance(answer, bool):
        value = answer
    else:
        try:
            value = float(_text(answer).replace(",", ""))
        except ValueError:
            raise InputValidationError("Please reply with a number.") from None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    rule = node.validation
    if rule and rule.min is not None and value < rule.min:
        raise InputValidationError(f"Value must be at least {rule.min:g}.")
    if rule and rule.max is not None and value > rule.max:
        raise InputValidationError(f"Value must be at most {rule.max:g}.")
    return value


def _address(answer: Any, node: QuestionNode) -> str:
    text = _text(answer)
    if len(text) < 5:
        raise InputValidationError("That address looks too short.")
    if not re.search(r"\d", text) or not re.search(r"[a-zA-Z]", text):
        raise InputValidationError("Please provide a street address with number and name.")
    return re.sub(r"\s+", " ", text)


def _email(answer: Any, node: QuestionNode) -> str:
    text = _text(answer)
    if not _EMAIL_RE.match(text):
        raise InputValidationError(f'"{text}" does not look like a valid email address.')
    return text


def _phone(answer: Any, node: QuestionNode) -> str:
    digits = re.sub(r"\D", "", _text(answer))
    if not 10 <= len(digits) <= 15:
        raise InputValidationError("Please reply with a phone number including area code.")
    return digits


def _zip_list(answer: Any, node: QuestionNode) -> list[str]:
    if isinstance(answer, (list, tuple)):
        zips = [_text(z) for z in answer]
    else:
        zips = [z.strip() for z in re.split(r"[,\s]+", _text(answer)) if z.strip()]
    bad = [z for z in zips if not _ZIP_RE.match(z)]
    if not zips or bad:
        raise InputValidationError("Please reply with 5-digit ZIP codes separated by commas.")
    return zips


def _single_select(answer: Any, node: QuestionNode) -> str:
    return parse_choice(answer, node.options)


def _multi_select(answer: Any, node: QuestionNode) -> list[str]:
    keys = parse_multi_choice(answer, node.options)
    rule = node.validation
    if rule and rule.min_selections and len(keys) < rule.min_selections:
        raise InputValidationError(f"Please select at least {rule.min_selections} option(s).")
    if rule and rule.max_selections and len(keys) > rule.max_selections:
        raise InputValidationError(f"Please select at most {rule.max_selections} option(s).")
    return keys


def _yes_no(answer: Any, node: QuestionNode) -> str:
    return parse_yes_no(answer)


PARSERS: dict[str, Callable[[Any, QuestionNode], Any]] = {
    "free_text": _free_text,
    "single_select": _single_select,
    "multi_select": _multi_select,
    "yes_no": _yes_no,
    "number": _number,
    "address": _address,
    "email": _email,
    "phone": _phone,
    "zip_list": _zip_list,
}


def parse_slot_choice(answer: Any, offered: Sequence[dict[str, Any]]) -> dict[str, Any]:
    """Pick one of the *offered* slot dicts by 1-based number or slot id."""
    text = _text(answer)
    for slot in offered:
        if text == slot["id"] or text.lower() == slot["display"].lower():
            return slot
    if text.isdigit() and 1 <= int(text) <= len(offered):
        return offered[int(text) - 1]
    if not offered:
        raise InputValidationError("There are no open times right now.")
    raise InputValidationError(f"Please reply with a number from 1 to {len(offered)}.")


def parse_answer(node: QuestionNode, answer: Any) -> Any:
    """Validate *answer* for *node* and return the value to store.

    ``slot_choice`` questions are resolved by the interpreter because their
    options live on the session, not on the node.
    """
    if not _text(answer) and not isinstance(answer, (list, tuple)):
        if node.required:
            raise InputValidationError("This question needs an answer.")
        return None
    if not node.required and _text(answer).lower() in SKIP_WORDS:
        return None

    value = PARSERS[node.input_type](answer, node)

    rule = node.validation
    if rule and rule.pattern and isinstance(answer, str):
        if not re.search(rule.pattern, answer.strip()):
            raise InputValidationError(rule.error or "That answer is not in the expected format.")
    return value
