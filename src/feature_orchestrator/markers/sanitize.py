"""Escaping of control markers in user-supplied text."""

import re
from collections.abc import Mapping
from typing import Any, Optional

from .tokenizer import MARKER_TAGS

_TAG_NAMES = "|".join(sorted(MARKER_TAGS, key=len, reverse=True))

# Opening or closing tag of a known marker, not already escaped
_ESCAPE_RE = re.compile(rf"(?<!\\)\[/?(?:{_TAG_NAMES})(?=[\s\]])", re.IGNORECASE)

# User-editable session fields that reach the assistant's prompt
SANITIZED_TEXT_FIELDS = ("title", "feature_description", "technical_notes")
SANITIZED_LIST_FIELDS = ("affected_files",)


def escape_markers(text: str) -> str:
	"""Prefix the bracket of every known control marker with a backslash.

	The tokenizer treats a backslash-escaped bracket as literal text, so
	escaped input can never be read back as a control signal.
	"""
	if not text:
		return text
	return _ESCAPE_RE.sub(lambda m: "\\" + m.group(0), text)


def contains_markers(text: Optional[str]) -> bool:
	"""Whether text holds an unescaped control marker."""
	return bool(text) and _ESCAPE_RE.search(text) is not None


def sanitize_feedback(feedback: Optional[str]) -> Optional[str]:
	return escape_markers(feedback.strip()) if feedback else feedback


def sanitize_session_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
	"""Escape markers in the user-provided session fields present in fields.

	Acceptance criteria may be plain strings or objects with a "text" key.
	Other keys are passed through unchanged.
	"""
	clean = dict(fields)
	for key in SANITIZED_TEXT_FIELDS:
		if isinstance(clean.get(key), str):
			clean[key] = escape_markers(clean[key])
	for key in SANITIZED_LIST_FIELDS:
		if isinstance(clean.get(key), list):
			clean[key] = [escape_markers(v) if isinstance(v, str) else v for v in clean[key]]

	criteria = clean.get("acceptance_criteria")
	if isinstance(criteria, list):
		clean["acceptance_criteria"] = [_sanitize_criterion(c) for c in criteria]
	return clean


def _sanitize_criterion(criterion: Any) -> Any:
	if isinstance(criterion, str):
		return escape_markers(criterion)
	if hasattr(criterion, "model_copy"):
		return criterion.model_copy(update={"text": escape_markers(criterion.text)})
	if isinstance(criterion, Mapping) and isinstance(criterion.get("text"), str):
		return {**criterion, "text": escape_markers(criterion["text"])}
	return criterion
