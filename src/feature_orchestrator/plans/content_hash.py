"""Content hashing for plan steps, used to skip re-implementing unchanged steps."""

import hashlib
import re

from .models import PlanStep

HASH_LENGTH = 16
CONTENT_HASH_KEY = "content_hash"


def _normalize(text: str) -> str:
	return re.sub(r"\s+", " ", text or "").strip()


def compute_step_content_hash(step: PlanStep) -> str:
	"""Hash of the step's title and description, insensitive to whitespace changes."""
	content = f"{_normalize(step.title)}|{_normalize(step.description)}"
	return hashlib.sha256(content.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def is_step_content_unchanged(step: PlanStep) -> bool:
	"""Whether the step still matches the hash recorded when it was completed."""
	stored = step.metadata.get(CONTENT_HASH_KEY)
	if not stored:
		return False
	return stored == compute_step_content_hash(step)


def stamp_content_hash(step: PlanStep) -> str:
	"""Record the current content hash in the step metadata."""
	digest = compute_step_content_hash(step)
	step.metadata[CONTENT_HASH_KEY] = digest
	return digest
