"""
Marker Tokenizer - Scans assistant output for bracket-delimited control tags.

Recognizes the marker text protocol:
	[TAG attr="value" other='value'] body [/TAG]

Rules:
- Tag names are upper-snake-case ([A-Z][A-Z0-9_]*)
- Attribute values are quoted; a backslash escapes the next character
- A closing tag pairs only with an opener of the same name
- A bracket preceded by a backslash is literal text, never a tag

Anything that does not fit the grammar is plain text. The tokenizer never
raises; malformed tags are simply skipped.
"""

import re
from dataclasses import dataclass, field
from typing import Iterator, Optional

TAG_NAME_RE = re.compile(r"[A-Z][A-Z0-9_]*")
ATTR_NAME_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_\-]*")

# Every tag the output and composable plan parsers act on
MARKER_TAGS = (
	"DECISION_NEEDED",
	"PLAN_STEP",
	"PLAN_FILE",
	"PLAN_MODE_ENTERED",
	"PLAN_MODE_EXITED",
	"PLAN_APPROVED",
	"PLAN_META",
	"PLAN_DEPENDENCIES",
	"PLAN_TEST_COVERAGE",
	"PLAN_ACCEPTANCE_MAPPING",
	"STEP_COMPLETE",
	"STEP_MODIFICATIONS",
	"REMOVE_STEPS",
	"IMPLEMENTATION_COMPLETE",
	"IMPLEMENTATION_STATUS",
	"PR_CREATED",
	"PR_APPROVED",
	"CI_STATUS",
	"CI_FAILED",
	"RETURN_TO_STAGE_2",
)


@dataclass
class MarkerTag:
	"""A single opening or closing tag found in the text."""
	name: str
	start: int
	end: int
	closing: bool = False
	attrs: dict[str, str] = field(default_factory=dict)


@dataclass
class MarkerBlock:
	"""An opener paired with its body.

	body is None when the opener has no matching closing tag.
	"""
	name: str
	attrs: dict[str, str]
	start: int
	end: int
	body: Optional[str] = None

	@property
	def closed(self) -> bool:
		return self.body is not None

	def attr(self, key: str) -> Optional[str]:
		"""Return an attribute value, or None when absent."""
		return self.attrs.get(key)


def _read_quoted(text: str, pos: int) -> tuple[Optional[str], int]:
	"""Read a quoted value starting at the quote character.

	Returns (value, index after closing quote), or (None, pos) if unterminated.
	"""
	quote = text[pos]
	chars: list[str] = []
	i = pos + 1
	while i < len(text):
		ch = text[i]
		if ch == "\\" and i + 1 < len(text):
			chars.append(text[i + 1])
			i += 2
			continue
		if ch == quote:
			return "".join(chars), i + 1
		chars.append(ch)
		i += 1
	return None, pos


def _skip_spaces(text: str, pos: int) -> int:
	while pos < len(text) and text[pos] in " \t":
		pos += 1
	return pos


def _read_tag(text: str, start: int) -> Optional[MarkerTag]:
	"""Try to read a tag beginning at text[start] == '['."""
	pos = start + 1
	closing = pos < len(text) and text[pos] == "/"
	if closing:
		pos += 1

	name_match = TAG_NAME_RE.match(text, pos)
	if not name_match:
		return None
	name = name_match.group(0)
	pos = name_match.end()

	if closing:
		pos = _skip_spaces(text, pos)
		if pos < len(text) and text[pos] == "]":
			return MarkerTag(name=name, start=start, end=pos + 1, closing=True)
		return None

	attrs: dict[str, str] = {}
	while pos < len(text):
		if text[pos] == "]":
			return MarkerTag(name=name, start=start, end=pos + 1, attrs=attrs)
		if text[pos] not in " \t":
			return None
		pos = _skip_spaces(text, pos)
		if pos < len(text) and text[pos] == "]":
			continue

		attr_match = ATTR_NAME_RE.match(text, pos)
		if not attr_match:
			return None
		pos = _skip_spaces(text, attr_match.end())
		if pos >= len(text) or text[pos] != "=":
			return None
		pos = _skip_spaces(text, pos + 1)
		if pos >= len(text) or text[pos] not in "\"'":
			return None
		value, after = _read_quoted(text, pos)
		if value is None:
			return None
		# First occurrence wins for duplicated attributes
		attrs.setdefault(attr_match.group(0), value)
		pos = after

	return None


def iter_tags(text: str) -> Iterator[MarkerTag]:
	"""Yield every well-formed tag in order of appearance."""
	if not text:
		return
	pos = text.find("[")
	while pos != -1:
		tag = None
		if pos == 0 or text[pos - 1] != "\\":
			tag = _read_tag(text, pos)
		if tag is not None:
			yield tag
			pos = text.find("[", tag.end)
		else:
			pos = text.find("[", pos + 1)


def tokenize(text: str) -> list[MarkerTag]:
	return list(iter_tags(text))


def find_blocks(text: str, name: str, tags: Optional[list[MarkerTag]] = None) -> list[MarkerBlock]:
	"""Pair openers of the given tag with their closing tags.

	An opener is closed by the next closing tag of the same name, unless
	another opener of that name appears first; in that case it is reported
	as unclosed (body None) and the later opener takes the closing tag.

	Args:
		text: Full text the tags were read from
		name: Tag name to collect
		tags: Pre-computed tokens for text (tokenized on demand when omitted)

	Returns:
		Blocks in order of appearance
	"""
	if tags is None:
		tags = tokenize(text)
	relevant = [t for t in tags if t.name == name]

	blocks: list[MarkerBlock] = []
	pending: Optional[MarkerTag] = None
	for tag in relevant:
		if not tag.closing:
			if pending is not None:
				blocks.append(MarkerBlock(name=name, attrs=pending.attrs, start=pending.start, end=pending.end))
			pending = tag
			continue
		if pending is None:
			# Stray closing tag
			continue
		blocks.append(MarkerBlock(
			name=name,
			attrs=pending.attrs,
			start=pending.start,
			end=tag.end,
			body=text[pending.end:tag.start],
		))
		pending = None

	if pending is not None:
		blocks.append(MarkerBlock(name=name, attrs=pending.attrs, start=pending.start, end=pending.end))
	return blocks


def first_block(text: str, name: str, tags: Optional[list[MarkerTag]] = None) -> Optional[MarkerBlock]:
	"""Return the first closed block of the given tag, or None."""
	for block in find_blocks(text, name, tags):
		if block.closed:
			return block
	return None


def has_tag(name: str, tags: list[MarkerTag]) -> bool:
	"""Whether an opening tag with this name is present."""
	return any(t.name == name and not t.closing for t in tags)
