"""
Output Parser - Turns free-form assistant output into typed records.

Extracts:
- Decisions ([DECISION_NEEDED]) with their answer options
- Plan steps ([PLAN_STEP])
- Step completions (formal [STEP_COMPLETE] markers and plain-text mentions)
- Stage signals (plan mode, plan approval, implementation complete, PR, CI)

Parsing never raises. Missing or malformed fields fall back to documented
defaults; absent optional fields are None rather than a falsy placeholder.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..plans.models import StepComplexity, StepStatus
from .tokenizer import MarkerBlock, MarkerTag, find_blocks, first_block, has_tag, tokenize

logger = logging.getLogger(__name__)

DEFAULT_DECISION_PRIORITY = 3
DEFAULT_DECISION_CATEGORY = "general"
PLAIN_TEXT_SUMMARY_CHARS = 500

OPTION_LINE_RE = re.compile(
	r"^\s*-\s+(?:\*\*)?Option\s+([A-Za-z])(?:\*\*)?\s*:(?:\*\*)?\s*(.*?)\s*$",
	re.IGNORECASE,
)
RECOMMENDED_RE = re.compile(r"\s*\(recommended\)\s*$", re.IGNORECASE)

PLAIN_COMPLETION_RE = re.compile(
	r"^[ \t]*(?:#+[ \t]*)?(?:\*\*)?Step[ \t]+(\d+|step-\d+)[ \t]+(?:Complete|Completed|Done)(?:\*\*)?[ \t]*$",
	re.IGNORECASE | re.MULTILINE,
)
PLAIN_SUMMARY_STOP_RE = re.compile(r"\n(?:#+\s|\*\*Step|\[STEP)")
SELF_CLOSING_STOP_RE = re.compile(r"\n\n|\[STEP_|\[IMPLEMENTATION")
PLAN_APPROVED_LINE_RE = re.compile(r"^\[PLAN_APPROVED\]\s*$", re.MULTILINE)
BRANCH_RE = re.compile(r"Branch:\s*(\S+)\s*(?:→|â†’|->)\s*(\S+)")


class CompletionSource(str, Enum):
	"""Where a step completion record came from."""
	FORMAL = "formal"
	SELF_CLOSING = "self_closing"
	PLAIN_TEXT = "plain_text"


class CIState(str, Enum):
	PASSING = "passing"
	FAILING = "failing"
	PENDING = "pending"


@dataclass
class DecisionOption:
	"""An answer choice offered in a decision block."""
	label: str
	recommended: bool = False


@dataclass
class Decision:
	"""A question the assistant needs answered."""
	question_text: str
	options: list[DecisionOption]
	priority: int = DEFAULT_DECISION_PRIORITY
	category: str = DEFAULT_DECISION_CATEGORY
	file: Optional[str] = None
	line: Optional[int] = None


@dataclass
class ParsedPlanStep:
	"""A [PLAN_STEP] block. List fields are None when the attribute was absent."""
	id: str
	title: str
	description: str = ""
	parent_id: Optional[str] = None
	status: StepStatus = StepStatus.PENDING
	complexity: Optional[StepComplexity] = None
	acceptance_criteria_ids: Optional[list[str]] = None
	estimated_files: Optional[list[str]] = None


@dataclass
class StepCompletion:
	"""A signal that a plan step finished."""
	id: str
	summary: str
	tests_added: list[str] = field(default_factory=list)
	tests_passing: bool = True
	source: CompletionSource = CompletionSource.FORMAL


@dataclass
class ImplementationStatus:
	"""Progress report from [IMPLEMENTATION_STATUS]."""
	step_id: str = ""
	status: str = ""
	files_modified: int = 0
	tests_status: str = ""
	work_type: str = ""
	progress: int = 0
	message: str = ""


@dataclass
class PullRequestInfo:
	"""Details from [PR_CREATED]."""
	title: str = ""
	source_branch: str = ""
	target_branch: str = ""
	url: Optional[str] = None


@dataclass
class CIStatus:
	status: CIState
	checks: str = ""


@dataclass
class StepModifications:
	"""Step ids touched during a plan revision."""
	modified: list[str] = field(default_factory=list)
	added: list[str] = field(default_factory=list)
	removed: list[str] = field(default_factory=list)


@dataclass
class ParsedOutput:
	"""Everything extracted from one chunk of assistant output."""
	decisions: list[Decision] = field(default_factory=list)
	plan_steps: list[ParsedPlanStep] = field(default_factory=list)
	step_completed: Optional[StepCompletion] = None
	steps_completed: list[StepCompletion] = field(default_factory=list)
	plan_mode_entered: bool = False
	plan_mode_exited: bool = False
	plan_approved: bool = False
	plan_file_path: Optional[str] = None
	implementation_complete: bool = False
	implementation_summary: Optional[str] = None
	all_tests_passing: bool = False
	tests_added: list[str] = field(default_factory=list)
	implementation_status: Optional[ImplementationStatus] = None
	pr_created: Optional[PullRequestInfo] = None
	ci_status: Optional[CIStatus] = None
	ci_failed: bool = False
	pr_approved: bool = False
	return_to_stage_2: Optional[str] = None
	step_modifications: Optional[StepModifications] = None
	removed_step_ids: list[str] = field(default_factory=list)


def safe_int(value: Optional[str], default: Optional[int] = None) -> Optional[int]:
	"""Parse a leading integer, returning default for anything unparseable."""
	if value is None:
		return default
	match = re.match(r"\s*([+-]?\d+)", value)
	if not match:
		return default
	return int(match.group(1))


def split_list(value: Optional[str]) -> Optional[list[str]]:
	"""Split a comma list attribute. None stays None."""
	if value is None:
		return None
	return [item.strip() for item in value.split(",") if item.strip()]


def line_value(content: str, key: str) -> Optional[str]:
	"""Value of the first 'key: value' line, or None."""
	match = re.search(rf"{re.escape(key)}:[ \t]*(.+)", content, re.IGNORECASE)
	if not match:
		return None
	return match.group(1).strip()


def parse_bool(value: Optional[str], default: bool) -> bool:
	if value is None:
		return default
	match = re.match(r"(yes|no|true|false)\b", value, re.IGNORECASE)
	if not match:
		return default
	return match.group(1).lower() in ("yes", "true")


def parse_tests_added(content: str) -> list[str]:
	"""'Tests added: a, b' list with 'none' entries dropped."""
	value = line_value(content, "Tests added")
	if value is None:
		return []
	return [t.strip() for t in value.split(",") if t.strip() and t.strip().lower() != "none"]


def parse_complexity(value: Optional[str]) -> Optional[StepComplexity]:
	if value is None:
		return None
	try:
		return StepComplexity(value.strip().lower())
	except ValueError:
		return None


def parse_step_status(value: Optional[str]) -> StepStatus:
	if value is None:
		return StepStatus.PENDING
	try:
		return StepStatus(value.strip().lower())
	except ValueError:
		logger.debug(f"Unknown step status '{value}', defaulting to pending")
		return StepStatus.PENDING


class OutputParser:
	"""
	Extracts typed records from assistant output.

	Stateless; a single instance can serve any number of sessions.
	"""

	def parse(self, text: str) -> ParsedOutput:
		"""Parse a complete output buffer. Never raises."""
		if not text:
			return ParsedOutput()
		try:
			return self._parse(text)
		except Exception as e:
			logger.exception(f"Output parsing failed, returning empty result: {e}")
			return ParsedOutput()

	def _parse(self, text: str) -> ParsedOutput:
		tags = tokenize(text)
		completions = self.parse_step_completions(text, tags)
		formal = [c for c in completions if c.source != CompletionSource.PLAIN_TEXT]

		result = ParsedOutput(
			decisions=self.parse_decisions(text, tags),
			plan_steps=self.parse_plan_steps(text, tags),
			step_completed=formal[-1] if formal else None,
			steps_completed=completions,
			plan_mode_entered=has_tag("PLAN_MODE_ENTERED", tags),
			plan_mode_exited=has_tag("PLAN_MODE_EXITED", tags),
			plan_approved=bool(PLAN_APPROVED_LINE_RE.search(text)),
			plan_file_path=self._plan_file_path(tags),
			implementation_complete=has_tag("IMPLEMENTATION_COMPLETE", tags),
			implementation_status=self._implementation_status(text, tags),
			pr_created=self._pr_created(text, tags),
			ci_status=self._ci_status(text, tags),
			ci_failed=has_tag("CI_FAILED", tags),
			pr_approved=has_tag("PR_APPROVED", tags),
			return_to_stage_2=self._return_to_stage_2(text, tags),
			step_modifications=self.parse_step_modifications(text, tags),
			removed_step_ids=self.parse_remove_steps(text, tags),
		)

		block = first_block(text, "IMPLEMENTATION_COMPLETE", tags)
		if block is not None:
			content = block.body.strip()
			result.implementation_summary = content
			result.all_tests_passing = parse_bool(line_value(content, "All tests passing"), False)
			result.tests_added = parse_tests_added(content)

		return result

	# ------------------------------------------------------------------
	# Decisions
	# ------------------------------------------------------------------

	def parse_decisions(self, text: str, tags: Optional[list[MarkerTag]] = None) -> list[Decision]:
		"""Parse [DECISION_NEEDED] blocks. Blocks without options are dropped."""
		decisions = []
		for block in find_blocks(text, "DECISION_NEEDED", tags):
			if not block.closed:
				continue
			decision = self._decision_from_block(block)
			if decision is not None:
				decisions.append(decision)
		return decisions

	def _decision_from_block(self, block: MarkerBlock) -> Optional[Decision]:
		options: list[DecisionOption] = []
		question_lines: list[str] = []

		for line in block.body.strip().split("\n"):
			match = OPTION_LINE_RE.match(line)
			label = match.group(2).replace("**", "").strip() if match else ""
			if not label:
				question_lines.append(line)
				continue
			recommended = bool(RECOMMENDED_RE.search(label))
			if recommended:
				label = RECOMMENDED_RE.sub("", label).strip()
			options.append(DecisionOption(label=label, recommended=recommended))

		if not options:
			logger.debug("Dropping decision block without options")
			return None
		if not any(o.recommended for o in options):
			options[0].recommended = True

		return Decision(
			question_text="\n".join(question_lines).strip(),
			options=options,
			priority=safe_int(block.attr("priority"), DEFAULT_DECISION_PRIORITY),
			category=block.attr("category") or DEFAULT_DECISION_CATEGORY,
			file=block.attr("file") or None,
			line=safe_int(block.attr("line")),
		)

	# ------------------------------------------------------------------
	# Plan steps
	# ------------------------------------------------------------------

	def parse_plan_steps(self, text: str, tags: Optional[list[MarkerTag]] = None) -> list[ParsedPlanStep]:
		"""Parse [PLAN_STEP] blocks. First body line is the title."""
		steps = []
		for block in find_blocks(text, "PLAN_STEP", tags):
			if not block.closed:
				continue
			lines = block.body.strip().split("\n")
			parent = block.attr("parent")
			steps.append(ParsedPlanStep(
				id=block.attr("id") or "",
				parent_id=None if not parent or parent == "null" else parent,
				status=parse_step_status(block.attr("status")),
				title=lines[0].strip(),
				description="\n".join(lines[1:]).strip(),
				complexity=parse_complexity(block.attr("complexity")),
				acceptance_criteria_ids=split_list(block.attr("acceptanceCriteria")),
				estimated_files=split_list(block.attr("estimatedFiles")),
			))
		return steps

	# ------------------------------------------------------------------
	# Step completion
	# ------------------------------------------------------------------

	def parse_step_completions(self, text: str, tags: Optional[list[MarkerTag]] = None) -> list[StepCompletion]:
		"""Collect step completions, one record per step id.

		Closed [STEP_COMPLETE] markers win over self-closing ones, which win
		over plain-text mentions like '**Step 5 Complete**'.
		"""
		completions: list[StepCompletion] = []
		seen: set[str] = set()
		blocks = [b for b in find_blocks(text, "STEP_COMPLETE", tags) if b.attr("id")]

		for block in blocks:
			step_id = block.attr("id")
			if not block.closed or step_id in seen:
				continue
			content = block.body.strip()
			seen.add(step_id)
			completions.append(StepCompletion(
				id=step_id,
				summary=content,
				tests_added=parse_tests_added(content),
				tests_passing=parse_bool(line_value(content, "Tests passing"), True),
				source=CompletionSource.FORMAL,
			))

		for block in blocks:
			step_id = block.attr("id")
			if block.closed or step_id in seen:
				continue
			remaining = text[block.end:]
			stop = SELF_CLOSING_STOP_RE.search(remaining)
			summary = (remaining[:stop.start()] if stop else remaining).strip()
			seen.add(step_id)
			completions.append(StepCompletion(
				id=step_id,
				summary=summary or f"Step {step_id} completed",
				source=CompletionSource.SELF_CLOSING,
			))

		for match in PLAIN_COMPLETION_RE.finditer(text):
			step_id = match.group(1)
			if step_id in seen:
				continue
			seen.add(step_id)
			context = text[match.end():match.end() + PLAIN_TEXT_SUMMARY_CHARS]
			context = PLAIN_SUMMARY_STOP_RE.split(context)[0].strip()
			completions.append(StepCompletion(
				id=step_id,
				summary=context or f"Step {step_id} completed",
				source=CompletionSource.PLAIN_TEXT,
			))

		return completions

	# ------------------------------------------------------------------
	# Stage signals
	# ------------------------------------------------------------------

	def _plan_file_path(self, tags: list[MarkerTag]) -> Optional[str]:
		for tag in tags:
			if tag.name == "PLAN_FILE" and not tag.closing and tag.attrs.get("path"):
				return tag.attrs["path"]
		return None

	def _implementation_status(self, text: str, tags: list[MarkerTag]) -> Optional[ImplementationStatus]:
		block = first_block(text, "IMPLEMENTATION_STATUS", tags)
		if block is None:
			return None
		content = block.body
		return ImplementationStatus(
			step_id=line_value(content, "step_id") or "",
			status=line_value(content, "status") or "",
			files_modified=safe_int(line_value(content, "files_modified"), 0),
			tests_status=line_value(content, "tests_status") or "",
			work_type=line_value(content, "work_type") or "",
			progress=safe_int(line_value(content, "progress"), 0),
			message=line_value(content, "message") or "",
		)

	def _pr_created(self, text: str, tags: list[MarkerTag]) -> Optional[PullRequestInfo]:
		block = first_block(text, "PR_CREATED", tags)
		if block is None:
			return None
		content = block.body
		branch = BRANCH_RE.search(content)
		url = re.search(r"URL:\s*(\S+)", content)
		return PullRequestInfo(
			title=line_value(content, "Title") or "",
			source_branch=branch.group(1) if branch else "",
			target_branch=branch.group(2) if branch else "",
			url=url.group(1) if url else None,
		)

	def _ci_status(self, text: str, tags: list[MarkerTag]) -> Optional[CIStatus]:
		for block in find_blocks(text, "CI_STATUS", tags):
			if not block.closed:
				continue
			try:
				state = CIState(block.attr("status") or "")
			except ValueError:
				continue
			return CIStatus(status=state, checks=block.body.strip())
		return None

	def _return_to_stage_2(self, text: str, tags: list[MarkerTag]) -> Optional[str]:
		block = first_block(text, "RETURN_TO_STAGE_2", tags)
		if block is None:
			return None
		content = block.body.strip()
		return line_value(content, "Reason") or content

	# ------------------------------------------------------------------
	# Plan revisions
	# ------------------------------------------------------------------

	def parse_step_modifications(self, text: str, tags: Optional[list[MarkerTag]] = None) -> Optional[StepModifications]:
		"""Parse [STEP_MODIFICATIONS] with modified/added/removed id lists."""
		block = first_block(text, "STEP_MODIFICATIONS", tags)
		if block is None:
			return None
		content = block.body
		return StepModifications(
			modified=_array_field(content, "modified"),
			added=_array_field(content, "added"),
			removed=_array_field(content, "removed"),
		)

	def parse_remove_steps(self, text: str, tags: Optional[list[MarkerTag]] = None) -> list[str]:
		"""Parse every [REMOVE_STEPS] block (JSON array or one id per line)."""
		removed: list[str] = []
		for block in find_blocks(text, "REMOVE_STEPS", tags):
			if not block.closed:
				continue
			content = block.body.strip()
			ids = _json_string_list(content)
			if ids is None:
				ids = []
				for item in re.split(r"[\n,]", content):
					cleaned = re.sub(r"^[-*\s]+", "", item).replace('"', "").replace("'", "").strip()
					if cleaned and not cleaned.startswith(("[", "]")):
						ids.append(cleaned)
			for step_id in ids:
				if step_id not in removed:
					removed.append(step_id)
		return removed


def _json_string_list(content: str) -> Optional[list[str]]:
	"""Decode a JSON array of strings; None when content is not a JSON array."""
	try:
		parsed = json.loads(content)
	except (ValueError, RecursionError):
		return None
	if not isinstance(parsed, list):
		return None
	return [item for item in parsed if isinstance(item, str)]


def _array_field(content: str, name: str) -> list[str]:
	json_match = re.search(rf"{name}\s*:\s*(\[[^\]]*\])", content, re.IGNORECASE)
	if json_match:
		ids = _json_string_list(json_match.group(1))
		if ids is not None:
			return ids

	simple_match = re.search(rf"{name}\s*:\s*([^\n]+)", content, re.IGNORECASE)
	if simple_match:
		value = simple_match.group(1).strip()
		if not value.startswith("["):
			return [s.replace('"', "").replace("'", "").strip() for s in value.split(",") if s.strip()]
	return []


_parser: Optional[OutputParser] = None


def get_output_parser() -> OutputParser:
	"""Get or create the global parser instance."""
	global _parser
	if _parser is None:
		_parser = OutputParser()
	return _parser


def parse(text: str) -> ParsedOutput:
	"""Parse assistant output with the shared parser."""
	return get_output_parser().parse(text)
