"""Markers module - Extraction of typed records from assistant output."""

from .composable import has_composable_plan_markers, parse_composable_plan
from .parser import Decision, DecisionOption, OutputParser, ParsedOutput, StepCompletion, parse
from .sanitize import escape_markers

__all__ = [
	"OutputParser",
	"ParsedOutput",
	"Decision",
	"DecisionOption",
	"StepCompletion",
	"parse",
	"parse_composable_plan",
	"has_composable_plan_markers",
	"escape_markers",
]
