"""Plans module - Composable plan model, validation and migration."""

from .models import ComposablePlan, PlanMeta, PlanStep, StepComplexity, StepStatus, ValidationStatus
from .validator import PlanValidationResult, PlanValidator, ValidationIssue, validate_plan

__all__ = [
	"ComposablePlan",
	"PlanMeta",
	"PlanStep",
	"StepComplexity",
	"StepStatus",
	"ValidationStatus",
	"PlanValidator",
	"PlanValidationResult",
	"ValidationIssue",
	"validate_plan",
]
