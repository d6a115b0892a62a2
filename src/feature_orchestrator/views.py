"""Rich views for parsed output, plan validation and session queues."""

from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from .markers.parser import ParsedOutput
from .plans.models import ComposablePlan, StepStatus
from .plans.validator import PlanSection, PlanValidationResult, SECTION_TITLES
from .sessions.models import Session, SessionStatus

STATUS_ICONS = {
	StepStatus.PENDING: "[dim][ ][/dim]",
	StepStatus.IN_PROGRESS: "[yellow][~][/yellow]",
	StepStatus.COMPLETED: "[green]\\[x][/green]",
	StepStatus.BLOCKED: "[red][!][/red]",
	StepStatus.SKIPPED: "[dim][-][/dim]",
	StepStatus.NEEDS_REVIEW: "[magenta][?][/magenta]",
}

SESSION_STYLES = {
	SessionStatus.QUEUED: "dim",
	SessionStatus.PAUSED: "yellow",
	SessionStatus.COMPLETED: "green",
	SessionStatus.FAILED: "red",
}


def render_parsed_output(parsed: ParsedOutput, console: Optional[Console] = None) -> None:
	"""Render the records extracted from assistant output."""
	console = console or Console()

	if parsed.decisions:
		table = Table(title="Decisions")
		table.add_column("#", justify="right")
		table.add_column("Question", style="cyan")
		table.add_column("Options")
		table.add_column("Priority", justify="right")
		table.add_column("Category")
		for i, decision in enumerate(parsed.decisions, start=1):
			options = "\n".join(
				f"{'[green]*[/green] ' if o.recommended else '  '}{escape(o.label)}" for o in decision.options
			)
			table.add_row(str(i), escape(decision.question_text), options, str(decision.priority), decision.category)
		console.print(table)

	if parsed.plan_steps:
		table = Table(title="Plan Steps")
		table.add_column("ID", style="cyan")
		table.add_column("Parent")
		table.add_column("Title")
		table.add_column("Complexity")
		for step in parsed.plan_steps:
			table.add_row(
				step.id,
				step.parent_id or "",
				escape(step.title),
				step.complexity.value if step.complexity else "",
			)
		console.print(table)

	if parsed.steps_completed:
		table = Table(title="Completed Steps")
		table.add_column("ID", style="cyan")
		table.add_column("Summary")
		table.add_column("Source", style="dim")
		for completion in parsed.steps_completed:
			table.add_row(completion.id, escape(completion.summary), completion.source.value)
		console.print(table)

	flags = []
	if parsed.plan_approved:
		flags.append("[green]plan approved[/green]")
	if parsed.implementation_complete:
		flags.append("[green]implementation complete[/green]")
	if parsed.pr_created:
		flags.append(f"PR created: {parsed.pr_created.url or parsed.pr_created.title}")
	if parsed.ci_status:
		flags.append(f"CI: {parsed.ci_status.status.value}")
	if parsed.pr_approved:
		flags.append("[green]PR approved[/green]")
	if parsed.return_to_stage_2:
		flags.append(f"[yellow]return to planning:[/yellow] {escape(parsed.return_to_stage_2)}")
	if flags:
		console.print(Panel("\n".join(flags), title="Status"))

	if not (parsed.decisions or parsed.plan_steps or parsed.steps_completed or flags):
		console.print("[dim]No markers found.[/dim]")


def render_validation(result: PlanValidationResult, console: Optional[Console] = None) -> None:
	"""Render per-section validation results."""
	console = console or Console()

	table = Table(title="Plan Validation")
	table.add_column("Section", style="cyan")
	table.add_column("Valid", justify="center")
	table.add_column("Issues")
	for section in PlanSection:
		section_result = result.section(section)
		valid = "[green]yes[/green]" if section_result.valid else "[red]no[/red]"
		table.add_row(SECTION_TITLES[section], valid, escape("\n".join(section_result.errors)))
	console.print(table)

	overall = "[green]valid[/green]" if result.overall else "[red]invalid[/red]"
	console.print(f"[bold]Overall:[/bold] {overall}")


def render_plan_tree(plan: ComposablePlan, console: Optional[Console] = None) -> None:
	"""Render plan steps as a tree following parent links."""
	console = console or Console()

	done = sum(1 for s in plan.steps if s.status == StepStatus.COMPLETED)
	tree = Tree(f"[bold]Plan[/bold]  [dim]({done}/{len(plan.steps)} steps complete)[/dim]")
	children = plan.children_of()
	known = {s.id for s in plan.steps}

	def add(branch: Tree, step_id: str, seen: set[str]) -> None:
		if step_id in seen:
			return
		seen.add(step_id)
		step = plan.get_step(step_id)
		icon = STATUS_ICONS.get(step.status, "[ ]")
		node = branch.add(f"{icon} [bold]{step.id}[/bold] {escape(step.title)}")
		for child_id in children.get(step_id, []):
			add(node, child_id, seen)

	seen: set[str] = set()
	for step in plan.steps:
		if step.parent_id is None or step.parent_id not in known:
			add(tree, step.id, seen)
	# Steps caught in a parent cycle have no root to hang from
	for step in plan.steps:
		add(tree, step.id, seen)
	console.print(tree)


def render_session_list(sessions: list[Session], console: Optional[Console] = None) -> None:
	"""Render a project's sessions, active first, then the queue, then the rest."""
	console = console or Console()

	if not sessions:
		console.print("[dim]No sessions for this project.[/dim]")
		return

	def sort_key(s: Session):
		if s.is_active:
			return (0, 0, s.created_at)
		if s.status == SessionStatus.QUEUED:
			return (1, s.queue_position or 0, s.created_at)
		return (2, 0, s.updated_at)

	table = Table(title="Sessions")
	table.add_column("Feature", style="cyan")
	table.add_column("Title")
	table.add_column("Status")
	table.add_column("Stage", justify="right")
	table.add_column("Queue", justify="right")
	table.add_column("Updated")
	for session in sorted(sessions, key=sort_key):
		style = "bold" if session.is_active else SESSION_STYLES.get(session.status, "")
		status = f"[{style}]{session.status.value}[/{style}]" if style else session.status.value
		table.add_row(
			session.feature_id,
			escape(session.title),
			status,
			str(session.current_stage),
			str(session.queue_position) if session.queue_position else "",
			session.updated_at[:19].replace("T", " "),
		)
	console.print(table)
