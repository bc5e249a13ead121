"""abo CLI: Typer + Rich terminal interface to the decision engine.

Commands: event, expire, outcome, learn, insights, stats, plus the
actions, agents and subscribers sub-apps. Output is Rich tables and panels.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from abo import __version__
from abo.errors import AboError, InfrastructureError
from abo.schemas.actions import ActionModifications, ActionStatus, AgentAction
from abo.schemas.agents import AgentType, ConfidencePolicy, MessageTone, StrategyTemplate
from abo.schemas.learning import FeedbackType, Outcome

console = Console()

# ── App and sub-apps ─────────────────────────────────────────────

app = typer.Typer(
    name="abo",
    help="Agent decision and approval engine for subscription businesses.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

actions_app = typer.Typer(
    name="actions", help="Review and drive agent actions.", no_args_is_help=True
)
app.add_typer(actions_app, name="actions")

agents_app = typer.Typer(name="agents", help="Show and change agent configs.", no_args_is_help=True)
app.add_typer(agents_app, name="agents")

subscribers_app = typer.Typer(
    name="subscribers", help="Manage the local subscriber mirror.", no_args_is_help=True
)
app.add_typer(subscribers_app, name="subscribers")

# Global options set by the app callback
_state: dict[str, object] = {
    "config": None,
    "db": None,
    "generator": "template",
    "delivery": "recording",
}

_STATUS_STYLE = {
    ActionStatus.PENDING_APPROVAL: "yellow",
    ActionStatus.APPROVED: "cyan",
    ActionStatus.EXECUTED: "green",
    ActionStatus.REJECTED: "red",
    ActionStatus.EXPIRED: "dim",
}


# ── Version callback ─────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"abo {__version__}")
        raise typer.Exit()


# ── App callback ─────────────────────────────────────────────────


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity"),
    config: Path = typer.Option(None, "--config", help="Engine settings TOML file"),
    db: str = typer.Option(None, "--db", help="SQLite database path (overrides settings)"),
    generator: str = typer.Option(
        "template", "--generator", help="Content generator: template or litellm"
    ),
    delivery: str = typer.Option(
        "recording", "--delivery", help="Delivery channel: recording or resend"
    ),
) -> None:
    """abo: vetted, rate-limited, human-approvable agent actions."""
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )
    _state.update(config=config, db=db, generator=generator, delivery=delivery)


# ── Helpers ──────────────────────────────────────────────────────


def _load_settings():
    """Load engine settings, exit on error."""
    from abo.settings import load_engine_settings

    try:
        return load_engine_settings(_state["config"])
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Config error:[/red] {e}")
        raise typer.Exit(1) from None


def _parse_agent_type(value: str) -> AgentType:
    try:
        return AgentType(value)
    except ValueError:
        choices = ", ".join(t.value for t in AgentType)
        console.print(f"[red]Unknown agent type:[/red] {value} (choose from {choices})")
        raise typer.Exit(1) from None


async def _open_engine():
    """Open an engine with the collaborators picked on the command line."""
    from abo.engine import open_engine
    from abo.providers.local import DeliveryOwnerNotifier

    settings = _load_settings()
    collaborators: dict = {}
    if _state["generator"] == "litellm":
        from abo.providers.litellm_generator import LiteLLMContentGenerator

        collaborators["generator"] = LiteLLMContentGenerator(settings.generation)
    if _state["delivery"] == "resend":
        from abo.providers.resend import ResendDeliveryChannel

        channel = ResendDeliveryChannel(os.environ.get("ABO_SENDER_EMAIL", "agents@example.com"))
        collaborators["delivery"] = channel
        collaborators["notifier"] = DeliveryOwnerNotifier(
            channel, max_age_hours=settings.expiration.max_age_hours
        )
    return await open_engine(settings, db_path=_state["db"], **collaborators)


def _run(work):
    """Run ``work(engine)`` on a fresh engine and close it afterwards.

    Engine errors are printed and turned into exit code 1.
    """

    async def _wrapped():
        engine = await _open_engine()
        try:
            return await work(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(_wrapped())
    except AboError as e:
        label = "Retryable failure" if isinstance(e, InfrastructureError) else "Error"
        console.print(f"[red]{label}:[/red] {e}")
        raise typer.Exit(1) from None


def _status_text(status: ActionStatus) -> Text:
    return Text(status.value, style=_STATUS_STYLE.get(status, ""))


def _print_action(action: AgentAction, steps=None) -> None:
    meta = Table(title=f"Action: {action.action_id}", show_header=False, show_lines=True)
    meta.add_column("Field", style="bold")
    meta.add_column("Value")
    meta.add_row("Status", _status_text(action.status))
    meta.add_row("Agent", action.agent_type.value)
    meta.add_row("Trigger", action.trigger)
    meta.add_row("Subscriber", action.subscriber_id)
    meta.add_row("Action", f"{action.action_type} ({action.strategy})")
    meta.add_row("Description", action.description)
    meta.add_row("Confidence", f"{action.confidence:.0%}")
    meta.add_row("Created", action.created_at.isoformat())
    if action.approved_by:
        meta.add_row("Approved by", action.approved_by)
    if action.rejection_reason:
        meta.add_row("Rejection reason", action.rejection_reason)
    if action.executed_at:
        meta.add_row("Executed", action.executed_at.isoformat())
    if action.last_error:
        meta.add_row("Last error", Text(action.last_error, style="red"))
    if action.delivery_attempts:
        meta.add_row("Delivery attempts", str(action.delivery_attempts))
    console.print(meta)

    console.print(Panel(
        f"[bold]{escape(action.content.subject)}[/bold]\n\n{escape(action.content.body)}",
        title="Content",
        border_style="blue",
    ))

    if steps:
        trace = Table(title="Reasoning", show_lines=True)
        trace.add_column("#", justify="right", style="dim")
        trace.add_column("Step", style="cyan")
        trace.add_column("Thought")
        trace.add_column("Confidence", justify="right")
        trace.add_column("ms", justify="right", style="dim")
        for step in steps:
            trace.add_row(
                str(step.step_number),
                step.step_type.value,
                step.thought,
                f"{step.confidence_score:.0%}" if step.confidence_score is not None else "-",
                f"{step.duration_ms:.1f}",
            )
        console.print(trace)


# ── Events ───────────────────────────────────────────────────────


@app.command()
def event(
    event_type: str = typer.Argument(..., help="Event type, e.g. payment_failed"),
    subscriber_id: str = typer.Argument(..., help="Subscriber the event is about"),
    user: str = typer.Option(..., "--user", "-u", help="Business owner id"),
    data: str = typer.Option("{}", "--data", help="Event payload as JSON"),
) -> None:
    """Handle one business event."""
    from abo.schemas.events import Event

    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid --data JSON:[/red] {e}")
        raise typer.Exit(1) from None
    if not isinstance(payload, dict):
        console.print("[red]--data must be a JSON object[/red]")
        raise typer.Exit(1)

    async def _handle(engine):
        return await engine.orchestrator.handle_event(
            user, Event(type=event_type, subscriber_id=subscriber_id, data=payload)
        )

    result = _run(_handle)
    if result.skipped:
        console.print(Panel(
            f"[bold]{event_type}[/bold] for {subscriber_id}: no action "
            f"([yellow]{result.skipped_reason}[/yellow])",
            border_style="yellow",
        ))
        return
    _print_action(result.action, result.reasoning)


# ── Actions ──────────────────────────────────────────────────────


@actions_app.command("list")
def actions_list(
    user: str = typer.Option(..., "--user", "-u", help="Business owner id"),
    status: str = typer.Option(None, "--status", help="Filter by status"),
    agent: str = typer.Option(None, "--agent", help="Filter by agent type"),
    limit: int = typer.Option(20, "--limit", "-n", help="Max actions to show"),
) -> None:
    """Show recent actions."""
    try:
        status_filter = ActionStatus(status) if status else None
    except ValueError:
        console.print(f"[red]Unknown status:[/red] {status}")
        raise typer.Exit(1) from None
    agent_filter = _parse_agent_type(agent) if agent else None

    async def _list(engine):
        return await engine.actions.list_actions(
            user, status=status_filter, agent_type=agent_filter, limit=limit
        )

    actions = _run(_list)
    if not actions:
        console.print("[dim]No actions found.[/dim]")
        return

    table = Table(title=f"Actions ({len(actions)} shown)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Agent", style="dim")
    table.add_column("Trigger")
    table.add_column("Description", max_width=50)
    table.add_column("Confidence", justify="right")
    table.add_column("Status")
    table.add_column("Created", style="dim")
    for a in actions:
        table.add_row(
            a.action_id[:8],
            a.agent_type.value,
            a.trigger,
            a.description,
            f"{a.confidence:.0%}",
            _status_text(a.status),
            a.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@actions_app.command("show")
def actions_show(
    action_id: str = typer.Argument(..., help="Action ID"),
) -> None:
    """Show an action with its reasoning trace."""

    async def _get(engine):
        action = await engine.actions.get(action_id)
        steps = await engine.actions.get_reasoning(action_id) if action else []
        return action, steps

    action, steps = _run(_get)
    if action is None:
        console.print(f"[red]Action not found:[/red] {action_id}")
        raise typer.Exit(1)
    _print_action(action, steps)


@actions_app.command("approve")
def actions_approve(
    action_ids: list[str] = typer.Argument(..., help="One or more action IDs"),
    user: str = typer.Option(..., "--user", "-u", help="Approving owner id"),
) -> None:
    """Approve and execute pending actions."""

    async def _approve(engine):
        return await engine.lifecycle.batch_approve(action_ids, user)

    result = _run(_approve)
    for action_id in result.approved:
        console.print(f"[green]Approved and sent:[/green] {action_id}")
    for action_id, reason in result.failed.items():
        console.print(f"[red]Failed:[/red] {action_id}: {reason}")
    if result.failed:
        raise typer.Exit(1)


@actions_app.command("reject")
def actions_reject(
    action_id: str = typer.Argument(..., help="Action ID"),
    user: str = typer.Option(..., "--user", "-u", help="Rejecting owner id"),
    reason: str = typer.Option(None, "--reason", help="Why the action was rejected"),
) -> None:
    """Reject a pending action."""

    async def _reject(engine):
        return await engine.lifecycle.reject_action(action_id, user, reason)

    action = _run(_reject)
    console.print(f"[yellow]Rejected:[/yellow] {action.action_id}")


@actions_app.command("modify")
def actions_modify(
    action_id: str = typer.Argument(..., help="Action ID"),
    user: str = typer.Option(..., "--user", "-u", help="Owner id"),
    discount: int = typer.Option(None, "--discount", help="Discount percent"),
    months: int = typer.Option(None, "--months", help="Discount months"),
    pause: int = typer.Option(None, "--pause", help="Pause months"),
    downgrade: str = typer.Option(None, "--downgrade", help="Downgrade plan"),
    tone: str = typer.Option(None, "--tone", help="Message tone override"),
    note: str = typer.Option(None, "--note", help="Custom note for the message"),
) -> None:
    """Edit a pending action and regenerate its content."""
    try:
        modifications = ActionModifications(
            discount_percent=discount,
            discount_months=months,
            pause_months=pause,
            downgrade_plan=downgrade,
            tone=MessageTone(tone) if tone else None,
            custom_note=note,
        )
    except ValueError as e:
        console.print(f"[red]Invalid modification:[/red] {e}")
        raise typer.Exit(1) from None

    async def _modify(engine):
        return await engine.lifecycle.modify_action(action_id, user, modifications)

    _print_action(_run(_modify))


@actions_app.command("execute")
def actions_execute(
    action_id: str = typer.Argument(..., help="Approved action ID"),
) -> None:
    """Retry sending an approved action."""

    async def _execute(engine):
        return await engine.lifecycle.execute_action(action_id)

    action = _run(_execute)
    console.print(f"[green]Sent:[/green] {action.action_id} ({action.message_id or 'no id'})")


@actions_app.command("feedback")
def actions_feedback(
    action_id: str = typer.Argument(..., help="Action ID"),
    user: str = typer.Option(..., "--user", "-u", help="Owner id"),
    kind: str = typer.Option(..., "--type", help="approved, rejected, converted, ..."),
    rating: int = typer.Option(None, "--rating", min=1, max=5, help="Rating from 1 to 5"),
    comment: str = typer.Option(None, "--comment", help="Free-form comment"),
) -> None:
    """Record feedback on an action."""
    try:
        feedback_type = FeedbackType(kind)
    except ValueError:
        console.print(f"[red]Unknown feedback type:[/red] {kind}")
        raise typer.Exit(1) from None

    async def _feedback(engine):
        action = await engine.actions.get(action_id)
        if action is None or action.user_id != user:
            return None
        return await engine.learning.record_feedback(
            user,
            action.agent_type,
            feedback_type,
            subscriber_id=action.subscriber_id,
            action_id=action_id,
            rating=rating,
            comment=comment,
        )

    if _run(_feedback) is None:
        console.print(f"[red]Action not found:[/red] {action_id}")
        raise typer.Exit(1)
    console.print(f"[green]Feedback recorded:[/green] {feedback_type.value}")


# ── Maintenance ──────────────────────────────────────────────────


@app.command()
def expire() -> None:
    """Expire pending actions that waited too long for review."""

    async def _sweep(engine):
        return await engine.lifecycle.sweep_expired()

    result = _run(_sweep)
    console.print(
        f"Expired [bold]{result.expired}[/bold] action(s), "
        f"notified owners of [bold]{result.notified}[/bold]."
    )


@app.command()
def outcome(
    subscriber_id: str = typer.Argument(..., help="Subscriber the outcome is about"),
    user: str = typer.Option(..., "--user", "-u", help="Business owner id"),
    agent: str = typer.Option(..., "--agent", "-a", help="Agent type"),
    result: str = typer.Option(..., "--result", help="success, failure or neutral"),
) -> None:
    """Attribute a real-world outcome to the latest executed action."""
    agent_type = _parse_agent_type(agent)
    try:
        resolved = Outcome(result)
    except ValueError:
        console.print(f"[red]Unknown outcome:[/red] {result}")
        raise typer.Exit(1) from None

    async def _record(engine):
        return await engine.outcomes.record_outcome(
            user, subscriber_id, agent_type, resolved, {"source": "cli"}
        )

    episode = _run(_record)
    if episode is None:
        console.print("[dim]No open action to attribute this outcome to.[/dim]")
        return
    console.print(f"[green]Resolved:[/green] {episode.action_taken.key} as {resolved.value}")


# ── Learning ─────────────────────────────────────────────────────


@app.command()
def learn(
    user: str = typer.Option(..., "--user", "-u", help="Business owner id"),
    agent: str = typer.Option(..., "--agent", "-a", help="Agent type"),
    limit: int = typer.Option(None, "--limit", "-n", help="Most recent episodes to analyze"),
) -> None:
    """Recompute learned patterns from resolved episodes."""
    agent_type = _parse_agent_type(agent)

    async def _analyze(engine):
        return await engine.learning.batch_analyze_episodes(user, agent_type, limit)

    analysis = _run(_analyze)
    console.print(f"Analyzed [bold]{analysis.episodes_analyzed}[/bold] resolved episode(s).")
    if analysis.patterns:
        table = Table(title="Patterns")
        table.add_column("Trigger", style="cyan")
        table.add_column("Action")
        table.add_column("Success", justify="right")
        table.add_column("Cases", justify="right")
        table.add_column("Score", justify="right")
        for p in analysis.patterns:
            table.add_row(
                p.trigger,
                p.action_key,
                f"{p.success_rate:.0%}",
                str(p.sample_size),
                f"{p.score:.2f}",
            )
        console.print(table)
    for insight in analysis.insights:
        console.print(f"  [dim]•[/dim] {insight}")


@app.command()
def insights(
    trigger: str = typer.Argument(..., help="Event type, e.g. payment_failed"),
    user: str = typer.Option(..., "--user", "-u", help="Business owner id"),
    agent: str = typer.Option(..., "--agent", "-a", help="Agent type"),
) -> None:
    """Show what has worked for one trigger."""
    agent_type = _parse_agent_type(agent)

    async def _insights(engine):
        return await engine.learning.get_trigger_insights(user, agent_type, trigger)

    result = _run(_insights)
    meta = Table(title=f"Insights: {trigger}", show_header=False, show_lines=True)
    meta.add_column("Field", style="bold")
    meta.add_column("Value")
    meta.add_row("Cases", str(result.total_cases))
    meta.add_row("Resolved", str(result.resolved_cases))
    meta.add_row("Success rate", f"{result.success_rate:.0%}")
    meta.add_row(
        "Best strategy",
        f"{result.best_strategy} ({result.best_strategy_sample_size} cases)"
        if result.best_strategy
        else "-",
    )
    meta.add_row(
        "Avg. hours to outcome",
        f"{result.avg_hours_to_resolution:.1f}"
        if result.avg_hours_to_resolution is not None
        else "-",
    )
    console.print(meta)


@app.command()
def stats(
    user: str = typer.Option(..., "--user", "-u", help="Business owner id"),
    agent: str = typer.Option(..., "--agent", "-a", help="Agent type"),
) -> None:
    """Show learning statistics for an agent."""
    agent_type = _parse_agent_type(agent)

    async def _stats(engine):
        return await engine.learning.get_learning_stats(user, agent_type)

    result = _run(_stats)
    table = Table(title=f"Learning: {agent_type.value}", show_header=False, show_lines=True)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for field, value in result.model_dump(exclude={"top_patterns"}).items():
        if isinstance(value, float):
            value = f"{value:.2f}"
        elif isinstance(value, dict):
            value = ", ".join(f"{k}: {v}" for k, v in value.items()) or "-"
        table.add_row(field.replace("_", " ").capitalize(), str(value))
    console.print(table)


# ── Agents ───────────────────────────────────────────────────────


@agents_app.command("show")
def agents_show(
    agent: str = typer.Argument(..., help="Agent type"),
    user: str = typer.Option(..., "--user", "-u", help="Business owner id"),
) -> None:
    """Show an agent's config and action rules."""
    agent_type = _parse_agent_type(agent)

    async def _get(engine):
        return await engine.configs.get_config(user, agent_type)

    config = _run(_get)
    meta = Table(title=f"Agent: {agent_type.value}", show_header=False, show_lines=True)
    meta.add_column("Field", style="bold")
    meta.add_column("Value")
    meta.add_row("Active", "yes" if config.is_active else "no")
    meta.add_row("Policy", config.confidence_policy.value)
    meta.add_row("Template", config.strategy_template.value)
    meta.add_row(
        "Send hours",
        f"{config.limits.send_hour_start}:00-{config.limits.send_hour_end}:00 "
        f"{config.limits.timezone}",
    )
    meta.add_row("Max actions/day", str(config.limits.max_actions_day))
    console.print(meta)

    rules = Table(title="Action rules")
    rules.add_column("Action type", style="cyan")
    rules.add_column("Needs approval")
    rules.add_column("Max auto amount", justify="right")
    for rule in config.rules:
        rules.add_row(
            rule.action_type,
            "yes" if rule.requires_approval else "no",
            f"{rule.max_auto_amount:g}" if rule.max_auto_amount is not None else "-",
        )
    console.print(rules)


@agents_app.command("set")
def agents_set(
    agent: str = typer.Argument(..., help="Agent type"),
    user: str = typer.Option(..., "--user", "-u", help="Business owner id"),
    active: bool = typer.Option(None, "--active/--inactive", help="Turn the agent on or off"),
    policy: str = typer.Option(None, "--policy", help="review_all, auto_with_copy, full_auto"),
    template: str = typer.Option(None, "--template", help="Strategy template"),
    notify: str = typer.Option(None, "--notify", help="Owner notification email"),
) -> None:
    """Change an agent's config."""
    agent_type = _parse_agent_type(agent)
    updates: dict = {}
    try:
        if active is not None:
            updates["is_active"] = active
        if policy:
            updates["confidence_policy"] = ConfidencePolicy(policy)
        if template:
            updates["strategy_template"] = StrategyTemplate(template)
    except ValueError as e:
        console.print(f"[red]Invalid value:[/red] {e}")
        raise typer.Exit(1) from None
    if notify:
        updates["notification_email"] = notify

    async def _set(engine):
        config = await engine.configs.get_config(user, agent_type)
        config = config.model_copy(update=updates)
        await engine.configs.save_config(config)
        return config

    config = _run(_set)
    state = "active" if config.is_active else "inactive"
    console.print(
        f"[green]Saved:[/green] {agent_type.value} agent is {state}, "
        f"policy {config.confidence_policy.value}"
    )


# ── Subscribers ──────────────────────────────────────────────────


@subscribers_app.command("add")
def subscribers_add(
    subscriber_id: str = typer.Argument(..., help="Subscriber id"),
    user: str = typer.Option(..., "--user", "-u", help="Business owner id"),
    email: str = typer.Option(..., "--email", help="Subscriber email"),
    name: str = typer.Option(None, "--name", help="Display name"),
    plan: str = typer.Option(None, "--plan", help="Plan name"),
    mrr: int = typer.Option(0, "--mrr", help="Monthly revenue in cents"),
    since: str = typer.Option(None, "--since", help="Subscription start (ISO date)"),
) -> None:
    """Add or update a subscriber."""
    subscribed_at = None
    if since:
        try:
            subscribed_at = datetime.fromisoformat(since)
        except ValueError:
            console.print(f"[red]Invalid date:[/red] {since}")
            raise typer.Exit(1) from None
        if subscribed_at.tzinfo is None:
            subscribed_at = subscribed_at.replace(tzinfo=UTC)

    async def _add(engine):
        await engine.subscribers.upsert_subscriber(
            user,
            subscriber_id,
            email=email,
            name=name,
            plan=plan,
            mrr=mrr,
            subscribed_at=subscribed_at,
        )

    _run(_add)
    console.print(f"[green]Saved subscriber:[/green] {subscriber_id}")
