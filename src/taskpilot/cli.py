from __future__ import annotations

from datetime import date, timedelta

import typer
from rich import print
from sqlmodel import Session

from taskpilot.busy_service import Interval
from taskpilot.config import EngineConfig, get_working_hours, load_policy, update_working_hours
from taskpilot.connectors.google_calendar import (
    CalendarGateway,
    CalendarGatewayError,
    GoogleCalendarGateway,
    OAuthTokenProvider,
)
from taskpilot.db import DEFAULT_OWNER_ID, get_engine, initialize_database
from taskpilot.ingest.classifier import StaticClassifier
from taskpilot.ingest.dedup import IngestionDeduplicator
from taskpilot.ingest.pipeline import IngestionOutcome, TaskIngestionPipeline
from taskpilot.ingest.types import ClassifiedMessage, MessageKey
from taskpilot.models import Task, TaskPriority
from taskpilot.orchestrator import ScheduleOutcome, ScheduleStatus, SchedulingOrchestrator
from taskpilot.policy import WorkingHoursPolicy
from taskpilot.repository import SqlConnectionStore, SqlTaskRepository, TaskNotFoundError
from taskpilot.sync_runner import run_reconcile_sweep
from taskpilot.task_service import build_task
from taskpilot.timeutil import db_to_dt, parse_date_ymd

app = typer.Typer(
    name="taskpilot",
    help="Task scheduling and calendar sync.",
    no_args_is_help=True,
)
hours_app = typer.Typer(help="Manage working hours.")
calendar_app = typer.Typer(help="Manage the calendar connection.")
task_app = typer.Typer(help="Manage and schedule tasks.")
ingest_app = typer.Typer(help="Ingest chat messages as tasks.")
app.add_typer(hours_app, name="hours")
app.add_typer(calendar_app, name="calendar")
app.add_typer(task_app, name="task")
app.add_typer(ingest_app, name="ingest")

OWNER_OPTION = typer.Option(DEFAULT_OWNER_ID, "--owner", help="Owner (user) id.")


def _parse_date(value: str, option: str) -> date:
    try:
        return parse_date_ymd(value)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid {option} format. Expected YYYY-MM-DD.") from exc


def _parse_priority(value: str) -> TaskPriority:
    try:
        return TaskPriority(value.strip().lower())
    except ValueError:
        raise typer.BadParameter(f"Invalid --priority: {value}. Must be high, medium, or low.")


def _build_gateway(connections: SqlConnectionStore, config: EngineConfig) -> CalendarGateway:
    tokens = OAuthTokenProvider.from_env(connections, timeout_sec=config.provider_timeout_sec)
    return GoogleCalendarGateway(tokens=tokens, connections=connections, timeout_sec=config.provider_timeout_sec)


def _build_orchestrator(engine, config: EngineConfig) -> SchedulingOrchestrator:
    connections = SqlConnectionStore(engine)
    try:
        gateway = _build_gateway(connections, config)
    except CalendarGatewayError as exc:
        print(f"[red]Calendar is unavailable:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    def policy_for(owner_id: int) -> WorkingHoursPolicy:
        with Session(engine) as session:
            return load_policy(session, owner_id)

    return SchedulingOrchestrator(
        repository=SqlTaskRepository(engine),
        gateway=gateway,
        connections=connections,
        policy_for=policy_for,
        config=config,
    )


def _format_slot(task: Task, policy: WorkingHoursPolicy) -> str:
    if task.scheduled_start is None or task.scheduled_end is None:
        return "-"
    start = db_to_dt(task.scheduled_start).astimezone(policy.timezone)
    end = db_to_dt(task.scheduled_end).astimezone(policy.timezone)
    return f"{start:%Y-%m-%d %H:%M}-{end:%H:%M}"


def _format_blocking(item: Interval, policy: WorkingHoursPolicy) -> str:
    start = item.start.astimezone(policy.timezone)
    end = item.end.astimezone(policy.timezone)
    source = f"task_id={item.task_id}" if item.task_id is not None else "calendar"
    return f"{source} slot={start:%Y-%m-%d %H:%M}-{end:%Y-%m-%d %H:%M} label=\"{item.label or '-'}\""


def _task_state(task: Task) -> str:
    if task.completed:
        return "completed"
    if task.scheduled_start is None:
        return "unscheduled"
    if task.calendar_event_id is None or task.sync_error is not None:
        return "unsynced"
    return "synced"


def _print_outcome(outcome: ScheduleOutcome, policy: WorkingHoursPolicy) -> None:
    task = outcome.task
    slot = _format_slot(task, policy)
    if outcome.status in (ScheduleStatus.SCHEDULED, ScheduleStatus.ALREADY_SCHEDULED):
        print(f"[green]Scheduled[/green] task_id={task.id} slot={slot} event_id={task.calendar_event_id}")
    elif outcome.status == ScheduleStatus.SYNC_DEFERRED:
        print(
            f"[yellow]Scheduled, calendar sync pending[/yellow] task_id={task.id} slot={slot} "
            "- reconnect calendar via 'taskpilot calendar connect'."
        )
    elif outcome.status == ScheduleStatus.SYNC_FAILED:
        print(
            f"[yellow]Scheduled, calendar sync failed[/yellow] task_id={task.id} slot={slot} "
            f"kind={outcome.error_kind} - retry with 'taskpilot reconcile'."
        )
    else:
        print(f"[red]No slot available[/red] task_id={task.id} reason={outcome.reason}")
        for item in outcome.blocking:
            print(f"  blocked_by {_format_blocking(item, policy)}")


def _print_ingestion(outcome: IngestionOutcome) -> None:
    duplicate = " (duplicate delivery)" if outcome.duplicate else ""
    typer.echo(f"status={outcome.status} task_id={outcome.task_id or '-'}{duplicate}")


@app.callback()
def root() -> None:
    """Taskpilot CLI entrypoint."""


@app.command()
def init() -> None:
    """Initialize DB, run migrations, and seed defaults."""
    db_path = initialize_database()
    print(f"[green]Initialized database:[/green] {db_path}")


@hours_app.command("show")
def hours_show(owner: int = OWNER_OPTION) -> None:
    """Print working hours as key=value."""
    with Session(get_engine(ensure_directory=True)) as session:
        row = get_working_hours(session, owner)

    typer.echo(f"active_days={row.active_days}")
    typer.echo(f"start_time={row.start_time}")
    typer.echo(f"end_time={row.end_time}")
    typer.echo(f"break_start={row.break_start or '-'}")
    typer.echo(f"break_end={row.break_end or '-'}")
    typer.echo(f"timezone={row.timezone}")


@hours_app.command("set")
def hours_set(key: str, value: str, owner: int = OWNER_OPTION) -> None:
    """Validate and update one working-hours field ('-' clears a break bound)."""
    with Session(get_engine(ensure_directory=True)) as session:
        try:
            row = update_working_hours(session, owner, {key: value})
        except ValueError as exc:
            raise typer.BadParameter(str(exc)) from exc
        stored = getattr(row, key)

    typer.echo(f"{key}={stored if stored is not None else '-'}")


@calendar_app.command("connect")
def calendar_connect(
    refresh_token: str = typer.Option(..., "--refresh-token", prompt=True, hide_input=True),
    calendar_id: str = typer.Option("primary", "--calendar-id", help="Target calendar id."),
    owner: int = OWNER_OPTION,
) -> None:
    """Store an OAuth refresh token and clear the reauthorization flag."""
    connections = SqlConnectionStore(get_engine(ensure_directory=True))
    try:
        connection = connections.connect(owner, refresh_token=refresh_token, calendar_id=calendar_id)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    print(f"[green]Calendar connected.[/green] owner={owner} calendar_id={connection.calendar_id}")


@calendar_app.command("status")
def calendar_status(owner: int = OWNER_OPTION) -> None:
    """Show whether the owner's calendar connection is usable."""
    engine = get_engine(ensure_directory=True)
    connection = SqlConnectionStore(engine).get(owner)
    pending = len(SqlTaskRepository(engine).list_unsynced(owner))

    if connection is None or connection.refresh_token is None:
        state = "not_connected"
    elif connection.needs_reauth:
        state = "needs_reauth"
    else:
        state = "connected"
    calendar_id = connection.calendar_id if connection is not None else "-"
    typer.echo(f"owner={owner} state={state} calendar_id={calendar_id} unsynced_tasks={pending}")


@task_app.command("add")
def task_add(
    title: str = typer.Argument(..., help="Task title."),
    minutes: int = typer.Option(..., "--minutes", help="Required duration in minutes (>0)."),
    priority: str = typer.Option("medium", "--priority", help="Priority: high, medium, or low."),
    due: str | None = typer.Option(None, "--due", help="Due date YYYY-MM-DD."),
    due_time: str | None = typer.Option(None, "--due-time", help="Due time HH:MM (needs --due)."),
    description: str | None = typer.Option(None, "--description", help="Task description."),
    schedule: bool = typer.Option(True, "--schedule/--no-schedule", help="Schedule right away."),
    owner: int = OWNER_OPTION,
) -> None:
    """Create a task and, by default, schedule it."""
    parsed_priority = _parse_priority(priority)
    due_date = _parse_date(due, "--due") if due is not None else None

    try:
        task = build_task(
            owner_id=owner,
            title=title,
            required_min=minutes,
            priority=parsed_priority,
            description=description,
            due_date=due_date,
            due_time=due_time,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    engine = get_engine(ensure_directory=True)
    orchestrator = _build_orchestrator(engine, EngineConfig.from_env()) if schedule else None
    created = SqlTaskRepository(engine).create(task)
    typer.echo(f"task_id={created.id} title=\"{created.title}\"")

    if orchestrator is None:
        return
    policy = orchestrator.policy_for(owner)
    outcome = orchestrator.schedule_task(created, policy)
    _print_outcome(outcome, policy)
    if outcome.status == ScheduleStatus.EXHAUSTED:
        raise typer.Exit(code=1)


@task_app.command("list")
def task_list(
    unsynced: bool = typer.Option(False, "--unsynced", help="Only scheduled tasks pending calendar sync."),
    owner: int = OWNER_OPTION,
) -> None:
    """List tasks with their schedule and sync state."""
    engine = get_engine(ensure_directory=True)
    with Session(engine) as session:
        policy = load_policy(session, owner)

    repository = SqlTaskRepository(engine)
    if unsynced:
        tasks = repository.list_unsynced(owner)
    else:
        tasks = repository.list_for_owner(owner)

    for task in tasks:
        reason = f" reason={task.unscheduled_reason}" if task.unscheduled_reason and task.scheduled_start is None else ""
        typer.echo(
            f"{task.id} [{task.priority}] {task.title} ({task.required_min}m) "
            f"state={_task_state(task)} slot={_format_slot(task, policy)}{reason}"
        )


@task_app.command("complete")
def task_complete(task_id: int = typer.Argument(..., help="Task ID.")) -> None:
    """Mark a task completed; its calendar event is kept."""
    try:
        task = SqlTaskRepository(get_engine(ensure_directory=True)).mark_complete(task_id)
    except TaskNotFoundError as exc:
        raise typer.BadParameter(str(exc)) from exc

    typer.echo(f"task_id={task.id} completed=true")


@task_app.command("schedule")
def task_schedule(
    task_id: int = typer.Argument(..., help="Task ID."),
    reschedule: bool = typer.Option(False, "--reschedule", help="Move an already scheduled task."),
) -> None:
    """Find a slot for a task and sync it to the calendar."""
    engine = get_engine(ensure_directory=True)
    task = SqlTaskRepository(engine).get(task_id)
    if task is None:
        raise typer.BadParameter(f"Task {task_id} not found.")

    orchestrator = _build_orchestrator(engine, EngineConfig.from_env())
    policy = orchestrator.policy_for(task.owner_id)
    try:
        if reschedule:
            outcome = orchestrator.reschedule_task(task_id, policy)
        else:
            outcome = orchestrator.schedule_task(task, policy)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    _print_outcome(outcome, policy)
    if outcome.status == ScheduleStatus.EXHAUSTED:
        raise typer.Exit(code=1)


@task_app.command("unschedule")
def task_unschedule(task_id: int = typer.Argument(..., help="Task ID.")) -> None:
    """Delete a task's calendar event and clear its slot."""
    engine = get_engine(ensure_directory=True)
    orchestrator = _build_orchestrator(engine, EngineConfig.from_env())
    try:
        task = orchestrator.unschedule_task(task_id)
    except TaskNotFoundError as exc:
        raise typer.BadParameter(str(exc)) from exc
    except CalendarGatewayError as exc:
        print(f"[red]Calendar event could not be deleted:[/red] {exc} kind={exc.kind}")
        raise typer.Exit(code=1) from exc

    typer.echo(f"task_id={task.id} unscheduled")


@ingest_app.command("message")
def ingest_message(
    message_id: str = typer.Option(..., "--message-id", help="Source message id."),
    channel: str = typer.Option(..., "--channel", help="Source channel id."),
    workspace: str = typer.Option(..., "--workspace", help="Workspace id."),
    text: str = typer.Option(..., "--text", help="Message text."),
    is_task: bool = typer.Option(True, "--task/--no-task", help="Classifier verdict for the message."),
    title: str | None = typer.Option(None, "--title", help="Task title (defaults to the first line)."),
    minutes: int | None = typer.Option(None, "--minutes", help="Estimated duration in minutes."),
    priority: str = typer.Option("medium", "--priority", help="Priority: high, medium, or low."),
    due: str | None = typer.Option(None, "--due", help="Due date YYYY-MM-DD."),
    due_time: str | None = typer.Option(None, "--due-time", help="Due time HH:MM (needs --due)."),
    owner: int = OWNER_OPTION,
) -> None:
    """Ingest one chat message that was already classified upstream."""
    classification = ClassifiedMessage(
        is_task=is_task,
        title=title or "",
        estimated_min=minutes or 0,
        priority=_parse_priority(priority),
        due_date=_parse_date(due, "--due") if due is not None else None,
        due_time=due_time,
    )

    engine = get_engine(ensure_directory=True)
    config = EngineConfig.from_env()
    orchestrator = _build_orchestrator(engine, config)
    pipeline = TaskIngestionPipeline(
        owner_id=owner,
        ledger=IngestionDeduplicator(engine, lease=_lease(config)),
        classifier=StaticClassifier(classification),
        repository=SqlTaskRepository(engine),
        orchestrator=orchestrator,
    )
    try:
        outcome = pipeline.ingest_message(message_id, channel, workspace, text)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    _print_ingestion(outcome)
    if outcome.schedule is not None:
        _print_outcome(outcome.schedule, orchestrator.policy_for(owner))


@ingest_app.command("decline")
def ingest_decline(
    message_id: str = typer.Option(..., "--message-id", help="Source message id."),
    channel: str = typer.Option(..., "--channel", help="Source channel id."),
    workspace: str = typer.Option(..., "--workspace", help="Workspace id."),
) -> None:
    """Record that the user dismissed the task suggested for a message."""
    try:
        key = MessageKey(source_message_id=message_id, source_channel_id=channel, workspace_id=workspace)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    config = EngineConfig.from_env()
    record = IngestionDeduplicator(get_engine(ensure_directory=True), lease=_lease(config)).record_decline(key)
    typer.echo(f"key={key} status={record.status.value}")


@ingest_app.command("purge")
def ingest_purge(
    retention_days: int | None = typer.Option(None, "--retention-days", help="Keep records newer than this."),
) -> None:
    """Delete finished ingestion records older than the retention window."""
    config = EngineConfig.from_env()
    days = retention_days if retention_days is not None else config.ledger_retention_days
    try:
        purged = IngestionDeduplicator(get_engine(ensure_directory=True)).purge_expired(retention_days=days)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    typer.echo(f"purged={purged} retention_days={days}")


@app.command("reconcile")
def reconcile(
    owner: int | None = typer.Option(None, "--owner", help="Only this owner (default: every owner with pending syncs)."),
    retries: int = typer.Option(1, "--retries", help="Retries per owner on unexpected errors."),
    backoff_sec: int = typer.Option(5, "--backoff-sec", help="Initial retry backoff in seconds."),
    parallel: bool = typer.Option(True, "--parallel/--sequential", help="Reconcile owners concurrently."),
    workers: int = typer.Option(4, "--workers", help="Owners reconciled at once with --parallel."),
) -> None:
    """Retry calendar sync for scheduled-but-unsynced tasks."""
    engine = get_engine(ensure_directory=True)
    orchestrator = _build_orchestrator(engine, EngineConfig.from_env())
    owner_ids = [owner] if owner is not None else SqlTaskRepository(engine).list_owners_with_unsynced()
    if not owner_ids:
        typer.echo("Nothing to reconcile.")
        return

    try:
        sweep = run_reconcile_sweep(
            owner_ids=owner_ids,
            reconcile=orchestrator.reconcile_deferred,
            retries=retries,
            backoff_sec=backoff_sec,
            parallel=parallel,
            max_workers=workers,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    for item in sweep.owners:
        if not item.success:
            print(f"[red]owner={item.owner_id} failed[/red] attempts={item.attempts} reason={item.reason}")
            continue
        print(
            f"owner={item.owner_id} synced={item.count(ScheduleStatus.SCHEDULED)} "
            f"deferred={item.count(ScheduleStatus.SYNC_DEFERRED)} "
            f"failed={item.count(ScheduleStatus.SYNC_FAILED)}"
        )
    if sweep.exit_code != 0:
        raise typer.Exit(code=sweep.exit_code)


def _lease(config: EngineConfig) -> timedelta:
    return timedelta(seconds=config.claim_lease_sec)


def main() -> None:
    app()
