"""CLI entrypoint for agent-cubicle."""

import logging
from collections.abc import Callable

import rich_click as click

from agent_cubicle import __version__
from agent_cubicle.orchestrator.controllers import (
    EnqueueCommand,
    InspectTaskCommand,
    ListTasksCommand,
    NotificationsCommand,
    OrchestratorCliController,
    ProvidersCommand,
    ReadNotificationCommand,
    RespondCommand,
    ServeCommand,
    StatsCommand,
)
from agent_cubicle.orchestrator.errors import OrchestratorError
from agent_cubicle.store.base import StoreUnavailableError

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

store_url_option = click.option(
    "--store-url",
    default=None,
    help="Durable store URL (memory://, sqlite:///path, redis://host). "
    "Defaults to AGENT_CUBICLE_STORE_URL.",
)
user_option = click.option("--user-id", required=True, help="Owning user id.")


@click.group()
@click.version_option(version=__version__, prog_name="agent-cubicle")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
def agent_cubicle(verbose: bool) -> None:
    """Agent instance and task queue orchestrator CLI."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_cubicle.command("providers")
@store_url_option
def providers(store_url: str | None) -> None:
    """List configured agent providers."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.providers(ProvidersCommand(store_url=store_url)))


@agent_cubicle.command("serve")
@store_url_option
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after admitting this many tasks (default: run until SIGINT/SIGTERM).",
)
def serve(store_url: str | None, max_tasks: int | None) -> None:
    """Run the queue consumer and own agent processes until signalled."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.serve(
            ServeCommand(store_url=store_url, max_tasks=max_tasks),
        ),
    )


@agent_cubicle.command("enqueue")
@store_url_option
@user_option
@click.option("--session-id", default="cli", show_default=True, help="Caller session id.")
@click.option("--provider", default=None, help="Agent provider (default: configured default).")
@click.argument("command")
def enqueue(
    store_url: str | None,
    user_id: str,
    session_id: str,
    provider: str | None,
    command: str,
) -> None:
    """Queue COMMAND for the user's agent."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.enqueue(
            EnqueueCommand(
                store_url=store_url,
                user_id=user_id,
                session_id=session_id,
                command=command,
                provider=provider.lower() if provider is not None else None,
            ),
        ),
    )


@agent_cubicle.command("task")
@store_url_option
@click.option("--task-id", required=True, help="Task id.")
def task(store_url: str | None, task_id: str) -> None:
    """Show one task with its message log."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.inspect_task(
            InspectTaskCommand(store_url=store_url, task_id=task_id),
        ),
    )


@agent_cubicle.command("tasks")
@store_url_option
@user_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=10,
    show_default=True,
    help="Max tasks to show.",
)
def tasks(store_url: str | None, user_id: str, limit: int) -> None:
    """List the user's most recent tasks."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.list_tasks(
            ListTasksCommand(store_url=store_url, user_id=user_id, limit=limit),
        ),
    )


@agent_cubicle.command("cancel")
@store_url_option
@click.option("--task-id", required=True, help="Task id.")
def cancel(store_url: str | None, task_id: str) -> None:
    """Cancel a queued or processing task."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.cancel_task(
            InspectTaskCommand(store_url=store_url, task_id=task_id),
        ),
    )


@agent_cubicle.command("stats")
@store_url_option
def stats(store_url: str | None) -> None:
    """Show queue depth and task outcome counts."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.stats(StatsCommand(store_url=store_url)))


@agent_cubicle.command("notifications")
@store_url_option
@user_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=10,
    show_default=True,
    help="Max notifications to show.",
)
def notifications(store_url: str | None, user_id: str, limit: int) -> None:
    """List unexpired notifications for the user, newest first."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.notifications(
            NotificationsCommand(store_url=store_url, user_id=user_id, limit=limit),
        ),
    )


@agent_cubicle.command("respond")
@store_url_option
@user_option
@click.option("--notification-id", required=True, help="Notification id.")
@click.argument("response")
def respond(store_url: str | None, user_id: str, notification_id: str, response: str) -> None:
    """Answer a waiting agent with RESPONSE."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.respond(
            RespondCommand(
                store_url=store_url,
                notification_id=notification_id,
                user_id=user_id,
                response=response,
            ),
        ),
    )


@agent_cubicle.command("read")
@store_url_option
@user_option
@click.option("--notification-id", required=True, help="Notification id.")
def read(store_url: str | None, user_id: str, notification_id: str) -> None:
    """Mark a notification as read."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.mark_as_read(
            ReadNotificationCommand(
                store_url=store_url,
                notification_id=notification_id,
                user_id=user_id,
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except OrchestratorError as error:
        raise click.ClickException(f"{error} [{error.code}]") from error
    except (StoreUnavailableError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_cubicle()
