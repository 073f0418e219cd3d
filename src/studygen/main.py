"""CLI entrypoint for studygen."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from studygen import __version__
from studygen.config import Settings
from studygen.generator.base import GenerationError
from studygen.jobs.controllers import (
    ListEventsCommand,
    ListRequestsCommand,
    RegisterUserCommand,
    RequestRefCommand,
    ShowUserCommand,
    StudyCliController,
    SubmitRequestCommand,
    WorkerRunCommand,
)
from studygen.jobs.models import StudyRequestStatus, WorkEventStatus
from studygen.jobs.services import StudyServiceError

click.rich_click.USE_MARKDOWN = True
STUDY_CONTROLLER = StudyCliController()

_DB_PATH_HELP = "SQLite DB path."


@click.group()
@click.version_option(version=__version__, prog_name="studygen")
def studygen() -> None:
    """Study material generation CLI."""

    logging.basicConfig(
        level=Settings.from_env().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@studygen.group()
def users() -> None:
    """Account commands."""


@users.command("register")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--name", default="", help="Display name; defaults to the email local part.")
@click.option("--email", required=True, help="Account email.")
@click.option("--external-id", required=True, help="Identity provider user id.")
def users_register(db_path: Path | None, name: str, email: str, external_id: str) -> None:
    """Queue a `user.create` event for the provisioning worker."""

    with _cli_errors():
        _emit_lines(
            STUDY_CONTROLLER.register_user(
                RegisterUserCommand(
                    db_path=db_path,
                    name=name,
                    email=email,
                    external_id=external_id,
                ),
            ),
        )


@users.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--external-id", required=True, help="Identity provider user id.")
def users_show(db_path: Path | None, external_id: str) -> None:
    """Show credits, subscription, and the credit ledger of one account."""

    _emit_lines(
        STUDY_CONTROLLER.show_user(ShowUserCommand(db_path=db_path, external_id=external_id)),
    )


@studygen.group()
def requests() -> None:
    """Study request commands."""


def _order_options(func):  # noqa: ANN001, ANN202
    options = [
        click.option(
            "--db-path",
            type=click.Path(path_type=Path),
            default=None,
            help=_DB_PATH_HELP,
        ),
        click.option("--external-id", required=True, help="Requesting user's external id."),
        click.option("--topic", required=True, help="Study topic."),
        click.option(
            "--difficulty",
            default="Easy",
            show_default=True,
            help="Easy, Medium, or Hard; anything else is treated as Medium.",
        ),
        click.option("--purpose", default="practice", show_default=True, help="Study purpose."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@requests.command("submit")
@_order_options
def requests_submit(
    db_path: Path | None,
    external_id: str,
    topic: str,
    difficulty: str,
    purpose: str,
) -> None:
    """Queue a study request; the worker generates it in the background."""

    with _cli_errors():
        _emit_lines(
            STUDY_CONTROLLER.submit_request(
                SubmitRequestCommand(
                    db_path=db_path,
                    external_id=external_id,
                    topic=topic,
                    difficulty=difficulty,
                    purpose=purpose,
                ),
            ),
        )


@requests.command("generate")
@_order_options
def requests_generate(
    db_path: Path | None,
    external_id: str,
    topic: str,
    difficulty: str,
    purpose: str,
) -> None:
    """Generate study material synchronously, without the queue."""

    with _cli_errors():
        _emit_lines(
            STUDY_CONTROLLER.generate_now(
                SubmitRequestCommand(
                    db_path=db_path,
                    external_id=external_id,
                    topic=topic,
                    difficulty=difficulty,
                    purpose=purpose,
                ),
            ),
        )


@requests.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("request_id")
def requests_show(db_path: Path | None, request_id: str) -> None:
    """Show one request and its generated material."""

    _emit_lines(
        STUDY_CONTROLLER.show_request(RequestRefCommand(db_path=db_path, request_id=request_id)),
    )


@requests.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in StudyRequestStatus]),
    default=None,
    help="Only show requests in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of requests to print.",
)
def requests_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent requests."""

    _emit_lines(
        STUDY_CONTROLLER.list_requests(
            ListRequestsCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@requests.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("request_id")
def requests_retry(db_path: Path | None, request_id: str) -> None:
    """Re-queue a failed request (or re-emit the event of a queued one)."""

    with _cli_errors():
        _emit_lines(
            STUDY_CONTROLLER.retry_request(
                RequestRefCommand(db_path=db_path, request_id=request_id),
            ),
        )


@studygen.group()
def worker() -> None:
    """Event worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--once", is_flag=True, default=False, help="Deliver at most one event and exit.")
@click.option(
    "--max-events",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after delivering this many events.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit after this many consecutive empty polls.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_events: int | None,
    max_idle_polls: int,
) -> None:
    """Deliver queued `study.request` and `user.create` events."""

    with _cli_errors():
        _emit_lines(
            STUDY_CONTROLLER.run_worker(
                WorkerRunCommand(
                    db_path=db_path,
                    once=once,
                    max_events=max_events,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        )


@studygen.group()
def events() -> None:
    """Work event inspection commands."""


@events.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in WorkEventStatus]),
    default=None,
    help="Only show events in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of events to print.",
)
def events_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent work events with delivery counts."""

    _emit_lines(
        STUDY_CONTROLLER.list_events(
            ListEventsCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@studygen.group()
def generator() -> None:
    """Generation backend commands."""


@generator.command("ping")
def generator_ping() -> None:
    """Probe candidate Gemini models with a trivial prompt."""

    with _cli_errors():
        result = STUDY_CONTROLLER.ping_generator()
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Generator ping failed.")


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (StudyServiceError, GenerationError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":
    studygen()
