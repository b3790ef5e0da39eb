"""Command-line entry points for the collection board.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into board operations, and printing the resulting
outcomes. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, MutableMapping, Sequence

from . import log, set_console_level
from .board import CollectionBoard, Outcome, OutcomeKind
from .constants import STAGE_ORDER, STAGE_TITLES, Role, Stage
from .core_logic import Actor, BoardError, PersistenceError
from .store import RuntimeContext, WorkbookCaseStore, ensure_schema_version, load_runtime_context


@dataclass(frozen=True)
class BoardSession:
    """Everything a command executor needs: workbook, board, and current user."""

    context: RuntimeContext
    board: CollectionBoard
    actor: Actor


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[BoardSession, argparse.Namespace], Awaitable[int]]


EXIT_CODES: Mapping[OutcomeKind, int] = {
    OutcomeKind.SUCCESS: 0,
    OutcomeKind.INFO: 0,
    OutcomeKind.IGNORED: 0,
    OutcomeKind.DENIED: 2,
    OutcomeKind.FAILED: 1,
}


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="collection-board",
        description="Command-line tools for the collection board workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument("--user", default=None, help="Name recorded in the audit trail.")
    parser.add_argument(
        "--role",
        choices=[member.value for member in Role],
        default=None,
        help="Role of the current user (defaults to config.ini).",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Show debug logging on stderr.")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only show warnings and errors on stderr.")
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as stage moves and edits."""
    specs = {
        "advance": register_advance_command(subparsers),
        "back": register_back_command(subparsers),
        "edit": register_edit_command(subparsers),
        "delete": register_delete_command(subparsers),
        "save-all": register_save_all_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "board": register_board_command(subparsers),
        "history": register_history_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_advance_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``advance``."""
    name = "advance"
    help_text = "Move a case forward to the next stage."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--case-id", required=True)
        parser.add_argument("--to", dest="target", required=True, choices=[stage.value for stage in Stage])
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_advance)


def register_back_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``back``."""
    name = "back"
    help_text = "Return a case to its previous stage."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--case-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_back)


def register_edit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit``."""
    name = "edit"
    help_text = "Edit the details of a case."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--case-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--amount", default=None)
        parser.add_argument("--due-date", default=None, help="Due date as DD/MM/YYYY.")
        parser.add_argument("--course", default=None)
        parser.add_argument("--email", default=None)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--notes", default=None)
        parser.add_argument("--payment-date", default=None, help="Payment date as DD/MM/YYYY.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit)


def register_delete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete``."""
    name = "delete"
    help_text = "Delete a case from the board."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--case-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete)


def register_save_all_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``save-all``."""
    name = "save-all"
    help_text = "Write every case on the board back to the workbook."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_save_all)


def register_board_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``board``."""
    name = "board"
    help_text = "Display the cases grouped by stage."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--month", default=None, help="Only show payments attributed to this period.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_board_report)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "Display the stage history of a case."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--case-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def resolve_actor(context: RuntimeContext, args: argparse.Namespace) -> Actor:
    """Determine the current user from CLI flags, falling back to config.ini."""
    name = getattr(args, "user", None) or context.settings.default_actor or None
    role_raw = getattr(args, "role", None) or context.settings.default_role
    try:
        role = Role(role_raw)
    except ValueError:
        log.warning("Unknown role '%s' in configuration; using '%s'", role_raw, Role.USER.value)
        role = Role.USER
    return Actor(name=name, role=role)


def open_session(context: RuntimeContext, args: argparse.Namespace) -> BoardSession:
    """Build the board and current user for a loaded workbook."""
    store = WorkbookCaseStore(context)
    return BoardSession(context=context, board=CollectionBoard(store), actor=resolve_actor(context, args))


async def dispatch_command(
    session: BoardSession,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return await spec.execute(session, args)


def translate_edit(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI args into the field changes of an edit.

    Raises:
        ValueError: If ``--amount`` is not a decimal number.
    """
    changes: Dict[str, Any] = {}
    for field in ("name", "due_date", "course", "email", "phone", "notes", "payment_date"):
        value = getattr(args, field, None)
        if value is not None:
            changes[field] = value
    if getattr(args, "amount", None) is not None:
        try:
            changes["amount"] = Decimal(args.amount.replace(",", "."))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {args.amount}") from exc
    return changes


def report_outcome(outcome: Outcome) -> int:
    """Print an outcome and return the matching exit code.

    Ignored requests were already logged by the board and print nothing.
    """
    if outcome.kind == OutcomeKind.IGNORED:
        return EXIT_CODES[outcome.kind]
    print(outcome.message)
    if outcome.description:
        print(f"  {outcome.description}")
    return EXIT_CODES[outcome.kind]


async def run_advance(session: BoardSession, args: argparse.Namespace) -> int:
    """Execute a forward stage move via the board."""
    outcome = await session.board.request_transition(args.case_id, Stage(args.target), session.actor)
    return report_outcome(outcome)


async def run_back(session: BoardSession, args: argparse.Namespace) -> int:
    """Execute a backward stage move via the board."""
    outcome = await session.board.return_to_previous(args.case_id, session.actor)
    return report_outcome(outcome)


async def run_edit(session: BoardSession, args: argparse.Namespace) -> int:
    """Apply field edits to a case via the board."""
    current = session.board.get(args.case_id)
    if current is None:
        print(f"Case not found: {args.case_id}")
        return 2
    changes = translate_edit(args)
    if not changes:
        print("Nothing to change")
        return 0
    outcome = await session.board.update_case(replace(current, **changes), session.actor)
    return report_outcome(outcome)


async def run_delete(session: BoardSession, args: argparse.Namespace) -> int:
    """Delete a case via the board."""
    outcome = await session.board.delete_case(args.case_id, session.actor)
    return report_outcome(outcome)


async def run_save_all(session: BoardSession, args: argparse.Namespace) -> int:
    """Persist the whole working set."""
    outcome = await session.board.save_all()
    return report_outcome(outcome)


async def run_board_report(session: BoardSession, args: argparse.Namespace) -> int:
    """Print every stage column with its cases and counts."""
    if getattr(args, "month", None):
        await session.board.apply_period(args.month)
    view = session.board.view()
    print(session.context.settings.board_name)
    for stage in STAGE_ORDER:
        cases = view.columns[stage]
        print(f"\n{STAGE_TITLES[stage]} ({len(cases)})")
        if not cases:
            print("  No cases at this stage")
        for case in cases:
            print(f"  {case.case_id}  {case.name}  {case.amount}  due {case.due_date}  {case.days_overdue} days late")
    if view.visible_count != view.total_count:
        print(f"\nShowing {view.visible_count} of {view.total_count} cases")
    return 0


async def run_history_report(session: BoardSession, args: argparse.Namespace) -> int:
    """Print the audit trail of a single case."""
    case = session.board.get(args.case_id)
    if case is None:
        print(f"Case not found: {args.case_id}")
        return 2
    print(f"{case.case_id}  {case.name}  [{STAGE_TITLES[case.stage]}]")
    for entry in case.status_history:
        print(
            f"  {entry.changed_at.isoformat()}  {entry.from_stage.value} -> {entry.to_stage.value}  by {entry.changed_by}"
        )
    if not case.status_history:
        print("  No stage changes recorded")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, PersistenceError):
        log.error("%s", error)
        return 1
    if isinstance(error, BoardError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


async def run_command(args: argparse.Namespace, command_table: Mapping[str, CommandSpec]) -> int:
    """Load the workbook, build the board, and run the selected command."""
    config_path = getattr(args, "config", None)
    context = load_runtime_context(Path(config_path) if config_path is not None else None)
    ensure_schema_version(context)
    session = open_session(context, args)
    await session.board.load()
    return await dispatch_command(session, args, command_table)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    if args.verbose:
        set_console_level(logging.DEBUG)
    elif args.quiet:
        set_console_level(logging.WARNING)
    try:
        return asyncio.run(run_command(args, command_table))
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
