#!/usr/bin/env python3
"""Catalyst CLI entrypoint."""

import argparse
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from catalyst.lib.config import default_state_dir, parse_mode
from catalyst.lib.errors import CatalystError, CorruptState
from catalyst.state.interactions import HumanResponse
from catalyst.state.store import StateStore
from catalyst.workflow.coordinator import Coordinator, EngineContext, StageOutcome

console = Console()

STATUS_STYLES = {
    "advanced": "green",
    "retrying": "yellow",
    "paused": "cyan",
    "complete": "bold green",
    "failed": "bold red",
    "error": "red",
}


def get_repo(args) -> Path:
    return Path(args.repo).resolve()


def get_state_dir(args) -> Path:
    if args.state_dir:
        return Path(args.state_dir)
    return default_state_dir(get_repo(args))


def get_coordinator(args) -> Coordinator:
    return Coordinator(EngineContext.create(get_repo(args), get_state_dir(args)))


def print_outcome(outcome: StageOutcome):
    style = STATUS_STYLES.get(outcome.status, "white")
    line = f"{outcome.feature_id}: [{style}]{outcome.status}[/{style}] in {outcome.stage.value}"
    if outcome.interaction_id:
        line += f" (waiting on {outcome.interaction_id})"
    console.print(line)
    if outcome.reason:
        console.print(f"  {outcome.reason}", markup=False)
    if outcome.interaction_id:
        console.print(f"\nAnswer with: catalyst resume {outcome.feature_id} --option <choice> [--text ...]")


def cmd_init(args):
    store = StateStore(get_state_dir(args))
    doc = store.init_project(args.name, parse_mode(args.mode), args.stack or [])
    console.print(f"Initialized {doc.project_name} ({doc.mode.value}) at {store.root}")
    return 0


def cmd_start(args):
    coordinator = get_coordinator(args)
    feature_id = coordinator.start(args.goal, args.title)
    console.print(f"Started {feature_id}")
    if args.run:
        print_outcome(coordinator.run_until_blocked(feature_id))
    return 0


def cmd_advance(args):
    print_outcome(get_coordinator(args).advance(args.id))
    return 0


def cmd_run(args):
    coordinator = get_coordinator(args)
    notifier = None
    if args.notify:
        from catalyst.notifications import start_notifier
        notifier = start_notifier(coordinator.bus)
    try:
        if len(args.ids) == 1:
            outcomes = {args.ids[0]: coordinator.run_until_blocked(args.ids[0])}
        else:
            outcomes = coordinator.run_features(args.ids)
    finally:
        if notifier:
            notifier.close()
    for outcome in outcomes.values():
        print_outcome(outcome)
    return 1 if any(o.status in ("failed", "error") for o in outcomes.values()) else 0


def cmd_resume(args):
    if not args.option and not args.text:
        print("ERROR: Provide --option and/or --text")
        return 2
    coordinator = get_coordinator(args)
    response = HumanResponse(selected_option=args.option, text=args.text, responded_by=args.by)
    print_outcome(coordinator.resume(args.id, response))
    return 0


def cmd_status(args):
    coordinator = get_coordinator(args)
    if args.id:
        return show_feature(coordinator, args.id)

    features = coordinator.list_features(include_archived=args.all)
    if not features:
        console.print("No features.")
        return 0
    table = Table(title="Features")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Stage")
    table.add_column("Rejections", justify="right")
    table.add_column("Pending")
    for feature in features:
        pending = coordinator.store.interactions.pending(feature.id)
        table.add_row(
            feature.id,
            feature.title,
            feature.stage + (" (archived)" if feature.archived else ""),
            str(feature.rejection_count),
            pending.id if pending else "",
        )
    console.print(table)
    return 0


def show_feature(coordinator: Coordinator, feature_id: str) -> int:
    feature = coordinator.status(feature_id)
    console.print(f"[bold]{feature.id}[/bold]: {feature.title}")
    console.print(f"  Stage:       {feature.stage}")
    console.print(f"  Rejections:  {feature.rejection_count}")
    console.print(f"  Retries:     {feature.retry_count}")
    console.print(f"  Merge tries: {feature.merge_attempts}")
    if feature.workspace_ref:
        handle = coordinator.workspaces.get(feature.id)
        where = f"{handle.branch} at {handle.path} ({handle.status})" if handle else "missing record"
        console.print(f"  Workspace:   {where}")
    if feature.last_snapshot:
        console.print(f"  Snapshot:    {feature.last_snapshot}")
    if feature.failure_reason:
        console.print(f"  Failure:     {feature.failure_reason}", markup=False)

    pending = coordinator.store.interactions.pending(feature.id)
    if pending:
        console.print(f"\n[cyan]{pending.id}[/cyan] ({pending.reason}): {pending.title}", highlight=False)
        if pending.description:
            console.print(f"  {pending.description}", markup=False)
        if pending.options:
            console.print(f"  Options: {', '.join(pending.options)}")

    if feature.history:
        console.print("\nHistory:")
        for entry in feature.history:
            console.print(f"  {entry['at']}  {entry['from']} -> {entry['to']} ({entry['trigger']})")
    return 0


def cmd_events(args):
    coordinator = get_coordinator(args)
    events = coordinator.bus.load_log(args.id)
    if not events:
        console.print(f"No events for {args.id}")
        return 0
    table = Table(title=f"Events for {args.id}")
    table.add_column("#", justify="right")
    table.add_column("Time")
    table.add_column("Kind")
    table.add_column("Agent")
    table.add_column("Unknown")
    for event in events[-args.limit:]:
        table.add_row(str(event.seq), event.timestamp, event.kind.value, event.agent, event.unknown_id or "")
    console.print(table)
    return 0


def cmd_abort(args):
    coordinator = get_coordinator(args)
    reason = f"Aborted by human: {args.reason}" if args.reason else "Aborted by human"
    print_outcome(coordinator.abort(args.id, reason))
    return 0


def cmd_snapshot(args):
    store = StateStore(get_state_dir(args))
    if args.reason:
        console.print(f"Created snapshot {store.snapshot(args.reason)}")
        return 0
    snapshots = store.snapshots.all()
    if not snapshots:
        console.print("No snapshots.")
        return 0
    table = Table(title="Snapshots")
    table.add_column("ID")
    table.add_column("Reason")
    table.add_column("Created")
    table.add_column("Files", justify="right")
    for info in snapshots:
        table.add_row(info.id, info.reason, info.created_at, str(len(info.files)))
    console.print(table)
    return 0


def cmd_rollback(args):
    store = StateStore(get_state_dir(args))
    safety = store.rollback(args.snapshot)
    console.print(f"Restored {args.snapshot} (previous state saved as {safety})")
    return 0


def cmd_recover(args):
    coordinator = get_coordinator(args)
    try:
        coordinator.recover()
    except CorruptState as e:
        if e.restored_from:
            console.print(f"[yellow]{e}[/yellow]")
            return 1
        raise
    console.print("State documents are healthy.")
    return 0


def cmd_config(args):
    store = StateStore(get_state_dir(args))
    if args.key is None:
        for key, value in sorted(store.config.settings().items()):
            print(f"{key}={value}")
        return 0
    if args.value is None:
        value = store.config.get(args.key)
        if value is None:
            print(f"ERROR: {args.key} is not set")
            return 1
        print(value)
        return 0
    store.config.set(args.key, args.value)
    return 0


def main():
    parser = argparse.ArgumentParser(prog='catalyst', description='Catalyst orchestration engine')
    parser.add_argument('--repo', '-r', default='.', help='Project repository (default: current directory)')
    parser.add_argument('--state-dir', help='State directory (default: <repo>/.catalyst or $CATALYST_STATE_DIR)')
    parser.add_argument('--verbose', '-v', action='count', default=0, help='More logging (-vv for debug)')

    subparsers = parser.add_subparsers(dest='command', required=True)

    # catalyst init
    p_init = subparsers.add_parser('init', help='Initialize project state')
    p_init.add_argument('name', help='Project name')
    p_init.add_argument('--mode', '-m', default='lab', help='SpeedRun, Lab or Fortress')
    p_init.add_argument('--stack', nargs='*', help='Technology stack entries')
    p_init.set_defaults(func=cmd_init)

    # catalyst start
    p_start = subparsers.add_parser('start', help='Start a feature from a goal')
    p_start.add_argument('goal', help='What to build')
    p_start.add_argument('--title', '-t', help='Short title (default: first line of goal)')
    p_start.add_argument('--run', action='store_true', help='Run until blocked after starting')
    p_start.set_defaults(func=cmd_start)

    # catalyst advance
    p_advance = subparsers.add_parser('advance', help='Run the current stage once')
    p_advance.add_argument('id', help='Feature ID')
    p_advance.set_defaults(func=cmd_advance)

    # catalyst run
    p_run = subparsers.add_parser('run', help='Run features until each pauses or finishes')
    p_run.add_argument('ids', nargs='+', help='Feature IDs')
    p_run.add_argument('--notify', action='store_true', help='Desktop notifications')
    p_run.set_defaults(func=cmd_run)

    # catalyst resume
    p_resume = subparsers.add_parser('resume', help='Answer the pending interaction and continue')
    p_resume.add_argument('id', help='Feature ID')
    p_resume.add_argument('--option', '-o', help='Selected option (e.g. Approve, Reject, Resolved)')
    p_resume.add_argument('--text', '-t', help='Free-text answer or feedback')
    p_resume.add_argument('--by', default='human', help='Who is answering')
    p_resume.set_defaults(func=cmd_resume)

    # catalyst status
    p_status = subparsers.add_parser('status', help='Show features or one feature')
    p_status.add_argument('id', nargs='?', help='Feature ID')
    p_status.add_argument('--all', '-a', action='store_true', help='Include archived features')
    p_status.set_defaults(func=cmd_status)

    # catalyst events
    p_events = subparsers.add_parser('events', help='Show the event log of a feature')
    p_events.add_argument('id', help='Feature ID')
    p_events.add_argument('--limit', '-n', type=int, default=50, help='Show the last N events')
    p_events.set_defaults(func=cmd_events)

    # catalyst abort
    p_abort = subparsers.add_parser('abort', help='Fail a feature and discard its workspace')
    p_abort.add_argument('id', help='Feature ID')
    p_abort.add_argument('--reason', help='Why')
    p_abort.set_defaults(func=cmd_abort)

    # catalyst snapshot
    p_snapshot = subparsers.add_parser('snapshot', help='List snapshots, or create one with a reason')
    p_snapshot.add_argument('reason', nargs='?', help='Reason for a new snapshot')
    p_snapshot.set_defaults(func=cmd_snapshot)

    # catalyst rollback
    p_rollback = subparsers.add_parser('rollback', help='Restore configuration and fragments from a snapshot')
    p_rollback.add_argument('snapshot', help='Snapshot ID')
    p_rollback.set_defaults(func=cmd_rollback)

    # catalyst recover
    p_recover = subparsers.add_parser('recover', help='Verify state documents, rolling back if corrupt')
    p_recover.set_defaults(func=cmd_recover)

    # catalyst config
    p_config = subparsers.add_parser('config', help='Show, get or set settings')
    p_config.add_argument('key', nargs='?', help='Setting key (e.g. MAX_REJECTIONS)')
    p_config.add_argument('value', nargs='?', help='New value')
    p_config.set_defaults(func=cmd_config)

    args = parser.parse_args()

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        return args.func(args)
    except CatalystError as e:
        print(f"ERROR: {e.reason()}")
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130


if __name__ == '__main__':
    sys.exit(main())
