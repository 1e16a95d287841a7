from __future__ import annotations

import argparse
import logging

from .config import load_runtime_config
from .errors import ConfigError
from .models import GENERATION_MODES
from .queue import TaskQueue, build_task_queue
from .seed import import_seed, load_seed_file
from .services.deletion import delete_task_with_cascade
from .storage import cancel_task, get_task, init_db, list_tasks
from .utils import configure_logging, log_event, parse_task_date


def _setup_logging() -> logging.Logger:
    return configure_logging("aperture")


def _build_queue(logger: logging.Logger) -> TaskQueue | None:
    conn = init_db()
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None
    finally:
        conn.close()
    return build_task_queue(config)


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    try:
        load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "db_migrated")
    return 0


def _cmd_seed_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        data = load_seed_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "seed_import_error", path=args.path, error=str(exc))
        return 1
    conn = init_db()
    try:
        import_seed(conn, data)
    except (ConfigError, ValueError, KeyError) as exc:
        log_event(logger, logging.ERROR, "seed_import_error", path=args.path, error=str(exc))
        return 1
    finally:
        conn.close()
    return 0


def _cmd_tasks_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        parse_task_date(args.date)
    except ValueError:
        log_event(logger, logging.ERROR, "invalid_date", date=args.date)
        return 1
    queue = _build_queue(logger)
    if queue is None:
        return 1
    try:
        created = queue.enqueue(
            args.date,
            trigger_source=args.trigger,
            provider_override=args.llm,
            mode=args.mode,
            word_count=args.word_count,
        )
    except ValueError as exc:
        log_event(logger, logging.ERROR, "enqueue_failed", date=args.date, error=str(exc))
        return 1
    finally:
        queue.close()
    log_event(logger, logging.INFO, "tasks_enqueued", count=len(created))
    return 0


def _cmd_tasks_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    try:
        tasks = list_tasks(conn, limit=args.limit, task_date=args.date)
    finally:
        conn.close()
    for task in tasks:
        log_event(
            logger,
            logging.INFO,
            "task",
            task_id=task.id,
            task_date=task.task_date,
            mode=task.mode,
            status=task.status,
            version=task.version,
            checkpoint=(task.context or {}).get("stage"),
            error=task.error_message,
        )
    return 0


def _cmd_tasks_cancel(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    try:
        canceled = cancel_task(conn, args.task_id)
        task = None if canceled else get_task(conn, args.task_id)
    finally:
        conn.close()
    if not canceled:
        status = task.status if task else "missing"
        log_event(logger, logging.ERROR, "task_cancel_failed", task_id=args.task_id, status=status)
        return 1
    log_event(logger, logging.INFO, "task_canceled", task_id=args.task_id)
    return 0


def _cmd_tasks_delete(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    try:
        if get_task(conn, args.task_id) is None:
            log_event(logger, logging.ERROR, "task_not_found", task_id=args.task_id)
            return 1
        delete_task_with_cascade(conn, args.task_id)
    finally:
        conn.close()
    return 0


def _cmd_tasks_process(args: argparse.Namespace, logger: logging.Logger) -> int:
    queue = _build_queue(logger)
    if queue is None:
        return 1
    try:
        executed = queue.process_queue()
    finally:
        queue.close()
    log_event(logger, logging.INFO, "queue_processed", executed=executed)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aperture")
    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    seed_parser = subparsers.add_parser("seed", help="Reference data")
    seed_subparsers = seed_parser.add_subparsers(dest="seed_command", required=True)
    seed_import = seed_subparsers.add_parser("import", help="Import words, topics, sources and profiles from YAML")
    seed_import.add_argument("path", help="YAML seed file")
    seed_import.set_defaults(func=_cmd_seed_import)

    tasks_parser = subparsers.add_parser("tasks", help="Generation task queue")
    tasks_subparsers = tasks_parser.add_subparsers(dest="tasks_command", required=True)

    tasks_enqueue = tasks_subparsers.add_parser("enqueue", help="Enqueue generation tasks for a date")
    tasks_enqueue.add_argument("--date", required=True, help="Task date (YYYY-MM-DD)")
    tasks_enqueue.add_argument("--mode", choices=GENERATION_MODES, default="rss")
    tasks_enqueue.add_argument("--llm", default=None, help="Provider override (gemini, openai, claude)")
    tasks_enqueue.add_argument("--word-count", type=int, default=None, help="Impression candidate words")
    tasks_enqueue.add_argument("--trigger", choices=["manual", "cron"], default="manual")
    tasks_enqueue.set_defaults(func=_cmd_tasks_enqueue)

    tasks_list = tasks_subparsers.add_parser("list", help="List recent tasks")
    tasks_list.add_argument("--limit", type=int, default=20, help="Number of tasks to show")
    tasks_list.add_argument("--date", default=None, help="Only tasks for this date")
    tasks_list.set_defaults(func=_cmd_tasks_list)

    tasks_cancel = tasks_subparsers.add_parser("cancel", help="Cancel a queued task")
    tasks_cancel.add_argument("task_id")
    tasks_cancel.set_defaults(func=_cmd_tasks_cancel)

    tasks_delete = tasks_subparsers.add_parser("delete", help="Delete a task and its articles")
    tasks_delete.add_argument("task_id")
    tasks_delete.set_defaults(func=_cmd_tasks_delete)

    tasks_process = tasks_subparsers.add_parser("process", help="Drain the queue once")
    tasks_process.set_defaults(func=_cmd_tasks_process)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
