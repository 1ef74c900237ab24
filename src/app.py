"""Application entry point for the hintbot tutoring bot."""

from __future__ import annotations

import argparse
import logging
import os
from datetime import timedelta
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
from telethon import events

import settings
from adapters.llm_proxy_client import LLMProxyClient
from adapters.sqlite_storage import SQLiteStorage
from adapters.telegram_mapper import build_album_event, build_callback_event, build_message_event
from adapters.telegram_messenger import TelegramMessenger
from client import bot_token, build_client
from core.cache import PipelineCache
from core.contracts import ParseItem, ParseTask, PedKeys, VisualFact
from core.orchestrator import SessionOrchestrator
from core.routing import RoutingTrace, build_routing_context, format_routing_trace, select_template
from core.sessions import SessionStore
from core.stages import StageRunner
from core.telemetry import Telemetry
from core.templates import TemplateRegistry

NAME = "HINTBOT"
FONT = "tarty-1"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/hintbot.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _load_registry() -> TemplateRegistry:
    return TemplateRegistry.from_directory(settings.TEMPLATES_DIR, subject=settings.TEMPLATES_SUBJECT)


def _run() -> None:
    _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)

    logger.info("Starting hintbot")

    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    removed = storage.purge_older_than(timedelta(days=settings.PURGE_AFTER_DAYS))
    logger.info("Cache cleanup removed %s stale parses and hints", removed)

    # The catalog is read once; routing only ever sees this instance.
    registry = _load_registry()
    logger.info("%s templates are loaded", len(registry))

    llm = LLMProxyClient(
        settings.LLM_SERVER_URL,
        timeout_seconds=settings.LLM_TIMEOUT_SECONDS,
        connect_timeout_seconds=settings.LLM_CONNECT_TIMEOUT_SECONDS,
    )
    logger.info("LLM proxy at %s, default engine %s", settings.LLM_SERVER_URL, settings.DEFAULT_ENGINE)

    client = build_client()
    telemetry = Telemetry(storage)
    stages = StageRunner(
        llm=llm,
        cache=PipelineCache(storage),
        registry=registry,
        telemetry=telemetry,
        pipeline=settings.PIPELINE,
        cache_config=settings.CACHE,
    )
    orchestrator = SessionOrchestrator(
        sessions=SessionStore(storage),
        stages=stages,
        messenger=TelegramMessenger(client),
        telemetry=telemetry,
        storage=storage,
        config=settings.PIPELINE,
        engines=settings.ENGINES,
        admin_chat_ids=settings.ADMIN_CHAT_IDS,
    )

    # Album pages arrive as separate messages; the Album handler below
    # collapses them, so grouped messages are skipped here.
    @client.on(events.NewMessage(incoming=True))
    async def on_message(event) -> None:
        if event.message.grouped_id or not event.is_private:
            return
        try:
            async with client.action(event.chat_id, "typing"):
                inbound = await build_message_event(event.message)
                await orchestrator.handle(inbound)
        except Exception:
            logger.exception("Error while processing message")

    @client.on(events.Album())
    async def on_album(event) -> None:
        if not event.is_private:
            return
        try:
            async with client.action(event.chat_id, "typing"):
                inbound = await build_album_event(event.messages)
                if inbound is not None:
                    await orchestrator.handle(inbound)
        except Exception:
            logger.exception("Error while processing album")

    @client.on(events.CallbackQuery())
    async def on_callback(event) -> None:
        try:
            # Acknowledge first so the button spinner stops right away.
            await event.answer()
            async with client.action(event.chat_id, "typing"):
                await orchestrator.handle(build_callback_event(event))
        except Exception:
            logger.exception("Error while processing button press")

    # Explicit lifecycle management makes start/shutdown behavior obvious.
    client.start(bot_token=bot_token())
    logger.info("Bot connected. Listening for incoming messages...")
    client.run_until_disconnected()


def _templates() -> None:
    _print_banner()
    registry = _load_registry()

    table = Table(title=f"Templates ({len(registry)}), registry {', '.join(registry.versions) or '-'}")
    table.add_column("Code", style="bold")
    table.add_column("Title")
    table.add_column("Grades")
    table.add_column("Task type")
    table.add_column("Formats")
    table.add_column("Rules", justify="right")
    table.add_column("Profile")
    for template in registry.templates:
        table.add_row(
            template.code,
            template.title,
            f"{template.grade_min}-{template.grade_max}",
            template.task_type or "-",
            ", ".join(sorted(template.formats_allowed)) or "-",
            str(len(template.rules)),
            "yes" if registry.profile(template.template_id) else "no",
        )
    Console().print(table)


def _route(args: argparse.Namespace) -> None:
    registry = _load_registry()
    task = ParseTask(
        subject=args.subject,
        grade=args.grade,
        task_text_clean=args.text,
        visual_facts=tuple(VisualFact(kind=kind) for kind in args.visual),
    )
    item = ParseItem(
        item_id="1",
        item_text_clean="",
        ped_keys=PedKeys(task_type=args.task_type, format=args.format),
    )
    trace = RoutingTrace()
    winner = select_template(build_routing_context(task, [item]), registry, trace)

    console = Console()
    if winner is None:
        console.print("[bold red]No template matched[/bold red]")
    else:
        console.print(f"[bold green]{winner.template.code}[/bold green] {winner.template.title}")
    console.print(format_routing_trace(trace), markup=False, highlight=False)


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="hintbot")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the bot")
    subparsers.add_parser("templates", help="List the loaded template catalog")
    route = subparsers.add_parser("route", help="Show which template a task text would be routed to")
    route.add_argument("text", help="Task text as the student would see it")
    route.add_argument("--grade", type=int, default=0)
    route.add_argument("--subject", default="math")
    route.add_argument("--task-type", default="")
    route.add_argument("--format", default="")
    route.add_argument("--visual", action="append", default=[], help="Visual fact kind, repeatable")

    args = parser.parse_args(argv)
    if args.command == "templates":
        _templates()
        return
    if args.command == "route":
        _route(args)
        return
    _run()


if __name__ == "__main__":
    main()
