"""
Command-line entry point for the Genmix task execution engine.

Wires the stores, the execution host on a Chrome tab (reached over CDP), the
channel, the runner and the queue scheduler, then runs one command.
"""

from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import sys
from dataclasses import dataclass
from pathlib import Path

from .adapters.registry import AdapterRegistry, create_default_registry
from .capture import ResultCapture
from .channel import PageChannel
from .config import EngineConfig
from .host import ExecutionHost, TabController
from .http_client import HttpClientError
from .models import RESULT_TYPES, TOOLS, Task
from .orchestrator import Orchestrator
from .page_session import PageSession
from .runner import TaskRunner
from .scheduler import TaskScheduler
from .stores import ImageStore, MediaStore, TaskStore
from .tabs import connect_page, find_target

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("genmix.engine")


@dataclass
class Engine:
    config: EngineConfig
    tasks: TaskStore
    images: ImageStore
    capture: ResultCapture
    host: ExecutionHost
    channel: PageChannel
    runner: TaskRunner
    scheduler: TaskScheduler

    @classmethod
    def build(cls, config: EngineConfig, *, tab_id: str | None = None, url_contains: str | None = None) -> Engine:
        data = Path(config.data_dir)
        tasks = TaskStore.in_dir(data)
        images = ImageStore(data / "images")
        media = MediaStore(data / "media", config)
        registry = create_default_registry(timeout_policy=config.completion_timeout_policy)
        host = ExecutionHost(
            _tab_connector(config, registry, tab_id=tab_id, url_contains=url_contains),
            registry,
            Orchestrator(settle_after_send=config.send_settle_s),
        )
        channel = PageChannel(host, timeout=config.execute_timeout)
        capture = ResultCapture(tasks, media)
        runner = TaskRunner(tasks, images, channel, capture, navigate=TabController(host).navigate)
        scheduler = TaskScheduler(
            runner.execute,
            on_stop=channel.cancel,
            delay_min_s=config.delay_min_s,
            delay_max_s=config.delay_max_s,
            redirect_settle_s=config.redirect_settle_s,
            max_redirects=config.max_redirects,
        )
        return cls(config, tasks, images, capture, host, channel, runner, scheduler)

    def close(self) -> None:
        self.host.detach("Engine shutting down")
        self.capture.close()


def _tab_connector(
    config: EngineConfig,
    registry: AdapterRegistry,
    *,
    tab_id: str | None,
    url_contains: str | None,
):
    # Pin the tab on first connect so reconnects after navigation reach the same one.
    pinned: dict[str, str] = {}
    if tab_id:
        pinned["id"] = tab_id

    def matches(url: str) -> bool:
        if url_contains:
            return url_contains in url
        return registry.select(url=url) is not None

    def connect() -> PageSession:
        target = find_target(config, tab_id=pinned.get("id"), url_match=matches)
        if target is None:
            raise HttpClientError("No open tab for a supported tool (ChatGPT, Gemini, Jimeng) was found")
        pinned["id"] = str(target.get("id") or "")
        return connect_page(config, target)

    return connect


def _task_line(task: Task) -> str:
    label = task.title or task.prompt.replace("\n", " ")
    if len(label) > 60:
        label = label[:57] + "..."
    return f"{task.id}  {task.status:<11} {task.tool:<8} {task.result_type:<6} results={len(task.results):<3} {label}"


def _cmd_tasks(engine: Engine, args: argparse.Namespace) -> int:
    for task in engine.tasks.list_tasks():
        if args.json:
            print(json.dumps(task.to_dict(), ensure_ascii=False))
        else:
            print(_task_line(task))
    return 0


def _cmd_add(engine: Engine, args: argparse.Namespace) -> int:
    image_ids: list[str] = []
    for raw in args.image or []:
        path = Path(raw).expanduser()
        mime = mimetypes.guess_type(path.name)[0] or "image/png"
        image_ids.append(engine.images.save_image(path.read_bytes(), path.name, mime))
    task = engine.tasks.add_task(
        args.prompt,
        tool=args.tool,
        result_type=args.type,
        title=args.title or "",
        reference_image_ids=image_ids,
    )
    print(task.id)
    return 0


def _attach(engine: Engine) -> bool:
    if engine.host.attach():
        return True
    logger.error("The selected tab is not a supported tool page")
    return False


def _cmd_ping(engine: Engine, args: argparse.Namespace) -> int:
    ok = engine.host.attach() and engine.channel.ping()
    adapter = engine.host.adapter
    print(json.dumps({"connected": bool(ok), "adapter": adapter.name if adapter else None}))
    return 0 if ok else 1


def _cmd_run(engine: Engine, args: argparse.Namespace) -> int:
    if not _attach(engine):
        return 1
    report = engine.runner.execute(args.task_id, fill_only=args.fill_only)
    # A redirect is retried once here; the queue handles repeated redirects.
    if report.retry_after_redirect:
        report = engine.runner.execute(args.task_id, fill_only=args.fill_only)
    engine.capture.flush(timeout=args.media_timeout)
    if not report.success:
        print(engine.runner.last_error or "Failed", file=sys.stderr)
        return 1
    return 0


def _cmd_run_all(engine: Engine, args: argparse.Namespace) -> int:
    if not _attach(engine):
        return 1
    ids = list(args.task_ids or [])
    if not ids:
        ids = [t.id for t in engine.tasks.list_tasks() if t.status in ("pending", "failed")]
    engine.scheduler.auto_next = not args.no_auto_next
    engine.scheduler.retry_on_fail = args.retry_on_fail
    if not engine.scheduler.run_all(ids):
        print("Nothing to run", file=sys.stderr)
        return 1
    try:
        while not engine.scheduler.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:
        engine.scheduler.stop()
        engine.scheduler.wait(timeout=10.0)
    engine.capture.flush(timeout=args.media_timeout)
    failed = [t.id for t in engine.tasks.list_tasks() if t.id in ids and t.status == "failed"]
    return 1 if failed else 0


def _cmd_scan(engine: Engine, args: argparse.Namespace) -> int:
    if not _attach(engine):
        return 1
    adapter = engine.host.adapter
    page = engine.host.page
    scan = getattr(adapter, "scan_all_results", None)
    if page is None or not callable(scan):
        logger.error("Result scan is not supported for this tool")
        return 1
    items = scan(page)
    if args.task:
        results = engine.capture.import_captured(args.task, items)
        engine.capture.flush(timeout=args.media_timeout)
        print(json.dumps({"imported": len(results)}))
        return 0
    for item in items:
        print(json.dumps(item.to_content().to_dict() | {"id": item.id}, ensure_ascii=False))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="genmix", description="Run generation tasks against ChatGPT, Gemini and Jimeng tabs")
    parser.add_argument("--tab-id", help="CDP target id of the tab to drive")
    parser.add_argument("--url-contains", help="Pick the first tab whose URL contains this text")
    parser.add_argument("--media-timeout", type=float, default=120.0, help="Seconds to wait for media caching on exit")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("tasks", help="List tasks")
    p.add_argument("--json", action="store_true", help="Print full task records")
    p.set_defaults(func=_cmd_tasks)

    p = sub.add_parser("add", help="Create a task")
    p.add_argument("prompt")
    p.add_argument("--title")
    p.add_argument("--tool", choices=TOOLS, default="other")
    p.add_argument("--type", choices=RESULT_TYPES, default="mixed")
    p.add_argument("--image", action="append", help="Reference image file (repeatable)")
    p.set_defaults(func=_cmd_add)

    p = sub.add_parser("run", help="Execute one task")
    p.add_argument("task_id")
    p.add_argument("--fill-only", action="store_true", help="Fill the prompt without sending")
    p.set_defaults(func=_cmd_run)

    p = sub.add_parser("run-all", help="Run tasks through the queue")
    p.add_argument("task_ids", nargs="*", help="Defaults to all pending and failed tasks")
    p.add_argument("--no-auto-next", action="store_true", help="Stop after the first task")
    p.add_argument("--retry-on-fail", action="store_true", help="Re-run failed tasks until they succeed")
    p.set_defaults(func=_cmd_run_all)

    p = sub.add_parser("scan", help="List (or import into a task) every result on the page")
    p.add_argument("--task", help="Task id to import the results into")
    p.set_defaults(func=_cmd_scan)

    p = sub.add_parser("ping", help="Check that the tab is reachable")
    p.set_defaults(func=_cmd_ping)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = EngineConfig.from_env()
    engine = Engine.build(config, tab_id=args.tab_id, url_contains=args.url_contains)
    try:
        return int(args.func(engine, args))
    except HttpClientError as exc:
        logger.error("%s", exc)
        return 2
    finally:
        engine.close()


if __name__ == "__main__":
    sys.exit(main())
