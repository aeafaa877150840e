"""pagedpreview command line entry point."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pagedpreview import __version__
from pagedpreview.engine.config import CONFIG_FILENAME, PreviewConfig
from pagedpreview.engine.errors import (
    BuildError,
    ConfigValidationError,
    StartupError,
    WriteFailure,
)

logger = logging.getLogger(__name__)


def _configure_logging(level_name: str, *, log_to_file: bool = True) -> Path | None:
    """Root logger: rotating file under ~/.pagedpreview/logs plus stderr."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    log_file = None
    if log_to_file:
        log_dir = Path.home() / ".pagedpreview" / "logs"
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_file = log_dir / "preview-server.log"
            file_handler = RotatingFileHandler(
                log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
            )
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)
        except OSError:
            log_file = None
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)
    # aiohttp's access log duplicates the request middleware.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("watchfiles").setLevel(logging.WARNING)
    return log_file


async def run_preview(source_dir: Path, config: PreviewConfig) -> int:
    from pagedpreview.engine.session import SessionController
    from pagedpreview.server.host import ControlHost

    controller = SessionController(config)
    host = ControlHost(controller, config)
    try:
        await host.start(source_dir)
    except StartupError as exc:
        logger.error("%s", exc)
        await controller.shutdown()
        return 1

    sys.stdout.write(f"Previewing {controller.session.source_dir}\n  {host.url}\n")
    sys.stdout.flush()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(controller.shutdown()))
        except NotImplementedError:
            pass
    await host.serve_forever()
    logger.info("Preview server stopped")
    return 0


def _cmd_preview(args: argparse.Namespace) -> int:
    from pagedpreview.shared.services.process_cleanup import cleanup_stale_content_servers

    config = PreviewConfig.from_env()
    if args.port is not None:
        config.port = args.port
    if args.host:
        config.host = args.host
    if args.root:
        config.permitted_root = args.root
    if args.no_watch:
        config.watch = False
    if args.verbose:
        config.log_level = "DEBUG"

    log_file = _configure_logging(config.log_level)
    source_dir = Path(args.directory).expanduser().resolve()
    logger.info(
        "Starting pagedpreview %s source=%s port=%s log=%s",
        __version__, source_dir, config.port, log_file or "<stderr>",
    )
    try:
        reaped = cleanup_stale_content_servers(log=logger.info)
        if reaped:
            logger.warning("Reaped %d stale content server(s) at startup", reaped)
    except Exception:
        logger.exception("Startup stale-process cleanup failed")

    try:
        return asyncio.run(run_preview(source_dir, config))
    except KeyboardInterrupt:
        return 0


def _cmd_build(args: argparse.Namespace) -> int:
    from pagedpreview.engine.build import build_html

    _configure_logging(os.getenv("PAGEDPREVIEW_LOG_LEVEL", "INFO"), log_to_file=False)
    output = Path(args.output) if args.output else None
    try:
        target = build_html(Path(args.directory), output)
    except BuildError as exc:
        logger.error("%s", exc)
        return 1
    print(target)
    return 0


def _cmd_init(args: argparse.Namespace) -> int:
    from pagedpreview.shared.services.config_writer import get_writer

    _configure_logging(os.getenv("PAGEDPREVIEW_LOG_LEVEL", "INFO"), log_to_file=False)
    source_dir = Path(args.directory).expanduser().resolve()
    changes = {"title": args.title or source_dir.name}
    if args.author:
        changes["authors"] = args.author
    writer = get_writer(source_dir / CONFIG_FILENAME)
    try:
        asyncio.run(writer.update(changes))
    except (ConfigValidationError, WriteFailure) as exc:
        logger.error("%s", exc)
        return 1
    print(writer.path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pagedpreview",
        description="Live browser preview for paged Markdown documents",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    preview = sub.add_parser("preview", help="Serve a live preview of a folder")
    preview.add_argument("directory", nargs="?", default=".")
    preview.add_argument("--port", type=int, default=None, help="Control port (0=random)")
    preview.add_argument("--host", default=None, help="Bind address")
    preview.add_argument("--root", default=None, help="Folder browsing root (default: home)")
    preview.add_argument("--no-watch", action="store_true", help="Disable automatic rebuilds")
    preview.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    preview.set_defaults(func=_cmd_preview)

    build = sub.add_parser("build", help="Build standalone HTML (strict)")
    build.add_argument("directory", nargs="?", default=".")
    build.add_argument("--output", "-o", default=None, help="Output directory (default: DIR/dist)")
    build.set_defaults(func=_cmd_build)

    init = sub.add_parser("init", help=f"Create or update {CONFIG_FILENAME}")
    init.add_argument("directory", nargs="?", default=".")
    init.add_argument("--title", default=None)
    init.add_argument("--author", action="append", default=None)
    init.set_defaults(func=_cmd_init)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
