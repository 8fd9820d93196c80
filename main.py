"""
Main entry point for the MediaPull command-line driver.

This script initializes the configuration, sets up logging, creates the
controller, and runs the requested batch operation on an asyncio event loop.
"""

import sys
import json
import logging
import asyncio
import argparse
from types import TracebackType
from typing import List, Optional, Type

from mediapull._version import __version__
from mediapull.config import ConfigManager
from mediapull.constants import CONFIG_FILE
from mediapull.controller import AppController
from mediapull.events import JOB_PROGRESS, ENGINE_STATUS, ENGINE_UPDATE_AVAILABLE
from mediapull.exceptions import MediaPullError
from mediapull.jobs import Job, DOWNLOADING
from mediapull.logging_config import setup_logging


def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))


def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def format_job(job: Job) -> str:
    progress = job.progress
    line = f"{job.id}  {job.status:<11} {progress.completed}/{progress.total}  {job.playlist_name}"
    if job.status == DOWNLOADING and progress.current_file_percent:
        line += f"  [{progress.current_file_index + 1}: {progress.current_file_percent:.1f}%"
        if progress.current_speed:
            line += f" at {progress.current_speed}"
        line += "]"
    return line


def print_event(event):
    """Prints progress snapshots and launch-health notices as they arrive."""
    event_type, payload = event
    if event_type == JOB_PROGRESS:
        print(format_job(payload), flush=True)
    elif event_type == ENGINE_STATUS:
        attempt = f" ({payload['attempt']}/{payload['max']})" if 'attempt' in payload else ""
        print(f"engine {payload['binary']}: {payload['status']}{attempt} {payload['message']}", flush=True)
    elif event_type == ENGINE_UPDATE_AVAILABLE:
        print(f"engine update available: {payload['current']} -> {payload['latest']}", flush=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='mediapull', description="Resumable batch downloads over yt-dlp.")
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest='command', required=True)

    add = sub.add_parser('add', help="create a batch job (and optionally start it)")
    add.add_argument('urls', nargs='+')
    add.add_argument('--title', action='append', dest='titles', default=[], help="title per URL, in order")
    add.add_argument('--format', default='best', help="engine format selector")
    add.add_argument('--container', default=None, help="target container, e.g. mkv or m4a")
    add.add_argument('--folder', default=None, help="sub-folder of the downloads root")
    add.add_argument('--name', default=None, help="batch label")
    add.add_argument('--number', action='store_true', help="prefix filenames with their position")
    add.add_argument('--parallel', type=int, default=None, help="engine fragment concurrency")
    add.add_argument('--start', action='store_true', help="start downloading right away")

    resume = sub.add_parser('resume', help="start or continue a job and follow it")
    resume.add_argument('job_id')

    status = sub.add_parser('status', help="show one job")
    status.add_argument('job_id')

    listing = sub.add_parser('list', help="list jobs")
    listing.add_argument('--limit', type=int, default=None)

    delete = sub.add_parser('delete', help="delete a job")
    delete.add_argument('job_id')
    delete.add_argument('--files', action='store_true', help="also delete its completed files")

    open_job = sub.add_parser('open', help="open a job's folder")
    open_job.add_argument('job_id')
    sub.add_parser('open-root', help="open the downloads root")

    info = sub.add_parser('info', help="print the engine's JSON description of a URL")
    info.add_argument('url')

    cookies = sub.add_parser('cookies', help="store a cookie file for the engine (empty file clears it)")
    cookies.add_argument('path')

    sub.add_parser('update-engine', help="run the engine's self-update")
    sub.add_parser('versions', help="show engine versions")
    return parser


async def follow(controller: AppController, job_id: str):
    """Waits for a job run; Ctrl+C pauses the job instead of abandoning it."""
    try:
        await controller.wait_for_job(job_id)
    except asyncio.CancelledError:
        await controller.pause_job(job_id)
        await controller.wait_for_job(job_id)
        raise


async def run_command(controller: AppController, args: argparse.Namespace) -> int:
    if args.command == 'add':
        job_id = await controller.create_job(
            args.urls, args.titles, args.format, target_container=args.container,
            destination_hint=args.folder, number_items=args.number, parallelism=args.parallel,
            playlist_name=args.name
        )
        print(job_id)
        if args.start:
            await controller.resume_job(job_id)
            await follow(controller, job_id)
    elif args.command == 'resume':
        await controller.resume_job(args.job_id)
        await follow(controller, args.job_id)
    elif args.command == 'status':
        job = await controller.get_job_status(args.job_id)
        print(format_job(job))
        for index, job_file in enumerate(job.files):
            print(f"  {index + 1:>3}. {job_file.status:<11} {job_file.filename}")
    elif args.command == 'list':
        for job in await controller.list_jobs(args.limit):
            print(format_job(job))
    elif args.command == 'delete':
        await controller.delete_job(args.job_id, also_delete_files=args.files)
    elif args.command == 'open':
        await controller.open_job_folder(args.job_id)
    elif args.command == 'open-root':
        await controller.open_root_downloads_folder()
    elif args.command == 'info':
        print(json.dumps(await controller.fetch_info(args.url), indent=2))
    elif args.command == 'cookies':
        with open(args.path, encoding='utf-8') as f:
            await controller.save_cookies(f.read())
    elif args.command == 'update-engine':
        print(await controller.update_engine())
    elif args.command == 'versions':
        for name, version in (await controller.get_engine_versions()).items():
            print(f"{name}: {version}")
    return 0


async def main_async(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config_manager = ConfigManager(CONFIG_FILE)
    config = config_manager.load()
    setup_logging(config.log_level)
    sys.excepthook = handle_exception
    asyncio.get_running_loop().set_exception_handler(handle_async_exception)

    controller = AppController(config_manager, config)
    controller.subscribe(print_event)
    await controller.run_startup_checks()
    try:
        return await run_command(controller, args)
    except MediaPullError as e:
        logging.error(str(e))
        return 1
    finally:
        await controller.shutdown()


def run():
    try:
        sys.exit(asyncio.run(main_async()))
    except KeyboardInterrupt:
        logging.info("Application interrupted by user.")
        sys.exit(130)


if __name__ == "__main__":
    run()
