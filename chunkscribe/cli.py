"""Command-line interface for chunkscribe.

WHY: Users need a simple way to transcribe a recording from the terminal,
optionally chain refinement stages, and manage saved projects without
running the HTTP server.

HOW: argparse with three subcommands:
  transcribe FILE   full chunked transcription, optional --stage chain,
                    writes the current version's text to --output or stdout
  library ...       list (with search/sort) or delete saved projects
  serve             run the FastAPI app with uvicorn
Async work runs via asyncio.run(). Status messages go to stderr.

RULES:
- Status output goes to stderr (not stdout) so text can be piped
- Exit code 1 on any failure, with the reason on stderr
- Stages run in the order given, each from the previous stage's output
- A transcription that ends paused (remote failure) is a failure here
- With --save, a failed snapshot save exits 1 after the text is written
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from chunkscribe.config import AVAILABLE_MODELS, DEFAULT_MODEL
from chunkscribe.core.models import ItemStatus, SourceHandle, StageKind
from chunkscribe.core.versions import VersionStore
from chunkscribe.errors import ChunkscribeError
from chunkscribe.logging_setup import configure_logging
from chunkscribe.services import Services, build_services
from chunkscribe.storage.gateway import SyncStatus, filter_projects

_STAGE_CHOICES = [s.value for s in StageKind if s != StageKind.RAW]


def _status(msg: str) -> None:
    """Print a status message to stderr."""
    print(msg, file=sys.stderr, flush=True)


def _fail(msg: str) -> None:
    _status("Error: {}".format(msg))
    sys.exit(1)


# ---------------------------------------------------------------------------
# transcribe
# ---------------------------------------------------------------------------


async def _transcribe(args: argparse.Namespace, services: Services) -> Tuple[str, bool]:
    """Run transcription plus stages.

    Returns the final text and whether the requested save failed.
    """
    path = Path(args.input_file)
    if not path.is_file():
        raise ChunkscribeError("File not found: {}".format(path))

    item = services.repository.create_item(SourceHandle.from_path(path))
    _status("Transcribing {} with {}...".format(item.file_name, services.settings.model))

    status = await services.engine.start(item.id)
    item = services.repository.require_item(item.id)
    if status != ItemStatus.COMPLETED:
        raise ChunkscribeError(
            "Transcription stopped at chunk {}/{}: {}".format(
                item.processed_chunks, item.total_chunks, item.last_error or status.value
            )
        )
    _status("Transcribed {} chunk(s).".format(item.total_chunks))

    for stage_value in args.stage or []:
        stage = StageKind(stage_value)
        parent_id = item.current_version_id
        _status("Running stage {}...".format(stage.value))
        version = await services.stages.run(item.id, stage, parent_id, args.prompt)
        item = services.repository.require_item(item.id)
        if version is None or item.status == ItemStatus.ERROR:
            raise ChunkscribeError(
                "Stage {} failed: {}".format(stage.value, item.last_error or "no source version")
            )

    current = VersionStore(item).current()
    text = current.content if current is not None else ""
    save_failed = args.save and services.gateway.sync_status(item.id) == SyncStatus.ERROR
    return text, save_failed


def _cmd_transcribe(args: argparse.Namespace) -> None:
    if args.model not in AVAILABLE_MODELS:
        _fail("Unknown model '{}'. Available: {}".format(
            args.model, ", ".join(sorted(AVAILABLE_MODELS))
        ))
    if StageKind.CUSTOM.value in (args.stage or []) and not args.prompt:
        _fail("--stage CUSTOM requires --prompt")

    services = build_services(
        api_key=args.api_key,
        model=args.model,
        stage_progress_interval_s=None,
        persist=args.save,
    )
    try:
        text, save_failed = asyncio.run(_transcribe(args, services))
    except ChunkscribeError as exc:
        _fail(str(exc))

    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        _status("Saved: {}".format(args.output))
    else:
        sys.stdout.write(text)
        sys.stdout.write("\n")

    if save_failed:
        _fail("Project was not saved to storage (see log for the storage error)")
    if args.save:
        _status("Project saved.")


# ---------------------------------------------------------------------------
# library
# ---------------------------------------------------------------------------


def _cmd_library(args: argparse.Namespace) -> None:
    services = build_services()
    try:
        if args.library_command == "list":
            projects = asyncio.run(services.gateway.list_projects())
            projects = filter_projects(
                projects, search=args.search, sort_key=args.sort, descending=not args.asc
            )
            for project in projects:
                print("{}\t{}\t{}\t{}".format(
                    project.id, project.status, project.updated_at, project.file_name
                ))
            _status("{} project(s)".format(len(projects)))
        else:
            asyncio.run(services.gateway.delete(args.project_id))
            _status("Deleted {}".format(args.project_id))
    except ChunkscribeError as exc:
        _fail(str(exc))


def _cmd_serve(args: argparse.Namespace) -> None:
    from chunkscribe.server.app import run_api

    run_api(host=args.host, port=args.port)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the CLI.

    WHY: Separating parser construction from main() keeps the CLI
    testable without running anything.
    """
    parser = argparse.ArgumentParser(
        prog="chunkscribe",
        description="Resumable chunked transcription with Gemini and versioned refinement stages.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: CHUNKSCRIBE_LOG_LEVEL or INFO).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    tr = sub.add_parser("transcribe", help="Transcribe an audio or video file.")
    tr.add_argument("input_file", help="Path to the audio or video file.")
    tr.add_argument(
        "--model",
        default=DEFAULT_MODEL,
        help="Primary model id (default: %(default)s).",
    )
    tr.add_argument(
        "--api-key",
        default=None,
        help="Gemini API key (default: GEMINI_API_KEY).",
    )
    tr.add_argument(
        "--stage",
        action="append",
        choices=_STAGE_CHOICES,
        default=None,
        help="Refinement stage to run after transcription. Can be repeated; "
             "each stage works on the previous one's output.",
    )
    tr.add_argument(
        "--prompt",
        default=None,
        help="Instruction for the CUSTOM stage.",
    )
    tr.add_argument(
        "--output",
        default=None,
        help="Write the final text to this file instead of stdout.",
    )
    tr.add_argument(
        "--save",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Save the finished project to storage (default: %(default)s).",
    )
    tr.set_defaults(func=_cmd_transcribe)

    lib = sub.add_parser("library", help="List or delete saved projects.")
    lib_sub = lib.add_subparsers(dest="library_command", required=True)
    ls = lib_sub.add_parser("list", help="List saved projects.")
    ls.add_argument("--search", default="", help="Case-insensitive file name filter.")
    ls.add_argument(
        "--sort",
        choices=["updated_at", "fileName", "status"],
        default="updated_at",
        help="Sort key (default: %(default)s).",
    )
    ls.add_argument("--asc", action="store_true", help="Sort ascending.")
    rm = lib_sub.add_parser("delete", help="Delete a saved project.")
    rm.add_argument("project_id", help="Project id as shown by 'library list'.")
    lib.set_defaults(func=_cmd_library)

    serve = sub.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="0.0.0.0", help="Bind address (default: %(default)s).")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: %(default)s).")
    serve.set_defaults(func=_cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI.

    RULES:
    - argv=None means use sys.argv (normal CLI invocation)
    - Explicit argv is for testing
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    args.func(args)


if __name__ == "__main__":
    main()
