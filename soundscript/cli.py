from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import traceback
from pathlib import Path
from typing import IO

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich.traceback import Traceback

from .config import DEFAULT_BPM, SessionConfig
from .logging_utils import configure_logging, get_log_path, log_exception
from .orchestrator import SoundScript

_LOGGER = logging.getLogger("soundscript.cli")
_CONSOLE = Console()
_DEBUG_ENV = "SOUNDSCRIPT_DEBUG"


def render_error(context: str, exc: BaseException, *, stream: IO[str] | None = None) -> None:
    target = stream or sys.stderr
    debug = os.environ.get(_DEBUG_ENV)
    log_path = get_log_path()
    if target.isatty():
        console = Console(file=target)
        body = Text.assemble(
            ("SoundScript error while ", "bold"),
            (context, "bold"),
            (":\n\n", "bold"),
            Text(type(exc).__name__, style="bold red"),
            (": ", "bold"),
            Text(str(exc)),
            (f"\nLogs: {log_path}", "dim"),
            (f"\n\nSet {_DEBUG_ENV}=1 for console trace.", "dim"),
        )
        console.print(Panel(body, title="Error", border_style="red"))
        if debug:
            console.print(Traceback.from_exception(type(exc), exc, exc.__traceback__))
    else:
        target.write(f"{context} failed: {type(exc).__name__}: {exc} (logs: {log_path})\n")
        if debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=target)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="soundscript")
    sub = parser.add_subparsers(dest="command", required=True)

    def _script_command(name: str, help_text: str) -> argparse.ArgumentParser:
        command = sub.add_parser(name, help=help_text)
        command.add_argument("script", type=Path)
        command.add_argument("--bpm", type=float, default=DEFAULT_BPM)
        return command

    render = _script_command("render", "Render a script to a WAV file.")
    render.add_argument("--output", "-o", type=Path, default=Path("soundscript.wav"))
    render.add_argument("--float32", action="store_true", help="Write 32-bit float samples.")
    render.add_argument("--samples", type=Path, default=None, help="Directory of samples.")
    render.add_argument("--master-volume", type=float, default=0.7)

    play = _script_command("play", "Render a script and play it.")
    play.add_argument("--samples", type=Path, default=None, help="Directory of samples.")
    play.add_argument("--master-volume", type=float, default=0.7)

    _script_command("estimate", "Print the estimated performance length.")
    _script_command("blocks", "List the blocks a script defines.")
    return parser


def _engine(args: argparse.Namespace) -> SoundScript:
    config = SessionConfig(bpm=args.bpm, master_volume=getattr(args, "master_volume", 0.7))
    engine = SoundScript(config)
    engine.parse(args.script.read_text(encoding="utf-8"))
    samples = getattr(args, "samples", None)
    if samples is not None:
        engine.load_samples(samples)
    return engine


def _blocks_table(engine: SoundScript) -> Table:
    table = Table(title="Blocks")
    table.add_column("Block")
    table.add_column("Lines", justify="right")
    for name, lines in engine.blocks.items():
        table.add_row(name, str(len(lines)))
    return table


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        engine = _engine(args)

        if args.command == "blocks":
            _CONSOLE.print(_blocks_table(engine))
            return 0

        if args.command == "estimate":
            _CONSOLE.print(f"Estimated duration: {engine.estimate_duration():.2f}s")
            return 0

        if args.command == "render":
            with _CONSOLE.status("Rendering script"):
                buffer = asyncio.run(engine.render())
            path = engine.export_wav(args.output, float32=args.float32)
            _CONSOLE.print(
                f"Wrote {buffer.duration:.1f}s to {path} (sr={buffer.sample_rate}, "
                f"compressor -{engine.telemetry.peak_compressor_reduction:.1f}dB, "
                f"limiter -{engine.telemetry.peak_limiter_reduction:.1f}dB)"
            )
            return 0

        if args.command == "play":
            with _CONSOLE.status("Rendering script"):
                asyncio.run(engine.render())
            handle = engine.play_rendered()
            _CONSOLE.print(f"Playing {handle.duration:.1f}s (Ctrl+C to stop)")
            try:
                handle.wait()
            except KeyboardInterrupt:
                engine.force_stop()
            return 0

        parser.print_help()
        return 1
    except Exception as exc:
        debug = bool(os.environ.get(_DEBUG_ENV))
        _LOGGER.warning("soundscript CLI failed: %s", exc, exc_info=debug)
        log_exception("soundscript CLI", exc)
        render_error("soundscript CLI", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
