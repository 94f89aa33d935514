"""wrpl decodes War Thunder .wrpl replay files.

Use [b]info[/b] to see a replay's header, [b]chat[/b] to print its chat log,
or [b]decode[/b] for everything we can read, as JSON."""

import logging
import sys
from pathlib import Path
from typing import Optional
from typing_extensions import Annotated

import typer

from wrpl import __version__
from wrpl.config import DecoderConfig, default_config_file
from wrpl.logging import configure_logging

app = typer.Typer(rich_markup_mode="rich", help=sys.modules[__name__].__doc__)

logger = logging.getLogger(__name__)

OffsetOption = Annotated[
    Optional[str],
    typer.Option(
        "--offset",
        "-o",
        help="Where the data stream starts, in hex (0x...) or decimal. Skips automatic detection.",
    ),
]
RawOption = Annotated[
    bool,
    typer.Option(
        "--raw",
        help="The stream at --offset is not compressed; parse packets directly.",
    ),
]


def version(value: bool):
    if value:
        typer.echo(f"wrpl v{__version__}")
        raise typer.Exit()


def parse_offset(value: Optional[str]) -> Optional[int]:
    """Parse an offset given in hex (0x...) or decimal."""
    if value is None:
        return None
    try:
        if value.lower().startswith("0x"):
            return int(value[2:], 16)
        return int(value)
    except ValueError:
        raise typer.BadParameter(f"{value!r} is not a hex or decimal offset")


@app.callback()
def callback(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            help="Show version information for your wrpl installation",
            callback=version,
        ),
    ] = False,
    debug: bool = False,
    quiet: Annotated[bool, typer.Option(help="Only log warnings and errors")] = False,
    config: Annotated[
        Optional[Path],
        typer.Option(
            help="Decoder settings file (YAML). Defaults to the file shown by config-path, if it exists.",
            dir_okay=False,
        ),
    ] = None,
):
    configure_logging(debug=debug, quiet=quiet)
    if config is None and default_config_file().exists():
        config = default_config_file()
    ctx.obj = DecoderConfig.load(config) if config is not None else DecoderConfig()


def _decode(ctx: typer.Context, replay_file, offset: Optional[str], raw: bool):
    from wrpl.decode import decode_replay
    from wrpl.errors import HeaderError

    try:
        return decode_replay(
            replay_file.read(), ctx.obj, offset=parse_offset(offset), raw=raw
        )
    except HeaderError as e:
        logger.error(f"Not a replay file: {e}")
        raise typer.Exit(1)


@app.command()
def info(ctx: typer.Context, replay_file: typer.FileBinaryRead):
    """Print a replay's header in JSON format."""
    from wrpl.errors import HeaderError
    from wrpl.header import parse_header

    try:
        header, diagnostics = parse_header(
            replay_file.read(), magic=ctx.obj.expected_magic
        )
    except HeaderError as e:
        logger.error(f"Not a replay file: {e}")
        raise typer.Exit(1)
    for diagnostic in diagnostics:
        logger.warning(diagnostic.message)
    typer.echo(header.model_dump_json(indent=2))


@app.command()
def chat(
    ctx: typer.Context,
    replay_file: typer.FileBinaryRead,
    offset: OffsetOption = None,
    raw: RawOption = False,
):
    """Print the chat messages in a replay, in order."""
    result = _decode(ctx, replay_file, offset, raw)
    messages = result.chat_messages
    if not messages:
        logger.warning("No chat messages found.")
    for i, message in enumerate(messages, 1):
        seconds = message.timestamp_ms / 1000
        typer.echo(f"{i:3}: [{seconds:8.1f}s] {message.sender} says '{message.message}'")


@app.command()
def decode(
    ctx: typer.Context,
    replay_file: typer.FileBinaryRead,
    offset: OffsetOption = None,
    raw: RawOption = False,
    include_unknown: Annotated[
        bool, typer.Option(help="Include records we couldn't decode in the output")
    ] = False,
):
    """Decode a replay, outputting header, records and diagnostics in JSON format."""
    result = _decode(ctx, replay_file, offset, raw)
    if not include_unknown:
        result = result.model_copy(
            update={"records": tuple(r for r in result.records if r.kind != "unknown")}
        )
    typer.echo(result.model_dump_json(indent=2))


@app.command(rich_help_panel="Tools for nerds")
def find_offset(ctx: typer.Context, replay_file: typer.FileBinaryRead):
    """List the offsets where the compressed event stream might start, best guess first."""
    from wrpl.errors import HeaderError
    from wrpl.header import parse_header
    from wrpl.scan import CandidateOffsets

    data = replay_file.read()
    try:
        header, _ = parse_header(data, magic=ctx.obj.expected_magic)
    except HeaderError as e:
        logger.error(f"Not a replay file: {e}")
        raise typer.Exit(1)
    candidates = CandidateOffsets(data, header, max_scan_window=ctx.obj.max_scan_window)
    found = 0
    for candidate in candidates:
        found += 1
        label = " (declared rez_offset)" if candidate == header.rez_offset else ""
        typer.echo(f"{candidate:#010x} ({candidate}){label}")
    if not found:
        logger.warning("No zlib stream headers found; is this a complete client replay?")
        raise typer.Exit(1)


@app.command(rich_help_panel="Tools for nerds")
def decompress(
    ctx: typer.Context,
    replay_file: typer.FileBinaryRead,
    output_file: Path,
    offset: OffsetOption = None,
):
    """Write a replay's decompressed event stream to a file."""
    from wrpl.decode import load_body
    from wrpl.errors import DecompressError, HeaderError, OffsetError
    from wrpl.header import parse_header

    data = replay_file.read()
    try:
        header, diagnostics = parse_header(data, magic=ctx.obj.expected_magic)
        body = load_body(data, header, ctx.obj, diagnostics, offset=parse_offset(offset))
    except (HeaderError, OffsetError, DecompressError) as e:
        logger.error(str(e))
        raise typer.Exit(1)
    for diagnostic in diagnostics:
        logger.warning(diagnostic.message)
    output_file.write_bytes(body.data)
    typer.echo(
        f"Wrote {len(body.data)} bytes decompressed from offset {body.source.offset:#x} to {output_file}."
    )


@app.command(rich_help_panel="Tools for nerds")
def config_path():
    """Print the path wrpl reads decoder settings from, creating the file if needed."""
    path = default_config_file()
    if not path.exists():
        DecoderConfig().save(path)
    typer.echo(path.resolve())
