"""CLI entry point for the filetrace agent.

Commands:
    filetrace run        run the telemetry service until interrupted
    filetrace snapshot   take the per-build baseline snapshot once
    filetrace scrub      show the scrubbed telemetry fields for paths
    filetrace status     device identity, state and source selection
"""

import asyncio
import json
import logging
import sys
import threading
from pathlib import Path

import click

from filetrace.config import (
    BUILD_VERSION,
    COLLECTOR_API_KEY,
    COLLECTOR_URL,
    DRAIN_TIMEOUT_SECONDS,
    EVENT_SOURCE,
    METRIC_INTERVAL_SECONDS,
    SNAPSHOT_ENABLED,
    STATE_DIR,
    TRACE_BUFFER_MB,
    TRACE_SESSION,
    WATCH_EXCLUDE,
    WATCH_PATHS,
)
from filetrace.schemas.service import EventSourceKind, ServiceSettings

logger = logging.getLogger("filetrace")


def _settings(**overrides) -> ServiceSettings:
    """Build service settings from config, with command-line overrides."""
    values = dict(
        collector_url=COLLECTOR_URL,
        collector_api_key=COLLECTOR_API_KEY,
        state_dir=STATE_DIR,
        event_source=EVENT_SOURCE,
        trace_session=TRACE_SESSION,
        trace_buffer_mb=TRACE_BUFFER_MB,
        watch_paths=[p.strip() for p in WATCH_PATHS.split(",") if p.strip()],
        watch_exclude=WATCH_EXCLUDE,
        metric_interval_seconds=METRIC_INTERVAL_SECONDS,
        drain_timeout_seconds=DRAIN_TIMEOUT_SECONDS,
        snapshot_enabled=SNAPSHOT_ENABLED,
        build_version=BUILD_VERSION,
    )
    values.update(overrides)
    return ServiceSettings(**values)


def _open_sink(settings: ServiceSettings, identity):
    """Collector client when a URL is configured, otherwise the log sink."""
    if settings.collector_url:
        from filetrace.integrations.collector import CollectorClient

        return CollectorClient(settings.collector_url, settings.collector_api_key, identity)

    from filetrace.integrations.sink import LogSink

    logger.warning("No collector configured (FILETRACE_COLLECTOR_URL); telemetry goes to the log")
    return LogSink()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """filetrace: privacy-scrubbed file access telemetry agent."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


# ------------------------------------------------------------------
# filetrace run
# ------------------------------------------------------------------


@cli.command()
@click.option(
    "--source",
    type=click.Choice([k.value for k in EventSourceKind]),
    default=EVENT_SOURCE,
    show_default=True,
    help="Event source: kernel trace, directory watch, both, or auto.",
)
@click.option(
    "--snapshot/--no-snapshot",
    default=SNAPSHOT_ENABLED,
    show_default=True,
    help="Take the baseline snapshot if this build has none yet.",
)
def run(source: str, snapshot: bool) -> None:
    """Run the telemetry service until interrupted."""
    from filetrace.capture.kernel import TraceSessionError
    from filetrace.capture.selector import build_sources

    settings = _settings(event_source=source, snapshot_enabled=snapshot)
    try:
        sources = build_sources(settings)
    except TraceSessionError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    asyncio.run(_run_async(settings, sources))


async def _run_async(settings: ServiceSettings, sources: list) -> None:
    from filetrace.capture.kernel import TraceSessionError
    from filetrace.identity import build_identity
    from filetrace.pipeline.service import FileTraceService

    identity = build_identity(settings.build_version or None)

    async with _open_sink(settings, identity) as sink:
        service = FileTraceService(
            sources=sources,
            sink=sink,
            identity=identity,
            state_dir=settings.state_dir,
            metric_interval=settings.metric_interval_seconds,
            drain_timeout=settings.drain_timeout_seconds,
            snapshot_enabled=settings.snapshot_enabled,
        )
        try:
            await service.start()
        except TraceSessionError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)

        click.echo("Tracking file access (Ctrl+C to stop)…")
        click.echo(f"  Sources: {', '.join(s.name for s in sources)}")
        click.echo(f"  Device: {identity.device_id}")
        try:
            while True:
                await asyncio.sleep(1)
        except (asyncio.CancelledError, KeyboardInterrupt):
            pass
        finally:
            await service.stop()


# ------------------------------------------------------------------
# filetrace snapshot
# ------------------------------------------------------------------


@cli.command()
def snapshot() -> None:
    """Take the baseline snapshot now (no-op if this build already has one)."""
    asyncio.run(_snapshot_async(_settings()))


async def _snapshot_async(settings: ServiceSettings) -> None:
    from filetrace.identity import build_identity
    from filetrace.pipeline.snapshot import SnapshotBaseliner

    identity = build_identity(settings.build_version or None)
    cancel = threading.Event()

    async with _open_sink(settings, identity) as sink:
        baseliner = SnapshotBaseliner(sink, settings.state_dir, identity.build_version)
        try:
            result = await baseliner.run_once(cancel)
        except asyncio.CancelledError:
            cancel.set()
            click.echo("Snapshot interrupted; marker not written.")
            return

    click.echo(
        f"Snapshot {result.status.value}: {result.files_emitted} file(s), "
        f"marker {result.marker_path}"
    )


# ------------------------------------------------------------------
# filetrace scrub
# ------------------------------------------------------------------


@cli.command()
@click.argument("paths", nargs=-1, required=True)
def scrub(paths: tuple[str, ...]) -> None:
    """Show the scrubbed telemetry fields for one or more PATHS."""
    from filetrace.capture.scrubber import scrub as scrub_path

    for path in paths:
        click.echo(json.dumps(scrub_path(path).to_properties(), indent=2))


# ------------------------------------------------------------------
# filetrace status
# ------------------------------------------------------------------


@cli.command()
def status() -> None:
    """Show device identity, snapshot state and event source selection."""
    from filetrace.capture.selector import resolve_kind
    from filetrace.identity import build_identity
    from filetrace.pipeline.snapshot import marker_name

    settings = _settings()
    identity = build_identity(settings.build_version or None)
    marker = Path(settings.state_dir) / marker_name(identity.build_version)

    click.echo(f"Device id:      {identity.device_id}")
    click.echo(f"Build version:  {identity.build_version}")
    click.echo(f"State dir:      {settings.state_dir}")
    click.echo(f"Snapshot taken: {'yes' if marker.exists() else 'no'}")
    click.echo(f"Event source:   {resolve_kind(settings).value}")
    click.echo(f"Collector:      {settings.collector_url or '(log only)'}")
