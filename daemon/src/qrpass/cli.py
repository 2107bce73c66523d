"""CLI entry point for qrpass."""

from pathlib import Path

import click

from qrpass import __version__
from qrpass.config import load_config
from qrpass.formatting import format_countdown, format_time_ago
from qrpass.logging import setup_logging
from qrpass.passes import JsonPassStore, PassKindRegistry

OUTCOME_MESSAGES = {
    "scanned": "Pass created! It will show up in your wallet shortly.",
    "scanned_not_saved": "Scanned, but the pass could not be saved.",
    "expired": "QR code expired. Run the command again for a new one.",
    "cancelled": "Pairing cancelled.",
}


def _parse_fields(fields: tuple[str, ...]) -> dict[str, str]:
    parsed = {}
    for item in fields:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got {item!r}", param_hint="--field")
        parsed[key] = value
    return parsed


def _report_cancel_failure(task) -> None:
    """Done callback for the Ctrl+C cancel task."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        click.echo(f"\nWarning: server did not accept the cancel: {error}", err=True)


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """qrpass - Create wallet passes by scanning a QR code."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


@main.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the pairing server."""
    import asyncio

    from qrpass.daemon import Daemon, StartupError

    config = ctx.obj["config"]

    async def _serve():
        daemon = Daemon(config=config)

        try:
            await daemon.start()
            click.echo(f"Pairing server started on port {daemon.get_port()}")
            click.echo("Press Ctrl+C to stop")
            await daemon.run_forever()
        except StartupError as e:
            click.echo(f"Startup error: {e}", err=True)
            raise SystemExit(1)
        finally:
            await daemon.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        pass


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"qrpass version {__version__}")


@main.command()
def kinds() -> None:
    """List the pass kinds a QR code can create."""
    registry = PassKindRegistry()
    click.echo(f"{'KIND':<16} {'LABEL':<16} {'REQUIRED FIELDS'}")
    click.echo("-" * 60)
    for kind in registry.all():
        click.echo(f"{kind.name:<16} {kind.label:<16} {', '.join(kind.required)}")


@main.command()
@click.argument("kind")
@click.option(
    "--field",
    "-f",
    "fields",
    multiple=True,
    help="Template field as KEY=VALUE (overrides the sample data).",
)
@click.option(
    "--lifetime",
    "-l",
    type=int,
    default=None,
    help="QR code lifetime in seconds.",
)
@click.option(
    "--browser",
    "-b",
    is_flag=True,
    help="Open QR code in browser.",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default=None,
    help="Save QR code to file.",
)
@click.option("--server", "server_url", default=None, help="Pairing server URL.")
@click.option("--token", default=None, help="Bearer token for the pairing server.")
@click.pass_context
def pair(
    ctx: click.Context,
    kind: str,
    fields: tuple[str, ...],
    lifetime: int | None,
    browser: bool,
    output: str | None,
    server_url: str | None,
    token: str | None,
) -> None:
    """Show a QR code that creates a KIND pass when scanned."""
    import asyncio

    config = ctx.obj["config"]
    registry = PassKindRegistry()
    if kind not in registry:
        click.echo(f"Error: Unknown pass kind '{kind}'. Known: {', '.join(registry.names())}", err=True)
        raise SystemExit(1)

    data = registry.get(kind).sample()
    data.update(_parse_fields(fields))

    async def _pair() -> int:
        import signal
        import tempfile
        import webbrowser

        import aiohttp

        from qrpass.client import (
            ApiError,
            PairingApiClient,
            PairingWatcher,
            SessionGoneApiError,
            WatchOutcome,
        )
        from qrpass.qr import QrGenerator

        base_url = server_url or config.client.server_url
        async with PairingApiClient(base_url, token or config.client.token) as client:
            # 1. Create the session
            try:
                created = await client.create_session(kind, data, lifetime)
            except aiohttp.ClientConnectorError:
                click.echo("Error: Cannot connect to pairing server. Is it running?", err=True)
                click.echo("Start the server with: qrpass serve", err=True)
                return 1
            except ApiError as e:
                click.echo(f"Error: {e}", err=True)
                return 1

            session_id = created["sessionId"]
            qr_gen = QrGenerator(created["payload"])

            # 2. Display QR code
            if browser:
                html = qr_gen.to_html(f"Scan to add your {registry.get(kind).label}")
                with tempfile.NamedTemporaryFile(suffix=".html", delete=False, mode="w") as f:
                    f.write(html)
                    webbrowser.open(f"file://{f.name}")
                click.echo("QR code opened in browser")
            elif output:
                qr_gen.to_png(output)
                click.echo(f"QR code saved to: {output}")
            else:
                click.echo(qr_gen.to_terminal())
                click.echo("Scan this QR code with your phone camera")
            click.echo(created["payload"])

            # 3. Count down and poll until something happens
            def on_tick(remaining: int) -> None:
                click.echo(f"\rExpires in {format_countdown(remaining)} ", nl=False)

            async def on_refresh(result) -> None:
                ref = result.result_ref
                if ref is None:
                    try:
                        status = await client.get_status(session_id)
                        ref = status.get("resultRef")
                    except ApiError:
                        ref = None
                if ref:
                    click.echo(f"Pass {ref[:8]} is ready")

            watcher = PairingWatcher(
                client,
                session_id,
                created["expiresAt"],
                poll_interval=config.client.poll_interval,
                refresh_delay=config.client.refresh_delay,
                on_tick=on_tick,
                on_refresh=on_refresh,
            )

            cancelling: list[asyncio.Task] = []

            def on_interrupt() -> None:
                if cancelling:
                    return
                task = asyncio.create_task(watcher.cancel())
                task.add_done_callback(_report_cancel_failure)
                cancelling.append(task)

            loop = asyncio.get_running_loop()
            loop.add_signal_handler(signal.SIGINT, on_interrupt)
            try:
                await watcher.start()
                result = await watcher.wait()
            finally:
                loop.remove_signal_handler(signal.SIGINT)
                await watcher.stop()

            click.echo("")
            outcome = result.outcome
            click.echo(OUTCOME_MESSAGES[outcome.value], err=outcome is not WatchOutcome.SCANNED)
            if result.error:
                click.echo(f"Reason: {result.error}", err=True)

            # 4. The session is finished; let the server clean it up now
            try:
                await client.acknowledge(session_id)
            except SessionGoneApiError:
                pass
            except ApiError as e:
                ctx.obj["logger"].debug(f"Acknowledge failed: {e}")

            return 0 if outcome is WatchOutcome.SCANNED else 1

    raise SystemExit(asyncio.run(_pair()))


@main.command()
@click.option("--server", "server_url", default=None, help="Pairing server URL.")
@click.option("--token", default=None, help="Bearer token for the pairing server.")
@click.pass_context
def sessions(ctx: click.Context, server_url: str | None, token: str | None) -> None:
    """List your pairing sessions on the server."""
    import asyncio

    import aiohttp

    from qrpass.client import ApiError, PairingApiClient

    config = ctx.obj["config"]

    async def _list() -> int:
        base_url = server_url or config.client.server_url
        async with PairingApiClient(base_url, token or config.client.token) as client:
            try:
                body = await client.list_sessions()
            except aiohttp.ClientConnectorError:
                click.echo("Error: Cannot connect to pairing server. Is it running?", err=True)
                return 1
            except ApiError as e:
                click.echo(f"Error: {e}", err=True)
                return 1

        items = body.get("sessions", [])
        if not items:
            click.echo("No pairing sessions.")
            return 0

        click.echo(f"{'ID':<10} {'KIND':<16} {'STATUS':<10} {'EXPIRES IN'}")
        click.echo("-" * 50)
        for item in items:
            click.echo(
                f"{item['sessionId'][:8]:<10} "
                f"{item.get('targetKind', ''):<16} "
                f"{item['status']:<10} "
                f"{format_countdown(item.get('timeRemaining'))}"
            )
        return 0

    raise SystemExit(asyncio.run(_list()))


@main.group()
def passes() -> None:
    """Pass management commands."""
    pass


@passes.command("list")
@click.option("--full", is_flag=True, help="Show full pass IDs")
@click.pass_context
def passes_list(ctx: click.Context, full: bool) -> None:
    """List passes created by scans."""
    import asyncio

    async def _list():
        config = ctx.obj["config"]
        store = JsonPassStore(Path(config.passes_file).expanduser())
        await store.load()

        all_passes = store.all()

        if not all_passes:
            click.echo("No passes.")
            return

        click.echo(f"{'ID':<12} {'KIND':<16} {'TITLE':<24} {'CREATED'}")
        click.echo("-" * 70)

        for created in sorted(all_passes, key=lambda p: p.created_at, reverse=True):
            pass_id_display = created.pass_id if full else created.pass_id[:8]
            click.echo(
                f"{pass_id_display:<12} "
                f"{created.kind:<16} "
                f"{created.title[:24]:<24} "
                f"{format_time_ago(created.created_at)}"
            )

    asyncio.run(_list())
