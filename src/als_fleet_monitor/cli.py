"""Click CLI for the ALS fleet monitor.

Entry point registered in ``pyproject.toml`` as ``als-fleet-monitor``.

Subcommands::

    als-fleet-monitor                           # run the monitor
    als-fleet-monitor send-command ID REBOOT    # publish a device command
    als-fleet-monitor secrets init              # create the encrypted store
    als-fleet-monitor secrets set NAME          # store a secret (prompts)
    als-fleet-monitor secrets unset NAME        # remove a secret
    als-fleet-monitor secrets list              # list secret names
    als-fleet-monitor secrets rekey NEW_KEY     # re-encrypt under a new key

The ``secrets`` group reads ``--key-file`` / ``ALS_KEY_FILE`` and
``--secrets-file`` / ``ALS_SECRETS_FILE``.
"""

from __future__ import annotations

import asyncio
import locale
import logging
import os
import signal
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Iterator, Optional

import click
from cryptography.exceptions import InvalidTag

from als_fleet_monitor import __version__
from als_fleet_monitor.commands import (
    DESTRUCTIVE_COMMANDS,
    CommandError,
    build_command,
    command_topic,
)
from als_fleet_monitor.config import AppConfig, apply_broker_url, load_config
from als_fleet_monitor.connection import MqttConnection
from als_fleet_monitor.logsetup import collect_secret_values, setup_logging
from als_fleet_monitor.monitor import FleetMonitor
from als_fleet_monitor.output import FileSink, StdoutSink
from als_fleet_monitor.persistence import NdjsonPersister
from als_fleet_monitor.secrets import (
    SecretsError,
    SecretsFile,
    create_key_file,
    init_secrets,
    load_secrets,
)

logger = logging.getLogger("als_fleet_monitor")

DEFAULT_CONFIG = "/etc/als-fleet-monitor/config.json"
DEFAULT_SECRETS_FILE = "/etc/als-fleet-monitor/.secrets.enc"
DRY_RUN_MESSAGES = 5


def _stored_secrets() -> dict[str, str]:
    """Secrets for placeholder resolution; empty unless key and store exist."""
    key_file = os.environ.get("ALS_KEY_FILE")
    store = Path(os.environ.get("ALS_SECRETS_FILE", DEFAULT_SECRETS_FILE))
    if not key_file or not Path(key_file).exists() or not store.exists():
        return {}
    return load_secrets(store, key_file)


def _resolve_config(
    config_path: Optional[str],
    broker_password: Optional[str],
    broker_url: Optional[str],
) -> AppConfig:
    """Load the config the way every command sees it, or exit 1."""
    cfg_path = config_path or os.environ.get("ALS_CONFIG", DEFAULT_CONFIG)

    overrides = {"ALS_BROKER_PASSWORD": broker_password} if broker_password else {}
    try:
        cfg = load_config(cfg_path, overrides=overrides, secrets=_stored_secrets())
        if broker_url:
            apply_broker_url(cfg.broker, broker_url)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    if broker_password:
        cfg.broker.password = broker_password
    if os.environ.get("ALS_OUTPUT_DIR"):
        cfg.persistence.output_dir = os.environ["ALS_OUTPUT_DIR"]
    return cfg


def _configure_logging(cfg: AppConfig, log_level: Optional[str]) -> None:
    effective_level = log_level or os.environ.get("ALS_LOG_LEVEL") or cfg.logging.level
    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    setup_logging(effective_level, secret_values, cfg.logging.file)


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-o", "--output", "output_mode", type=click.Choice(["stdout", "file", "none"]),
              default=None, help="Persistence output (default: from config).")
@click.option("-d", "--output-dir", default=None, help="Override output directory.")
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--dry-run", is_flag=True, help=f"Process {DRY_RUN_MESSAGES} messages then exit.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.option("--broker-password", default=None, help="Override broker password.")
@click.option("--broker-url", default=None,
              help="Override broker endpoint, e.g. wss://host:8884/mqtt.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    output_mode: Optional[str],
    output_dir: Optional[str],
    config_path: Optional[str],
    log_level: Optional[str],
    dry_run: bool,
    validate_only: bool,
    broker_password: Optional[str],
    broker_url: Optional[str],
) -> None:
    """ALS fleet monitor: MQTT device telemetry to live state and NDJSON."""
    ctx.obj = {
        "config_path": config_path,
        "log_level": log_level,
        "broker_password": broker_password,
        "broker_url": broker_url,
    }
    if ctx.invoked_subcommand is not None:
        return

    cfg = _resolve_config(config_path, broker_password, broker_url)
    effective_output = output_mode or os.environ.get("ALS_OUTPUT") or cfg.persistence.output
    if output_dir:
        cfg.persistence.output_dir = output_dir

    _configure_logging(cfg, log_level)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    try:
        locale.setlocale(locale.LC_COLLATE, "")
    except locale.Error as exc:
        logger.warning("Keeping the C collation order for device labels: %s", exc)

    logger.info(
        "Starting als-fleet-monitor %s (instance=%s, output=%s)",
        __version__,
        cfg.instance_id,
        effective_output,
    )
    asyncio.run(_run_monitor(cfg, effective_output, DRY_RUN_MESSAGES if dry_run else None))


# ── async service ───────────────────────────────────────────────────


def _build_persister(cfg: AppConfig, output_mode: str) -> Optional[NdjsonPersister]:
    if output_mode == "none":
        return None
    if output_mode == "stdout":
        return NdjsonPersister(StdoutSink())

    pc = cfg.persistence
    return NdjsonPersister(
        FileSink(
            output_dir=pc.output_dir,
            prefix=pc.file_prefix,
            instance_id=cfg.instance_id,
            rotation_seconds=pc.rotation.interval_seconds,
            rotation_bytes=pc.rotation.max_size_bytes,
            flush_every_n=pc.flush.every_n_events,
            flush_interval_ms=pc.flush.interval_ms,
        )
    )


async def _run_monitor(cfg: AppConfig, output_mode: str, limit: Optional[int]) -> None:
    loop = asyncio.get_running_loop()
    persister = _build_persister(cfg, output_mode)
    monitor = FleetMonitor(cfg, persister=persister)
    conn = MqttConnection(cfg.broker)

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        monitor.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            pass  # Windows

    try:
        await monitor.run(conn, limit=limit)
    finally:
        if persister is not None:
            persister.close()


# ── send-command ────────────────────────────────────────────────────


@main.command("send-command")
@click.argument("device_id")
@click.argument("command")
@click.argument("value", required=False)
@click.option("-y", "--yes", is_flag=True, help="Do not ask before destructive commands.")
@click.option("--timeout", default=10.0, show_default=True,
              help="Seconds to wait for the broker.")
@click.pass_obj
def send_command(
    obj: dict,
    device_id: str,
    command: str,
    value: Optional[str],
    yes: bool,
    timeout: float,
) -> None:
    """Publish COMMAND (with optional VALUE) to DEVICE_ID."""
    cfg = _resolve_config(obj["config_path"], obj["broker_password"], obj["broker_url"])
    try:
        payload = build_command(command, value)
        topic = command_topic(cfg.broker.namespace, device_id)
    except CommandError as exc:
        click.echo(f"Command error: {exc}", err=True)
        raise SystemExit(2) from exc

    _configure_logging(cfg, obj["log_level"])

    if payload in DESTRUCTIVE_COMMANDS and not yes:
        click.confirm(f"Send {payload} to {device_id}?", abort=True)

    if not asyncio.run(_publish_once(cfg, topic, payload, timeout)):
        click.echo(f"Failed to send {payload} to {device_id}", err=True)
        raise SystemExit(1)
    click.echo(f"Sent {payload} to {topic}")


async def _publish_once(cfg: AppConfig, topic: str, payload: str, timeout: float) -> bool:
    conn = MqttConnection(cfg.broker)
    conn.start()
    try:
        if not await conn.wait_connected(timeout):
            logger.error("Broker not reachable within %.1fs (state %s)", timeout, conn.state.value)
            return False
        if not conn.publish(topic, payload):
            return False
        return await conn.drain(timeout)
    finally:
        conn.stop()


# ── secrets ─────────────────────────────────────────────────────────


@main.group()
@click.option("--key-file", envvar="ALS_KEY_FILE", required=True,
              help="Master key file (32 raw bytes).  Env: ALS_KEY_FILE.")
@click.option("--secrets-file", envvar="ALS_SECRETS_FILE", default=DEFAULT_SECRETS_FILE,
              show_default=True, help="Encrypted store.  Env: ALS_SECRETS_FILE.")
@click.pass_obj
def secrets(obj: dict, key_file: str, secrets_file: str) -> None:
    """Manage the encrypted store that backs ``${VAR}`` placeholders."""
    obj["key_file"] = key_file
    obj["secrets_file"] = secrets_file


def _open_store(obj: dict) -> SecretsFile:
    return SecretsFile.open(obj["secrets_file"], obj["key_file"])


@contextmanager
def _store_errors(obj: dict) -> Iterator[None]:
    """Turn an unreadable store or a wrong key into exit 1 with a message."""
    try:
        yield
    except InvalidTag as exc:
        click.echo(
            f"Secrets error: cannot decrypt {obj['secrets_file']} "
            f"with {obj['key_file']} (wrong key or corrupted file)",
            err=True,
        )
        raise SystemExit(1) from exc
    except (OSError, SecretsError) as exc:
        click.echo(f"Secrets error: {exc}", err=True)
        raise SystemExit(1) from exc


@secrets.command("init")
@click.pass_obj
def secrets_init(obj: dict) -> None:
    """Create an empty store, generating the key file if it does not exist."""
    with _store_errors(obj):
        init_secrets(obj["secrets_file"], obj["key_file"])
    click.echo(f"Created {obj['secrets_file']} (key: {obj['key_file']})")


@secrets.command("set")
@click.argument("name")
@click.option("--value", prompt=True, hide_input=True, help="Omit to be prompted.")
@click.pass_obj
def secrets_set(obj: dict, name: str, value: str) -> None:
    """Store NAME, replacing any previous value."""
    with _store_errors(obj):
        _open_store(obj).set(name, value)
    click.echo(f"Stored {name}")


@secrets.command("unset")
@click.argument("name")
@click.pass_obj
def secrets_unset(obj: dict, name: str) -> None:
    """Remove NAME from the store."""
    with _store_errors(obj):
        removed = _open_store(obj).unset(name)
    if not removed:
        click.echo(f"No secret named {name}", err=True)
        raise SystemExit(1)
    click.echo(f"Removed {name}")


@secrets.command("list")
@click.pass_obj
def secrets_list(obj: dict) -> None:
    """Print stored names, one per line.  Values are never printed."""
    with _store_errors(obj):
        names = _open_store(obj).names()
    for name in names:
        click.echo(name)


@secrets.command("rekey")
@click.argument("new_key_file")
@click.pass_obj
def secrets_rekey(obj: dict, new_key_file: str) -> None:
    """Re-encrypt the store under NEW_KEY_FILE (created if missing)."""
    with _store_errors(obj):
        _open_store(obj).rekey(create_key_file(new_key_file))
    click.echo(f"Store now encrypted with {new_key_file}; update ALS_KEY_FILE")
