"""Command-line interface for the lot telemetry simulator."""

import json
import logging
import sys
from pathlib import Path

import click
from faker import Faker

from . import __version__
from .analytics import backfill_lots
from .config import Config, format_duration
from .metadata_store import MetadataStore
from .models import LotError
from .runtime import build_timeseries, run_service

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _open_store(config: Config) -> MetadataStore:
    store = MetadataStore.from_config(config.database)
    store.ensure_schema()
    return store


def generate_lot_number(faker: Faker = None) -> str:
    faker = faker or Faker()
    return faker.bothify("LOT-####-????").upper()


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="YAML configuration file",
)
@click.option(
    "--log-level",
    default=None,
    help="Log level (DEBUG, INFO, WARNING, ERROR)",
)
@click.pass_context
def main(ctx, config_path, log_level):
    """Lot Telemetry Simulator - synthetic sensor data and lot completion.

    Simulates operational sensors on a rotating set of machines, writes the
    readings to a time-series store and marks manufacturing lots completed
    when a machine rotation finishes or the lot's machine has gone idle.

    Completion strategies:
      cycle:     complete lots when every machine has been visited
      threshold: complete lots when all sensors report down
      both:      run both, first one wins
    """
    config = Config.load(config_path)
    if log_level:
        config.log_level = log_level
    _setup_logging(config.log_level)
    if config_path:
        logger.info(f"configuration loaded from {config_path}")
    ctx.obj = config


@main.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Keep sensor points in memory and log MQTT events instead of publishing",
)
@click.pass_obj
def run(config, dry_run):
    """Start the simulator, coordinator and completion detector."""
    click.echo("=" * 60)
    click.echo("Lot Telemetry Simulator")
    click.echo("=" * 60)
    click.echo(f"Tick:      {format_duration(config.simulation.tick_interval)}")
    click.echo(f"Machines:  {len({s.machine for s in config.sensors})}")
    click.echo(f"Sensors:   {len(config.sensors)}")
    click.echo(f"Strategy:  {config.completion.strategy}")
    click.echo(f"Database:  {config.database.url}")
    if dry_run:
        click.echo("Time-series: in memory (dry run)")
    else:
        click.echo(f"Time-series: {config.influx.url} bucket={config.influx.bucket}")
    click.echo()

    run_service(config, dry_run=dry_run)


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
@click.pass_obj
def init(config, output):
    """Generate a sample configuration file."""
    output.mkdir(parents=True, exist_ok=True)

    config_path = output / "config.yaml"
    Config.default().to_yaml(config_path)

    click.echo(f"Created: {config_path}")
    click.echo()
    click.echo("Edit the config file to customize:")
    click.echo("  - InfluxDB and database connections")
    click.echo("  - Sensor catalogue and dwell ranges")
    click.echo("  - Completion strategy and thresholds")
    click.echo()
    click.echo(f"Run with: lot-telemetry-sim --config {config_path} run")


@main.command("create-lot")
@click.argument("lot_number", required=False)
@click.option("--machine", "-m", default=None, help="Machine processing the lot")
@click.pass_obj
def create_lot(config, lot_number, machine):
    """Register a new lot in processing state.

    A lot number is generated when none is given.
    """
    lot_number = lot_number or generate_lot_number()
    store = _open_store(config)
    try:
        lot = store.create_lot(lot_number, machine)
    except LotError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()

    click.echo(f"Created lot {lot.lot_number} on {lot.machine_name}")


@main.command()
@click.option("--json", "as_json", is_flag=True, default=False, help="Output JSON")
@click.option(
    "--products",
    is_flag=True,
    default=False,
    help="Output product data JSON, filling gaps from completion summaries",
)
@click.pass_obj
def lots(config, as_json, products):
    """List lots, most recent first."""
    store = _open_store(config)
    try:
        records = store.list_lots()
    finally:
        store.close()

    if products:
        try:
            payload = [lot.product_data().to_dict() for lot in records]
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(json.dumps(payload, indent=2))
        return

    if as_json:
        click.echo(json.dumps([lot.to_dict() for lot in records], indent=2))
        return

    if not records:
        click.echo("No lots")
        return

    for lot in records:
        line = f"{lot.lot_number:<20} {lot.machine_name:<24} {lot.status.value:<11}"
        if lot.completed_at:
            line += f" completed {lot.completed_at:%Y-%m-%d %H:%M:%S}"
        if lot.operation_hour is not None:
            line += f" {lot.operation_hour:.1f}h"
        click.echo(line.rstrip())
        averages = lot.averages()
        for name in sorted(averages):
            click.echo(f"    {name:<24} avg {averages[name]:.2f}")


@main.command("delete-lot")
@click.argument("lot_number")
@click.pass_obj
def delete_lot(config, lot_number):
    """Delete a lot by number."""
    store = _open_store(config)
    try:
        store.delete_lot_by_number(lot_number)
    except LotError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()

    click.echo(f"Deleted lot {lot_number}")


@main.command("set-outcome")
@click.argument("lot_number")
@click.option("--good", type=click.IntRange(min=0), default=None, help="Good product count")
@click.option("--defect", type=click.IntRange(min=0), default=None, help="Defect product count")
@click.option("--conclusion", default=None, help="Free-text conclusion")
@click.pass_obj
def set_outcome(config, lot_number, good, defect, conclusion):
    """Record production counts and a conclusion for a lot."""
    store = _open_store(config)
    try:
        lot = store.update_lot_outcome(lot_number, good, defect, conclusion)
    except LotError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        store.close()

    click.echo(f"Updated lot {lot.lot_number}")
    click.echo(f"  Good:       {lot.good_product}")
    click.echo(f"  Defect:     {lot.defect_product}")
    click.echo(f"  Conclusion: {lot.conclusion or '-'}")


@main.command()
@click.option(
    "--measurement",
    default=None,
    help="Measurement to average (defaults to the simulation measurement)",
)
@click.pass_obj
def backfill(config, measurement):
    """Store sensor averages and operation hours for completed lots."""
    timeseries = build_timeseries(config)
    if timeseries is None:
        click.echo("Error: time-series store unavailable", err=True)
        sys.exit(1)

    store = _open_store(config)
    try:
        updated = backfill_lots(store, timeseries, measurement or config.simulation.measurement)
    finally:
        store.close()
        timeseries.close()

    click.echo(f"Backfilled {len(updated)} lot(s)")
    for lot_number in updated:
        click.echo(f"  {lot_number}")


@main.command()
@click.pass_obj
def status(config):
    """Show configuration and lot status information."""
    click.echo("Lot Telemetry Simulator")
    click.echo("=" * 40)
    click.echo()

    sim = config.simulation
    click.echo("Simulation:")
    click.echo(f"  Tick interval:          {format_duration(sim.tick_interval)}")
    click.echo(f"  Iterations per machine: {sim.iterations_per_machine}")
    click.echo(f"  Measurement:            {sim.measurement}")
    click.echo()

    completion = config.completion
    click.echo("Completion:")
    click.echo(f"  Strategy:         {completion.strategy}")
    click.echo(f"  Poll interval:    {format_duration(completion.poll_interval)}")
    click.echo(f"  Lookback:         {format_duration(completion.lookback)}")
    click.echo(f"  Samples required: {completion.samples_required}")
    click.echo(f"  Zero threshold:   {completion.zero_threshold}")
    click.echo()

    store = _open_store(config)
    try:
        active = store.list_active_lots()
        total = len(store.list_lots())
    finally:
        store.close()

    click.echo("Lots:")
    click.echo(f"  Total:      {total}")
    click.echo(f"  Processing: {len(active)}")
    for lot in active:
        click.echo(f"    {lot.lot_number} ({lot.machine_name})")


if __name__ == "__main__":
    main()
