# Copyright 2025 Gowtham Rao <rao@ohdsi.org>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Command line entry point for the AXREG synchronization job."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import psycopg
import typer
import yaml
from psycopg_pool import PoolTimeout

from axreg_sync.config import Settings
from axreg_sync.error_log import ErrorLog, FallbackState
from axreg_sync.extractor import AxregExtractor
from axreg_sync.loader.postgres import PostgresStore, create_pool
from axreg_sync.models import RunSummary
from axreg_sync.pipeline import IngestionPipeline

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = typer.Typer(help="Copies AXREG transfer PDFs into the local document storage.")

POOL_ERRORS = (PoolTimeout, psycopg.OperationalError)


def load_config(config_file: str | None) -> Dict[str, Any]:
    """Loads configuration from a YAML file."""
    if config_file:
        try:
            with open(config_file, "r") as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.warning("Config file not found: %s", config_file)
    return {}


def build_settings(config_file: str | None, **overrides: Any) -> Settings:
    """Merge environment, YAML file and command line values, in that order."""
    config = load_config(config_file)
    config.update({key: value for key, value in overrides.items() if value is not None})
    return Settings(**config)


async def _open_pool(settings: Settings):
    pool = create_pool(settings)
    try:
        await pool.open(wait=True, timeout=settings.db_connect_timeout)
    except POOL_ERRORS as e:
        logger.error("Could not open the destination connection pool: %s", e, exc_info=True)
        await pool.close()
        raise
    return pool


async def arun_pipeline(settings: Settings) -> RunSummary:
    """Run one synchronization window against the configured API and database."""
    start_time = datetime.now(timezone.utc)
    logger.info("Starting AXREG synchronization run.")

    pool = await _open_pool(settings)
    extractor = AxregExtractor(settings)
    try:
        store = PostgresStore(pool, settings)
        error_log = ErrorLog(
            settings.errors_dir,
            settings.errors_fallback_dir,
            FallbackState(),
            tz=settings.tzinfo,
        )
        pipeline = IngestionPipeline(settings, extractor, store, error_log)
        return await pipeline.run()
    finally:
        await extractor.aclose()
        await pool.close()
        duration = datetime.now(timezone.utc) - start_time
        logger.info("Synchronization run finished in %s.", duration)


async def ainit_schema(settings: Settings) -> None:
    pool = await _open_pool(settings)
    try:
        await PostgresStore(pool, settings).prepare_schema()
    finally:
        await pool.close()


@app.command()
def run(
    config_file: str = typer.Option(None, help="Path to YAML config file."),
    updated_after: str = typer.Option(
        None, help="Only procedures updated after 'YYYY-MM-DD HH:MM:SS'.",
    ),
    window_hours: int = typer.Option(
        None, help="Lookback window for document creation time, in hours.",
    ),
    max_concurrency: int = typer.Option(
        None, help="Maximum number of procedures processed at once.",
    ),
    debug_report: Optional[bool] = typer.Option(
        None,
        "--debug-report/--no-debug-report",
        help="Write a PDF listing the procedures seen.",
    ),
):
    """Fetch recently updated procedures and store their transfer PDFs."""
    settings = build_settings(
        config_file,
        updated_after=updated_after,
        window_hours=window_hours,
        max_concurrency=max_concurrency,
        debug_report=debug_report,
    )
    try:
        summary = asyncio.run(arun_pipeline(settings))
    except POOL_ERRORS:
        raise typer.Exit(code=1)

    typer.echo(
        f"Inserted: {summary.inserted} | "
        f"Skipped (duplicate): {summary.skipped} | "
        f"Failed: {summary.failed}"
    )


@app.command("init-schema")
def init_schema(
    config_file: str = typer.Option(None, help="Path to YAML config file."),
):
    """Create the dedup table if it does not exist."""
    settings = build_settings(config_file)
    try:
        asyncio.run(ainit_schema(settings))
    except POOL_ERRORS:
        raise typer.Exit(code=1)
    typer.echo(f"Dedup table {settings.dedup_table} is ready.")


def main():
    app()


if __name__ == "__main__":
    main()
