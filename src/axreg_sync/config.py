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
"""Manages the application's configuration using Pydantic."""

from datetime import datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Manages configuration for the synchronization job.

    Reads settings from environment variables with the prefix 'AXREG_'
    and from a local '.env' file when present.
    """

    model_config = SettingsConfigDict(
        env_prefix="AXREG_", env_file=".env", extra="ignore",
    )

    # Remote AXREG API
    api_url: str = "http://localhost:8080"
    institution_key: str = ""
    integrator_key: str = ""
    request_timeout: float = 30.0
    page_size: int = Field(default=400, gt=0)

    # Run window
    updated_after: str | None = None
    procedures_lookback_days: int = 30
    window_hours: int = Field(default=24, gt=0)
    document_type: str = "TRANS"
    timezone: str = "America/Sao_Paulo"
    max_concurrency: int = Field(default=8, gt=0)

    # Destination database
    db_host: str = "localhost"
    db_port: int = 5432
    db_user: str = "postgres"
    # S105: Hardcoded password is used for local development.
    # In production, this should be set via environment variables.
    db_password: str = "postgres"
    db_name: str = "rm"
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10
    db_connect_timeout: float = 30.0
    lock_timeout_ms: int = 15000

    # Destination layout. Table names may be schema-qualified ("schema.table").
    unit: int = 1
    counter_key: str = "AXREG_PDF"
    counter_table: str = "gautoinc"
    storage_table: str = "document_storage"
    dedup_table: str = "axreg_imported_pdfs"
    patient_table: str = "local_patients"
    encounter_table: str = "local_encounters"
    created_by: str = "axreg"
    file_name_template: str = "AXREG_{identifier}.pdf"

    # Error logs and diagnostics
    errors_dir: Path = Path("/mnt/zarquivos/Errors-AXREG")
    errors_fallback_dir: Path = Path("logs/errors")
    debug_report: bool = False
    report_dir: Path = Path("logs")

    @computed_field
    @property
    def db_connection_string(self) -> str:
        """Construct the libpq connection string from individual settings."""
        return (
            f"host='{self.db_host}' port='{self.db_port}' "
            f"user='{self.db_user}' password='{self.db_password}' "
            f"dbname='{self.db_name}'"
        )

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def effective_updated_after(self, now: datetime | None = None) -> str:
        """Return the 'changed since' bound sent to the procedures endpoint.

        An explicit `updated_after` wins. Otherwise the bound is the start of
        the day `procedures_lookback_days` before `now`, in the local timezone.
        """
        if self.updated_after:
            return self.updated_after
        now = now or datetime.now(self.tzinfo)
        start = (now - timedelta(days=self.procedures_lookback_days)).replace(
            hour=0, minute=0, second=0, microsecond=0,
        )
        return start.strftime("%Y-%m-%d %H:%M:%S")
