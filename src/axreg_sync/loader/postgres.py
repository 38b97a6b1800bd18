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
"""Provides the PostgreSQL destination store."""

import importlib.resources
import logging
from datetime import datetime

from jinja2 import Environment, FileSystemLoader
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from ..config import Settings
from ..models import DedupRecord, ReservedIdentifier, ResolvedOwner, StorageRecord
from .base import BaseStore
from .reservation import reserve_identifier

logger = logging.getLogger(__name__)


def table_identifier(name: str) -> sql.Composable:
    """Quote a table name, accepting an optional 'schema.table' form."""
    table_parts = name.split(".")
    if len(table_parts) == 2:
        return sql.SQL(".").join(map(sql.Identifier, table_parts))
    return sql.Identifier(name)


def create_pool(settings: Settings) -> AsyncConnectionPool:
    """Build the shared connection pool without opening it.

    The caller owns the pool: open it once at startup and close it once at
    shutdown.
    """
    return AsyncConnectionPool(
        settings.db_connection_string,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        timeout=settings.db_connect_timeout,
        open=False,
    )


class PostgresStore(BaseStore):
    """Destination store backed by a PostgreSQL connection pool."""

    def __init__(self, pool: AsyncConnectionPool, settings: Settings) -> None:
        """Initialize the store.

        Args:
            pool: An opened async connection pool, shared for the whole run.
            settings: Table names, unit and bookkeeping values.

        """
        self.pool = pool
        self.settings = settings
        self.unit = settings.unit
        self.counter_table = table_identifier(settings.counter_table)
        self.storage_table = table_identifier(settings.storage_table)
        self.dedup_table = table_identifier(settings.dedup_table)
        self.patient_table = table_identifier(settings.patient_table)
        self.encounter_table = table_identifier(settings.encounter_table)

        sql_path = importlib.resources.files("axreg_sync") / "sql"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(sql_path)),
            autoescape=False,  # SQL is not HTML
        )

    async def prepare_schema(self) -> None:
        async with self.pool.connection() as conn:
            template = self.jinja_env.get_template("create_dedup_table.sql")
            ddl = template.render(table=self.dedup_table.as_string(conn))
            await conn.execute(ddl)
        logger.info("Dedup table %s is ready.", self.settings.dedup_table)

    async def is_imported(self, pdf_id: int) -> bool:
        async with self.pool.connection() as conn:
            cur = await conn.execute(
                sql.SQL(
                    "SELECT 1 FROM {table} WHERE unit = %s AND pdf_id = %s",
                ).format(table=self.dedup_table),
                (self.unit, pdf_id),
            )
            return await cur.fetchone() is not None

    async def resolve_owner(self, cpf: str) -> ResolvedOwner | None:
        query = sql.SQL(
            """
            SELECT p.patient_key::text AS patient_key,
                   e.encounter_key::text AS encounter_key
            FROM {patients} p
            JOIN {encounters} e
              ON e.unit = p.unit AND e.patient_key = p.patient_key
            WHERE p.unit = %s
              AND regexp_replace(coalesce(p.cpf, ''), '[^0-9]', '', 'g') = %s
            ORDER BY e.started_at DESC NULLS LAST, e.encounter_key DESC
            LIMIT 1
            """,
        ).format(patients=self.patient_table, encounters=self.encounter_table)

        async with self.pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, (self.unit, cpf))
                row = await cur.fetchone()

        if row is None:
            return None
        return ResolvedOwner(
            patient_key=(row["patient_key"] or "").strip(),
            encounter_key=(row["encounter_key"] or "").strip(),
        )

    async def store_document(
        self, owner: ResolvedOwner, content: bytes, created_at: datetime,
    ) -> ReservedIdentifier:
        async with self.pool.connection() as conn:
            async with conn.transaction():
                reserved = await reserve_identifier(
                    conn,
                    unit=self.unit,
                    counter_key=self.settings.counter_key,
                    counter_table=self.counter_table,
                    storage_table=self.storage_table,
                    lock_timeout_ms=self.settings.lock_timeout_ms,
                )
                record = StorageRecord(
                    unit=self.unit,
                    identifier=reserved.value,
                    patient_key=owner.patient_key,
                    encounter_key=owner.encounter_key,
                    file_name=self.settings.file_name_template.format(
                        identifier=reserved.value,
                    ),
                    content=content,
                    created_by=self.settings.created_by,
                    created_at=created_at,
                )
                await conn.execute(
                    sql.SQL(
                        "INSERT INTO {table} (unit, id, patient_key, encounter_key, "
                        "file_name, content, created_by, created_at) "
                        "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
                    ).format(table=self.storage_table),
                    tuple(record.model_dump().values()),
                )
        logger.debug("Stored %s under identifier %d.", record.file_name, reserved.value)
        return reserved

    async def mark_imported(self, record: DedupRecord) -> bool:
        async with self.pool.connection() as conn:
            cur = await conn.execute(
                sql.SQL(
                    "INSERT INTO {table} (unit, pdf_id, procedure_id, patient_id, "
                    "storage_id, imported_at) VALUES (%s, %s, %s, %s, %s, %s) "
                    "ON CONFLICT (unit, pdf_id) DO NOTHING",
                ).format(table=self.dedup_table),
                (
                    record.unit,
                    record.pdf_id,
                    record.procedure_id,
                    record.patient_id,
                    record.storage_id,
                    record.imported_at,
                ),
            )
            return cur.rowcount == 1
