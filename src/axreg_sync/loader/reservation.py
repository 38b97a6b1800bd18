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
"""Reserves storage identifiers from the shared counter table."""

import logging

import psycopg
from psycopg import sql

from ..models import ReservedIdentifier

logger = logging.getLogger(__name__)


async def reserve_identifier(
    conn: psycopg.AsyncConnection,
    *,
    unit: int,
    counter_key: str,
    counter_table: sql.Composable,
    storage_table: sql.Composable,
    lock_timeout_ms: int,
) -> ReservedIdentifier:
    """Claim the next storage identifier for `unit`.

    Must run inside the caller's open transaction; the locks taken here are
    held until that transaction ends, and a rollback undoes the counter
    advance.

    The counter row is locked FOR UPDATE, then the storage table is locked
    against concurrent writers so its maximum identifier cannot move while
    the new row is inserted. The counter is advanced to
    `max(storage max, counter) + 1`, which skips past identifiers written
    without going through the counter.

    Args:
        conn: An async connection with an open transaction.
        unit: The organizational unit both tables are scoped to.
        counter_key: Name of the counter row within the unit.
        counter_table: Composed identifier of the counter table.
        storage_table: Composed identifier of the binary storage table.
        lock_timeout_ms: Maximum wait for each lock before the driver raises.

    Raises:
        psycopg.errors.LockNotAvailable: A lock was not granted in time.

    """
    async with conn.cursor() as cur:
        await cur.execute(
            "SELECT set_config('lock_timeout', %s, true)", (f"{lock_timeout_ms}ms",),
        )

        await cur.execute(
            sql.SQL(
                "INSERT INTO {table} (unit, counter_key, value) VALUES (%s, %s, 0) "
                "ON CONFLICT (unit, counter_key) DO NOTHING",
            ).format(table=counter_table),
            (unit, counter_key),
        )
        await cur.execute(
            sql.SQL(
                "SELECT value FROM {table} WHERE unit = %s AND counter_key = %s "
                "FOR UPDATE",
            ).format(table=counter_table),
            (unit, counter_key),
        )
        row = await cur.fetchone()
        counter_before = int(row[0] or 0)

        await cur.execute(
            sql.SQL("LOCK TABLE {table} IN SHARE ROW EXCLUSIVE MODE").format(
                table=storage_table,
            ),
        )
        await cur.execute(
            sql.SQL("SELECT COALESCE(MAX(id), 0) FROM {table} WHERE unit = %s").format(
                table=storage_table,
            ),
            (unit,),
        )
        row = await cur.fetchone()
        max_before = int(row[0] or 0)

        next_value = max(max_before, counter_before) + 1
        await cur.execute(
            sql.SQL(
                "UPDATE {table} SET value = %s WHERE unit = %s AND counter_key = %s",
            ).format(table=counter_table),
            (next_value, unit, counter_key),
        )

    if max_before > counter_before:
        logger.warning(
            "Counter %s for unit %d was behind storage (counter=%d, max=%d)",
            counter_key,
            unit,
            counter_before,
            max_before,
        )
    logger.debug(
        "Reserved identifier %d (counter before=%d, max before=%d)",
        next_value,
        counter_before,
        max_before,
    )
    return ReservedIdentifier(
        value=next_value, counter_before=counter_before, max_before=max_before,
    )
