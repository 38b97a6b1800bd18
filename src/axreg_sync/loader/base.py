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
"""Defines the abstract base class for the destination store."""

import abc
from datetime import datetime

from ..models import DedupRecord, ReservedIdentifier, ResolvedOwner


class BaseStore(abc.ABC):
    """Abstract Base Class for the local destination of ingested documents.

    The store owns every query the pipeline issues: the dedup probe, the
    local directory lookup, the storage transaction and the dedup marker.
    Implementations borrow connections from a pool handed to them at
    construction and never hold one across unrelated documents.
    """

    @abc.abstractmethod
    async def prepare_schema(self) -> None:
        """Create the tables this job owns (the dedup table) if missing."""
        raise NotImplementedError

    @abc.abstractmethod
    async def is_imported(self, pdf_id: int) -> bool:
        """Return True when a dedup marker exists for the remote document."""
        raise NotImplementedError

    @abc.abstractmethod
    async def resolve_owner(self, cpf: str) -> ResolvedOwner | None:
        """Find the local patient/encounter pair for a normalized CPF.

        When the patient has several encounters the most recent one wins.

        Returns:
            The pair, or None when nothing matches.

        """
        raise NotImplementedError

    @abc.abstractmethod
    async def store_document(
        self, owner: ResolvedOwner, content: bytes, created_at: datetime,
    ) -> ReservedIdentifier:
        """Reserve an identifier and insert the binary row in one transaction.

        Any failure rolls the whole transaction back, including the counter
        advance made by the reservation, and is raised to the caller.

        Returns:
            The identifier the row was stored under.

        """
        raise NotImplementedError

    @abc.abstractmethod
    async def mark_imported(self, record: DedupRecord) -> bool:
        """Insert the dedup marker in its own transaction.

        Must only be called after `store_document` has committed.

        Returns:
            True when a new marker was written, False when one already existed.

        """
        raise NotImplementedError
