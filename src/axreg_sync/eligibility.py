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
"""Decides which remote documents may be ingested for a procedure."""

import re
from collections.abc import Iterable
from datetime import datetime, timedelta, tzinfo
from typing import NamedTuple

from .models import EligibleDocument, PatientDocument

DEFAULT_WINDOW_HOURS = 24
TRANSFER_DOCUMENT_TYPE = "TRANS"

_NON_DIGITS = re.compile(r"\D")


class EligibilityResult(NamedTuple):
    eligible: list[EligibleDocument]
    missing_timestamp: list[PatientDocument]


def normalize_cpf(value: str | None) -> str:
    """Strip every non-digit character from a national ID.

    Returns an empty string for None, blank or all-punctuation input.
    """
    if not value:
        return ""
    return _NON_DIGITS.sub("", value)


def parse_instant(value: str | None, default_tz: tzinfo) -> datetime | None:
    """Parse a remote timestamp into an aware datetime.

    Accepts ISO 8601 with either 'T' or a space separator. Naive values are
    interpreted in `default_tz`. Returns None when the value is absent or
    cannot be parsed.
    """
    if value is None or not str(value).strip():
        return None
    text = str(value).strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed


def select_eligible(
    documents: Iterable[PatientDocument],
    procedure_id: int,
    now: datetime,
    *,
    default_tz: tzinfo | None = None,
    window_hours: int = DEFAULT_WINDOW_HOURS,
    document_type: str = TRANSFER_DOCUMENT_TYPE,
) -> EligibilityResult:
    """Select the documents of one procedure that fall inside the run window.

    Rules are applied in order: document type, owning procedure, presence of
    a creation timestamp, then `now - window_hours <= created_at <= now`
    (both bounds inclusive). Documents that pass the first two rules but
    carry no usable timestamp are returned separately so the caller can
    report them. Eligible documents are sorted oldest first.

    `now` must be timezone-aware. Naive timestamps are read in `default_tz`,
    or in the zone of `now` when none is given.
    """
    if now.tzinfo is None:
        raise ValueError("'now' must be a timezone-aware datetime")

    lower = now - timedelta(hours=window_hours)
    eligible: list[EligibleDocument] = []
    missing: list[PatientDocument] = []

    for document in documents:
        if document.type != document_type:
            continue
        if document.procedure_id != procedure_id:
            continue
        created_at = parse_instant(document.created_at, default_tz or now.tzinfo)
        if created_at is None:
            missing.append(document)
            continue
        if lower <= created_at <= now:
            eligible.append(EligibleDocument(document=document, created_at=created_at))

    eligible.sort(key=lambda item: item.created_at)
    return EligibilityResult(eligible=eligible, missing_timestamp=missing)
