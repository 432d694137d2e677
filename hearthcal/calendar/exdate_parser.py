"""EXDATE list parsing, inspection and matching."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Optional, Union

from hearthcal.calendar.datetime_utils import (
    datetime_to_utc_ms,
    parse_iso_any,
    parse_iso_utc_strict,
    serialize_utc_ms,
)
from hearthcal.calendar.time_errors import ExdateInvalidFormatError, ExdateOutOfRangeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeriesBounds:
    """First and last generated instants of a series (UTC ms).

    ``last_utc_ms`` is None for unbounded series.
    """

    first_utc_ms: int
    last_utc_ms: Optional[int] = None

    def contains(self, utc_ms: int) -> bool:
        if utc_ms < self.first_utc_ms:
            return False
        return self.last_utc_ms is None or utc_ms <= self.last_utc_ms


@dataclass(frozen=True)
class ExdateSet:
    """Immutable set of excluded instants (UTC ms)."""

    instants: frozenset[int] = field(default_factory=frozenset)

    def __contains__(self, utc_ms: object) -> bool:
        return utc_ms in self.instants

    def __len__(self) -> int:
        return len(self.instants)

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self.instants))

    def __bool__(self) -> bool:
        return bool(self.instants)

    def canonical(self) -> str:
        """Sorted, de-duplicated, comma-separated ``Z`` text."""
        return format_exdates(self.instants)


EMPTY_EXDATES = ExdateSet()


def split_exdate_tokens(raw: Union[str, Iterable[str], None]) -> list[str]:
    """Split raw EXDATE input into trimmed, non-blank tokens."""
    if raw is None:
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    return [token.strip() for token in items if token and token.strip()]


def format_exdates(instants: Iterable[int]) -> str:
    """Render instants in canonical EXDATE text form."""
    return ",".join(serialize_utc_ms(ms) for ms in sorted(set(instants)))


def parse_exdate_token(token: str) -> int:
    """Parse one strict UTC EXDATE token to UTC milliseconds.

    Raises:
        ExdateInvalidFormatError: If the token is malformed or not UTC
    """
    parsed = parse_iso_utc_strict(token)
    if parsed is None:
        raise ExdateInvalidFormatError(token)
    return datetime_to_utc_ms(parsed)


def parse_exdates(
    raw: Union[str, Iterable[str], None], series: Optional[SeriesBounds] = None
) -> ExdateSet:
    """Parse an EXDATE list.

    Args:
        raw: Comma-separated string or iterable of tokens
        series: When given, every instant must lie within the series bound

    Returns:
        ExdateSet of UTC milliseconds

    Raises:
        ExdateInvalidFormatError: First token that is malformed or not UTC
        ExdateOutOfRangeError: First token outside ``series``
    """
    instants: set[int] = set()
    for token in split_exdate_tokens(raw):
        utc_ms = parse_exdate_token(token)
        if series is not None and not series.contains(utc_ms):
            raise ExdateOutOfRangeError(
                token,
                first=serialize_utc_ms(series.first_utc_ms),
                last=serialize_utc_ms(series.last_utc_ms) if series.last_utc_ms is not None else None,
            )
        instants.add(utc_ms)
    return ExdateSet(frozenset(instants))


@dataclass
class ExdateInspection:
    """Non-raising breakdown of an EXDATE list."""

    valid: list[int] = field(default_factory=list)
    invalid_format: list[str] = field(default_factory=list)
    non_utc: list[str] = field(default_factory=list)
    out_of_range: list[str] = field(default_factory=list)
    duplicates: int = 0

    @property
    def ok(self) -> bool:
        return not (self.invalid_format or self.non_utc or self.out_of_range)

    @property
    def canonical(self) -> str:
        return format_exdates(self.valid)


def inspect_exdates(
    tokens: Union[str, Iterable[str], None], series: Optional[SeriesBounds] = None
) -> ExdateInspection:
    """Classify every EXDATE token without raising.

    Tokens that parse as ISO but carry a non-zero offset (or none) are reported
    as ``non_utc``; unparseable ones as ``invalid_format``.
    """
    inspection = ExdateInspection()
    seen: set[int] = set()
    for token in split_exdate_tokens(tokens):
        strict = parse_iso_utc_strict(token)
        if strict is None:
            if parse_iso_any(token) is not None:
                inspection.non_utc.append(token)
            else:
                inspection.invalid_format.append(token)
            continue
        utc_ms = datetime_to_utc_ms(strict)
        if series is not None and not series.contains(utc_ms):
            inspection.out_of_range.append(token)
            continue
        if utc_ms in seen:
            inspection.duplicates += 1
            continue
        seen.add(utc_ms)
        inspection.valid.append(utc_ms)
    inspection.valid.sort()
    return inspection


def find_unmatched_exdates(exdates: ExdateSet, occurrences: Iterable[int]) -> list[int]:
    """Return excluded instants that match no generated occurrence.

    Such entries are tolerated (they exclude nothing) but surfaced so the
    authoring UI can offer to clean them up.
    """
    remaining = set(exdates.instants)
    for utc_ms in occurrences:
        remaining.discard(utc_ms)
        if not remaining:
            break
    unmatched = sorted(remaining)
    if unmatched:
        logger.info(
            "EXDATE entries matching no occurrence: %s",
            ", ".join(serialize_utc_ms(ms) for ms in unmatched),
        )
    return unmatched
