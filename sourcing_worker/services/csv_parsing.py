from __future__ import annotations

import csv
import io
import logging
from collections.abc import Iterable, Iterator
from dataclasses import asdict, dataclass, field
from typing import BinaryIO

logger = logging.getLogger(__name__)

DEATH_RECORD_COLUMNS = (
    "nomprenom",
    "sexe",
    "datenaiss",
    "lieunaiss",
    "commnaiss",
    "paysnaiss",
    "datedeces",
    "lieudeces",
    "actedeces",
)
_BIRTH_DATE_INDEX = DEATH_RECORD_COLUMNS.index("datenaiss")
_DEATH_DATE_INDEX = DEATH_RECORD_COLUMNS.index("datedeces")
_HEADER_MARKER = "nomprenom"


class CsvParsingError(Exception):
    """Raised when a death records stream cannot be parsed as a whole."""


@dataclass(frozen=True, slots=True)
class DeathRecordRow:
    nomprenom: str
    sexe: str
    datenaiss: str
    lieunaiss: str
    commnaiss: str
    paysnaiss: str
    datedeces: str
    lieudeces: str
    actedeces: str

    def as_dict(self) -> dict[str, str]:
        return asdict(self)


@dataclass(slots=True)
class ParseStats:
    total_records: int = 0
    records_processed: int = 0
    records_filtered: int = 0
    has_header: bool = False


@dataclass(slots=True)
class ParseResult:
    rows: list[DeathRecordRow]
    stats: ParseStats = field(default_factory=ParseStats)


@dataclass(slots=True)
class RowFailure:
    row: DeathRecordRow
    error: str


class _DeathRecordDialect(csv.Dialect):
    delimiter = ";"
    quotechar = '"'
    doublequote = True
    skipinitialspace = True
    lineterminator = "\n"
    quoting = csv.QUOTE_MINIMAL
    strict = True


def calculate_age(birth_date: str, death_date: str) -> int:
    """Age in whole years at death for two ``YYYYMMDD`` dates, 0 when either is unusable."""
    if len(birth_date) != 8 or len(death_date) != 8:
        return 0
    try:
        birth_year, birth_month, birth_day = int(birth_date[:4]), int(birth_date[4:6]), int(birth_date[6:])
        death_year, death_month, death_day = int(death_date[:4]), int(death_date[4:6]), int(death_date[6:])
    except ValueError:
        return 0

    age = death_year - birth_year
    if (death_month, death_day) < (birth_month, birth_day):
        age -= 1
    return max(0, age)


def iter_death_records(
    data: bytes | BinaryIO,
    *,
    min_age_years: int = 50,
    stats: ParseStats | None = None,
) -> Iterator[DeathRecordRow]:
    """Yield rows old enough to keep, one at a time, updating ``stats`` as it goes.

    The age predicate runs on the raw cell list so filtered rows never become
    ``DeathRecordRow`` instances. Any decoding, quoting or column-count problem
    aborts the whole stream with ``CsvParsingError``.
    """
    counters = stats if stats is not None else ParseStats()
    stream: BinaryIO = io.BytesIO(data) if isinstance(data, (bytes, bytearray)) else data
    text = io.TextIOWrapper(stream, encoding="utf-8-sig", errors="strict", newline="")
    reader = csv.reader(text, dialect=_DeathRecordDialect)
    first_row = True

    try:
        for raw in reader:
            cells = [cell.strip() for cell in raw]
            if not any(cells):
                continue

            if first_row:
                first_row = False
                if _HEADER_MARKER in cells[0].lower():
                    counters.has_header = True
                    logger.info("detected death records header row")
                    continue

            counters.total_records += 1
            if len(cells) != len(DEATH_RECORD_COLUMNS):
                raise CsvParsingError(
                    f"CSV streaming parsing failed: line {reader.line_num} has {len(cells)} columns, "
                    f"expected {len(DEATH_RECORD_COLUMNS)}"
                )

            if calculate_age(cells[_BIRTH_DATE_INDEX], cells[_DEATH_DATE_INDEX]) < min_age_years:
                counters.records_filtered += 1
                continue

            counters.records_processed += 1
            yield DeathRecordRow(*cells)
    except (csv.Error, UnicodeDecodeError) as exc:
        raise CsvParsingError(f"CSV streaming parsing failed: {exc}") from exc
    finally:
        text.detach()


def parse_death_records(data: bytes | BinaryIO, *, min_age_years: int = 50) -> ParseResult:
    result = ParseResult(rows=[])
    logger.info("starting death records parsing min_age_years=%s", min_age_years)
    for row in iter_death_records(data, min_age_years=min_age_years, stats=result.stats):
        result.rows.append(row)
    logger.info(
        "death records parsing completed total=%s processed=%s filtered=%s has_header=%s",
        result.stats.total_records,
        result.stats.records_processed,
        result.stats.records_filtered,
        result.stats.has_header,
    )
    return result


def generate_failed_records_csv(failures: Iterable[RowFailure]) -> str:
    lines = [_quoted_line((*DEATH_RECORD_COLUMNS, "error"))]
    for failure in failures:
        row = failure.row.as_dict()
        lines.append(_quoted_line((*(row[column] for column in DEATH_RECORD_COLUMNS), failure.error)))
    if len(lines) == 1:
        return ""
    return "\n".join(lines) + "\n"


def _quoted_line(values: Iterable[str]) -> str:
    return ";".join('"' + value.replace('"', '""') + '"' for value in values)
