"""
Parser for batch provider import text.

One provider per line:

    provider,name,baseUrl[,apiKey1[,apiKey2...]]
"""

from typing import List

from providerhub.models.batch import ImportRecord, ParsedProvider, RecordStatus

INVALID_LINE_ERROR = "Invalid format: expected provider,name,baseUrl[,apiKey...]"


def parse_import_line(line_number: int, raw_text: str) -> ImportRecord:
    """Parse a single non-empty line into an ImportRecord."""
    fields = [f.strip() for f in raw_text.split(",")]

    if len(fields) < 3 or not all(fields[:3]):
        return ImportRecord(
            line=line_number,
            raw_text=raw_text,
            status=RecordStatus.FAILED,
            error=INVALID_LINE_ERROR,
        )

    provider, name, base_url = fields[:3]
    api_keys = [key for key in fields[3:] if key]

    return ImportRecord(
        line=line_number,
        raw_text=raw_text,
        parsed=ParsedProvider(provider=provider, name=name, base_url=base_url, api_keys=api_keys),
    )


def parse_import_text(text: str) -> List[ImportRecord]:
    """
    Turn raw import text into ImportRecords, one per non-empty line.

    Malformed lines come back as Failed records carrying the error, so the
    caller can show every line's outcome. Parsing never raises.
    """
    records = []
    for line_number, raw_line in enumerate(text.splitlines(), start=1):
        stripped = raw_line.strip()
        if not stripped:
            continue
        records.append(parse_import_line(line_number, stripped))
    return records
