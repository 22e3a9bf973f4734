"""Remote store interface and the Google Sheets implementation.

The remote store is the authoritative system of record. Reads are ordered and filterable,
either one-shot (:meth:`RemoteStore.fetch_all`) or streaming (:meth:`RemoteStore.subscribe`),
and writes are addressed by record id.

:class:`SheetsRemoteStore` keeps every entity family in its own worksheet. The first row holds
the headers ``id``, ``timestamp``, ``version`` followed by the family's fields, and every other
row holds one record.
"""
import abc
import asyncio
import dataclasses
import datetime
import logging
import socket
import ssl
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterator, Dict, List, Optional

from dateutil import parser as date_parser
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .records import FamilySpec, Record, sort_records
from ..status import status

SYSTEM_COLUMNS: List[str] = ['id', 'timestamp', 'version']
LIST_SEPARATOR: str = ','
DEFAULT_POLL_INTERVAL: float = 30.0


@dataclasses.dataclass(frozen=True)
class RecordFilter:
    """Bounds the volume of a remote read."""
    since: Optional[datetime.datetime] = None

    def matches(self, record: Record) -> bool:
        return self.since is None or record.timestamp >= self.since


class RemoteStore(abc.ABC):
    """The authoritative store of one entity family.

    Attributes:
        poll_interval (float): Seconds between polls of the default :meth:`subscribe`.
    """
    poll_interval: float = DEFAULT_POLL_INTERVAL

    @abc.abstractmethod
    async def fetch_all(self, record_filter: Optional[RecordFilter] = None) -> List[Record]:
        """Fetch every record matching the filter."""

    async def subscribe(self, record_filter: Optional[RecordFilter] = None) -> AsyncIterator[List[Record]]:
        """Yield the matching records now and again whenever they change.

        Stores without push support poll :meth:`fetch_all`.
        """
        last: Optional[List[Record]] = None
        while True:
            records = await self.fetch_all(record_filter)
            if records != last:
                last = records
                yield records
            await asyncio.sleep(self.poll_interval)

    @abc.abstractmethod
    async def create(self, record: Record) -> str:
        """Store a new record and return its remote id."""

    @abc.abstractmethod
    async def update(self, record_id: str, record: Record) -> None:
        """Overwrite the record stored under ``record_id``."""

    @abc.abstractmethod
    async def delete(self, record_id: str) -> None:
        """Delete the record stored under ``record_id``."""


def idx_to_col(idx: int) -> str:
    """Convert zero-based column index to spreadsheet letter(s).

    Args:
        idx: The zero-based column index.

    Returns:
        The spreadsheet column letter(s) (e.g., A, B, AA).
    """
    letters = ''
    while idx >= 0:
        letters = chr((idx % 26) + ord('A')) + letters
        idx = idx // 26 - 1
    return letters


def google_serial_date_to_date(serial: float) -> datetime.date:
    """Converts a Google Sheets date serial to a date.

    Raises:
        ValueError: If the serial number is out of a plausible range.
    """
    if serial < -20000 or serial > 2958465:
        raise ValueError(f'Serial date "{serial}" is out of supported range.')
    return (datetime.datetime(1899, 12, 30) + datetime.timedelta(days=int(serial))).date()


def cast_value(type_name: str, value: Any) -> Any:
    """Cast a sheet cell value to the configured field type.

    Provides sensible defaults or None for uncastable values.

    Args:
        type_name: One of ``string``, ``int``, ``float``, ``decimal``, ``bool``, ``date``,
            ``datetime`` or ``list``.
        value: The raw cell value.
    """
    if value is None:
        return None

    text_val = str(value).strip()

    if type_name == 'string':
        return text_val

    if type_name == 'int':
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if text_val == '':
            return 0
        try:
            return int(float(text_val))
        except ValueError:
            logging.debug(f'Failed to parse "{text_val}" as integer. Storing 0.')
            return 0

    if type_name == 'float':
        if text_val == '':
            return 0.0
        try:
            return float(text_val)
        except ValueError:
            logging.debug(f'Failed to parse "{text_val}" as float. Storing 0.0.')
            return 0.0

    if type_name == 'decimal':
        if text_val == '':
            return Decimal(0)
        try:
            return Decimal(text_val)
        except InvalidOperation:
            logging.debug(f'Failed to parse "{text_val}" as decimal. Storing 0.')
            return Decimal(0)

    if type_name == 'bool':
        if isinstance(value, bool):
            return value
        return text_val.lower() in ('true', '1', 'yes')

    if type_name == 'list':
        if isinstance(value, list):
            return value
        return [v.strip() for v in text_val.split(LIST_SEPARATOR) if v.strip()]

    if type_name in ('date', 'datetime'):
        if text_val == '':
            return None
        try:
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                parsed = google_serial_date_to_date(float(value))
                if type_name == 'date':
                    return parsed
                return datetime.datetime.combine(parsed, datetime.time(), tzinfo=datetime.timezone.utc)
            parsed = date_parser.isoparse(text_val)
        except (ValueError, OverflowError):
            logging.debug(f'Failed to parse "{text_val}" as {type_name}. Storing None.')
            return None
        if type_name == 'date':
            return parsed.date()
        # Naive values are UTC
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=datetime.timezone.utc)

    logging.warning(f'Unknown field type "{type_name}". Storing "{text_val}".')
    return text_val


def to_cell(value: Any) -> Any:
    """Convert a field value to a raw sheet cell value."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, str)):
        return value
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return LIST_SEPARATOR.join(str(v) for v in value)
    return str(value)


def get_service(credentials: Any) -> Any:
    """Build a Google Sheets service client from already authorized credentials.

    Raises:
        status.ServiceUnavailableException: If the client cannot be built.
    """
    try:
        service = build('sheets', 'v4', credentials=credentials, cache_discovery=False)
        logging.debug('Google Sheets service client created successfully.')
        return service
    except Exception as ex:
        raise status.ServiceUnavailableException(str(ex)) from ex


class SheetsRemoteStore(RemoteStore):
    """Remote store backed by one worksheet of a Google spreadsheet.

    Args:
        service: A Google Sheets API resource.
        spreadsheet_id: Id of the spreadsheet.
        worksheet: Title of the worksheet holding the family.
        family: The entity family stored in the worksheet.
        poll_interval: Seconds between polls when subscribed.
    """

    def __init__(self, service: Any, spreadsheet_id: str, worksheet: str, family: FamilySpec,
                 poll_interval: float = DEFAULT_POLL_INTERVAL) -> None:
        if not spreadsheet_id:
            raise status.RemoteNotConfiguredException
        self.service = service
        self.spreadsheet_id = spreadsheet_id
        self.worksheet = worksheet
        self.family = family
        self.poll_interval = poll_interval
        self.header: List[str] = SYSTEM_COLUMNS + list(family.field_types.keys())

    @classmethod
    def from_settings(cls, service: Any, family: FamilySpec, settings=None) -> 'SheetsRemoteStore':
        """Create the store of ``family`` from the ``remote`` and ``sync`` settings sections."""
        if settings is None:
            from ..settings import lib
            settings = lib.settings
        remote = settings.get_section('remote')
        sync = settings.get_section('sync')
        return cls(
            service,
            remote.get('spreadsheet_id', ''),
            remote['worksheets'][family.name],
            family,
            poll_interval=float(sync['poll_interval']),
        )

    def _execute(self, request: Any) -> Dict[str, Any]:
        try:
            return request.execute()
        except HttpError as ex:
            stat: Optional[int] = ex.resp.status if ex.resp else None
            if stat == 400 and 'Unable to parse range' in str(ex):
                raise status.WorksheetNotFoundException(
                    f'Worksheet "{self.worksheet}" not found in spreadsheet "{self.spreadsheet_id}".'
                ) from ex
            if stat == 404:
                raise status.ServiceUnavailableException(
                    f'Spreadsheet "{self.spreadsheet_id}" not found (HTTP 404).'
                ) from ex
            if stat == 403:
                raise status.ServiceUnavailableException(
                    f'Access denied (HTTP 403) for spreadsheet "{self.spreadsheet_id}".'
                ) from ex
            raise status.ServiceUnavailableException(
                f'Error accessing spreadsheet "{self.spreadsheet_id}": {ex}'
            ) from ex
        except socket.timeout as ex:
            raise status.ServiceUnavailableException(f'Timeout error: {ex}') from ex
        except ssl.SSLError as ex:
            raise status.ServiceUnavailableException(f'SSL error: {ex}') from ex

    def _get_values(self, cell_range: str) -> List[List[Any]]:
        result = self._execute(self.service.spreadsheets().values().get(
            spreadsheetId=self.spreadsheet_id,
            range=cell_range,
            valueRenderOption='UNFORMATTED_VALUE',
        ))
        return result.get('values', [])

    def _row_to_record(self, header: List[str], row: List[Any]) -> Optional[Record]:
        cells = dict(zip(header, row))
        record_id = str(cells.get('id', '')).strip()
        if not record_id:
            return None

        timestamp = cast_value('datetime', cells.get('timestamp'))
        if timestamp is None:
            logging.warning(f'{self.worksheet}: row of "{record_id}" has no valid timestamp, skipping.')
            return None

        fields = {
            name: cast_value(type_name, cells.get(name))
            for name, type_name in self.family.field_types.items()
        }
        return Record(
            id=record_id,
            fields=fields,
            timestamp=timestamp,
            version=cast_value('int', cells.get('version', 0)) or 0,
        )

    def _record_to_row(self, record_id: str, record: Record) -> List[Any]:
        row = [record_id, record.timestamp.isoformat(), record.version]
        row += [to_cell(record.fields.get(name)) for name in self.family.field_types]
        return row

    def _fetch_all(self, record_filter: Optional[RecordFilter]) -> List[Record]:
        rows = self._get_values(self.worksheet)
        if not rows:
            return []

        header = [str(h).strip() for h in rows[0]]
        if 'id' not in header or 'timestamp' not in header:
            raise status.WorksheetNotFoundException(
                f'Worksheet "{self.worksheet}" has no "id" and "timestamp" headers.')

        records = []
        for row in rows[1:]:
            record = self._row_to_record(header, row)
            if record is None:
                continue
            if record_filter is not None and not record_filter.matches(record):
                continue
            records.append(record)

        logging.debug(f'Fetched {len(records)} record(s) from "{self.worksheet}".')
        return sort_records(records, key=self.family.sort_key, reverse=self.family.reverse)

    def _find_row(self, record_id: str) -> int:
        ids = self._get_values(f'{self.worksheet}!A:A')
        for idx, row in enumerate(ids):
            if idx == 0:
                continue
            if row and str(row[0]).strip() == record_id:
                return idx + 1
        raise status.RecordNotFoundException(f'"{record_id}" not found in worksheet "{self.worksheet}".')

    def _sheet_id(self) -> int:
        result = self._execute(self.service.spreadsheets().get(
            spreadsheetId=self.spreadsheet_id,
            fields='sheets(properties(sheetId,title))',
        ))
        sheet = next(
            (s for s in result.get('sheets', [])
             if s.get('properties', {}).get('title', '') == self.worksheet), None)
        if not sheet:
            raise status.WorksheetNotFoundException(
                f'Worksheet "{self.worksheet}" not found in spreadsheet "{self.spreadsheet_id}".')
        return sheet['properties']['sheetId']

    def _ensure_header(self) -> None:
        first = self._get_values(f'{self.worksheet}!1:1')
        if first and first[0]:
            return
        logging.debug(f'Writing headers to empty worksheet "{self.worksheet}".')
        self._execute(self.service.spreadsheets().values().update(
            spreadsheetId=self.spreadsheet_id,
            range=f'{self.worksheet}!A1:{idx_to_col(len(self.header) - 1)}1',
            valueInputOption='RAW',
            body={'values': [self.header]},
        ))

    def _create(self, record: Record) -> str:
        self._ensure_header()
        record_id = uuid.uuid4().hex
        self._execute(self.service.spreadsheets().values().append(
            spreadsheetId=self.spreadsheet_id,
            range=f'{self.worksheet}!A1',
            valueInputOption='RAW',
            insertDataOption='INSERT_ROWS',
            body={'values': [self._record_to_row(record_id, record)]},
        ))
        logging.debug(f'Created "{record_id}" in "{self.worksheet}".')
        return record_id

    def _update(self, record_id: str, record: Record) -> None:
        row_number = self._find_row(record_id)
        last_col = idx_to_col(len(self.header) - 1)
        self._execute(self.service.spreadsheets().values().update(
            spreadsheetId=self.spreadsheet_id,
            range=f'{self.worksheet}!A{row_number}:{last_col}{row_number}',
            valueInputOption='RAW',
            body={'values': [self._record_to_row(record_id, record)]},
        ))
        logging.debug(f'Updated "{record_id}" in "{self.worksheet}" row {row_number}.')

    def _delete(self, record_id: str) -> None:
        row_number = self._find_row(record_id)
        sheet_id = self._sheet_id()
        self._execute(self.service.spreadsheets().batchUpdate(
            spreadsheetId=self.spreadsheet_id,
            body={'requests': [{
                'deleteDimension': {
                    'range': {
                        'sheetId': sheet_id,
                        'dimension': 'ROWS',
                        'startIndex': row_number - 1,
                        'endIndex': row_number,
                    }
                }
            }]},
        ))
        logging.debug(f'Deleted "{record_id}" from "{self.worksheet}" row {row_number}.')

    async def fetch_all(self, record_filter: Optional[RecordFilter] = None) -> List[Record]:
        return await asyncio.to_thread(self._fetch_all, record_filter)

    async def create(self, record: Record) -> str:
        return await asyncio.to_thread(self._create, record)

    async def update(self, record_id: str, record: Record) -> None:
        await asyncio.to_thread(self._update, record_id, record)

    async def delete(self, record_id: str) -> None:
        await asyncio.to_thread(self._delete, record_id)
