"""
Google Sheets backends for persisted state and analytics.

Two worksheets in one spreadsheet:
- State: one row per key (`key`, `value_json`, `updated_at`); the offline
  action queue and the shadow daily counter live here
- Analytics: append-only event rows, one per emitted AnalyticsEvent

A write replaces the whole row for its key and the last write wins.
Analytics volume is bounded by the emitter's sampling, not here.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Optional

import gspread
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from fincascade.config import GoogleSheetsSettings, get_settings
from fincascade.models.analytics import ANALYTICS_COLUMNS, AnalyticsEvent
from fincascade.services.storage.interface import (
    AnalyticsStorageInterface,
    KeyValueStorageInterface,
    StorageConnectionError,
    StorageError,
)


SHEETS_SCOPES = (
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
)

STATE_COLUMNS = ["key", "value_json", "updated_at"]


class GoogleSheetsClient:
    """Lazily authorised handle on the configured spreadsheet."""

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = settings or get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """Authorise with the service account; retried on transient failures."""
        if self._client is None:
            try:
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=list(SHEETS_SCOPES),
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise StorageConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise StorageConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise StorageConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create_sheet(self, title: str, columns: list[str], rows: int) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_state_sheet(self) -> gspread.Worksheet:
        """Get or create the State worksheet."""
        return self._get_or_create_sheet(
            self._settings.state_sheet_name, STATE_COLUMNS, rows=100
        )

    def get_analytics_sheet(self) -> gspread.Worksheet:
        """Get or create the Analytics worksheet."""
        return self._get_or_create_sheet(
            self._settings.analytics_sheet_name, ANALYTICS_COLUMNS, rows=5000
        )


class GoogleSheetsKeyValueStorage(KeyValueStorageInterface):
    """
    Key-value documents stored one per row in the State sheet.

    gspread is synchronous; calls run in a worker thread.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _find_row(self, sheet: gspread.Worksheet, key: str) -> Optional[tuple[int, list]]:
        """Return (1-based sheet row, row values) for a key."""
        all_values = sheet.get_all_values()
        for offset, row in enumerate(all_values[1:], start=2):
            if row and row[0] == key:
                return offset, row
        return None

    def _get_sync(self, key: str) -> Optional[Any]:
        sheet = self._client.get_state_sheet()
        found = self._find_row(sheet, key)
        if found is None:
            return None
        _, row = found
        raw = row[1] if len(row) > 1 else ""
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt value for {key!r}: {e}")

    def _set_sync(self, key: str, value: Any) -> None:
        sheet = self._client.get_state_sheet()
        row = [key, json.dumps(value, sort_keys=True), datetime.now(timezone.utc).isoformat()]
        found = self._find_row(sheet, key)
        if found is None:
            sheet.append_row(row, value_input_option="RAW")
        else:
            index, _ = found
            sheet.update(values=[row], range_name=f"A{index}:C{index}")

    def _delete_sync(self, key: str) -> bool:
        sheet = self._client.get_state_sheet()
        found = self._find_row(sheet, key)
        if found is None:
            return False
        sheet.delete_rows(found[0])
        return True

    async def get_json(self, key: str) -> Optional[Any]:
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read {key!r}: {e}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def set_json(self, key: str, value: Any) -> None:
        try:
            await asyncio.to_thread(self._set_sync, key, value)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to write {key!r}: {e}")

    async def delete(self, key: str) -> bool:
        try:
            return await asyncio.to_thread(self._delete_sync, key)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to delete {key!r}: {e}")


class GoogleSheetsAnalyticsStorage(AnalyticsStorageInterface):
    """
    Google Sheets implementation of analytics storage.

    Events are appended as rows, never updated.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _append_sync(self, event: AnalyticsEvent) -> None:
        sheet = self._client.get_analytics_sheet()
        sheet.append_row(event.to_sheets_row(), value_input_option="RAW")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_event(self, event: AnalyticsEvent) -> bool:
        """Append an analytics event."""
        try:
            await asyncio.to_thread(self._append_sync, event)
            return True
        except Exception as e:
            raise StorageError(f"Failed to write analytics event: {e}")
