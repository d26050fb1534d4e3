"""
Data Repository Classes for the Check-in Scanner

This module implements the Repository pattern for data access. Generic
document repositories (JSON file, in-memory) hold users and events; on
top of them sit the two stores the scan pipeline depends on:

- the participant store, a keyed document collection partitioned by event
  that supports partial-field updates and compare-and-set writes;
- the access log store, an append-only collection of scan attempts.

Both stores have Redis-backed implementations, and the access log can also
be appended to a Google Sheets worksheet.
"""

import copy
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import gspread
import redis
from google.auth.exceptions import GoogleAuthError
from google.oauth2.service_account import Credentials

from .exceptions import StateConflictError, StoreError
from .models import AccessLogEntry, Participant

logger = logging.getLogger(__name__)

SHEETS_SCOPE = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
]

# gspread surfaces transport failures as requests or google-auth errors
SHEETS_ERRORS = (gspread.exceptions.GSpreadException, GoogleAuthError, OSError)

SHEET_COLUMNS = [
    "id", "eventId", "timestamp", "dni", "nombre", "modo", "direccion",
    "exitoso", "mensaje", "operador", "operadorUid",
]


def get_path(document: Dict, path: str) -> Any:
    """
    Read a dotted path such as ``estado.en_cena`` from a nested dictionary

    Args:
        document: Nested dictionary
        path: Dotted path

    Returns:
        The value found, or None if any segment is missing
    """
    current = document
    for part in path.split('.'):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def set_path(document: Dict, path: str, value: Any) -> None:
    """Write ``value`` at a dotted path, creating intermediate dictionaries"""
    parts = path.split('.')
    current = document
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def apply_fields(document: Dict, fields: Dict[str, Any]) -> None:
    """Apply a partial update and bump the document version"""
    for path, value in fields.items():
        set_path(document, path, value)
    document['version'] = int(document.get('version', 0)) + 1


class DataRepository(ABC):
    """
    Abstract base class for document repositories

    This class defines the interface that all document repositories
    must implement, following the Repository pattern.
    """

    @abstractmethod
    def load_data(self) -> Dict:
        """
        Load data from the storage medium

        Returns:
            Dictionary containing the loaded data

        Raises:
            StoreError: If data loading fails
        """

    @abstractmethod
    def save_data(self, data: Dict) -> None:
        """
        Save data to the storage medium

        Args:
            data: Dictionary containing data to save

        Raises:
            StoreError: If data saving fails
        """

    @abstractmethod
    def exists(self) -> bool:
        """Check if the data source exists"""


class JSONRepository(DataRepository):
    """
    JSON file-based repository implementation

    This class provides data persistence using JSON files,
    with proper error handling and validation.
    """

    def __init__(self, file_path: str):
        """
        Initialize JSON repository

        Args:
            file_path: Path to the JSON file
        """
        self.file_path = file_path

    def load_data(self) -> Dict:
        """
        Load data from JSON file

        Returns:
            Dictionary containing the loaded data, empty if the file is missing

        Raises:
            StoreError: If file reading or JSON parsing fails
        """
        if not self.exists():
            return {}
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as e:
            raise StoreError("read", f"Invalid JSON in {self.file_path}: {e}")
        except OSError as e:
            raise StoreError("read", f"Cannot read {self.file_path}: {e}")

    def save_data(self, data: Dict) -> None:
        """
        Save data to JSON file

        Args:
            data: Dictionary containing data to save

        Raises:
            StoreError: If file writing fails
        """
        directory = os.path.dirname(self.file_path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.file_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StoreError("write", f"JSON encoding error: {e}")
        except OSError as e:
            raise StoreError("write", f"Cannot write {self.file_path}: {e}")

    def exists(self) -> bool:
        return os.path.exists(self.file_path)


class InMemoryRepository(DataRepository):
    """
    In-memory repository implementation

    Useful for unit testing and development. Data is deep-copied on the
    way in and out so callers never share nested dictionaries with it.
    """

    def __init__(self, initial_data: Optional[Dict] = None):
        self._data = copy.deepcopy(initial_data) if initial_data else {}

    def load_data(self) -> Dict:
        return copy.deepcopy(self._data)

    def save_data(self, data: Dict) -> None:
        self._data = copy.deepcopy(data)

    def exists(self) -> bool:
        return bool(self._data)


class ParticipantStore(ABC):
    """
    Keyed participant collection partitioned by event

    Implementations must support partial updates on dotted field paths
    (``estado.en_cena``) without clobbering unrelated fields, and a
    compare-and-set write used by the state transition applier.
    """

    @abstractmethod
    def get_by_key(self, dni: str, event_id: str) -> Optional[Participant]:
        """
        Fetch one participant

        Args:
            dni: Participant key
            event_id: Event partition

        Returns:
            Participant or None when absent

        Raises:
            StoreError: On I/O failure
        """

    @abstractmethod
    def upsert_fields(self, dni: str, event_id: str, fields: Dict[str, Any]) -> None:
        """
        Update the given dotted fields, creating the document if needed

        Raises:
            StoreError: On I/O failure
        """

    @abstractmethod
    def compare_and_set_field(self, dni: str, event_id: str, field: str,
                              expected: Any, new: Any,
                              extra_fields: Optional[Dict[str, Any]] = None) -> None:
        """
        Set ``field`` to ``new`` only if it currently equals ``expected``

        Args:
            dni: Participant key
            event_id: Event partition
            field: Dotted path of the precondition field
            expected: Value the caller last observed
            new: Value to write
            extra_fields: Further fields written in the same operation

        Raises:
            StateConflictError: If the stored value differs from ``expected``
            StoreError: On I/O failure or when the participant is gone
        """

    @abstractmethod
    def list_by_event(self, event_id: str) -> List[Participant]:
        """List every participant of an event, sorted by name"""

    @abstractmethod
    def save(self, participant: Participant) -> None:
        """Create or replace a whole participant document"""

    @abstractmethod
    def delete(self, dni: str, event_id: str) -> bool:
        """
        Delete a participant

        Returns:
            True if a document was removed
        """


class DocumentParticipantStore(ParticipantStore):
    """
    Participant store on top of a ``DataRepository``

    The repository holds ``{event_id: {dni: document}}``. Every
    read-modify-write runs under one lock, so writes from devices served by
    this process are atomic with respect to each other.
    """

    def __init__(self, repository: DataRepository):
        self.repository = repository
        self._lock = threading.RLock()

    def get_by_key(self, dni: str, event_id: str) -> Optional[Participant]:
        with self._lock:
            document = self.repository.load_data().get(event_id, {}).get(dni)
        if document is None:
            return None
        return Participant.from_dict(document, event_id)

    def upsert_fields(self, dni: str, event_id: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            data = self.repository.load_data()
            partition = data.setdefault(event_id, {})
            document = partition.setdefault(dni, {'dni': dni, 'eventId': event_id})
            apply_fields(document, fields)
            self.repository.save_data(data)

    def compare_and_set_field(self, dni: str, event_id: str, field: str,
                              expected: Any, new: Any,
                              extra_fields: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            data = self.repository.load_data()
            document = data.get(event_id, {}).get(dni)
            if document is None:
                raise StoreError("compare_and_set", f"participant '{dni}' no longer exists")
            actual = bool(get_path(document, field))
            if actual != expected:
                raise StateConflictError(dni, field, expected, actual)
            fields = dict(extra_fields or {})
            fields[field] = new
            apply_fields(document, fields)
            self.repository.save_data(data)

    def list_by_event(self, event_id: str) -> List[Participant]:
        with self._lock:
            partition = self.repository.load_data().get(event_id, {})
        participants = [Participant.from_dict(doc, event_id) for doc in partition.values()]
        return sorted(participants, key=lambda p: p.nombre.lower())

    def save(self, participant: Participant) -> None:
        with self._lock:
            data = self.repository.load_data()
            data.setdefault(participant.event_id, {})[participant.dni] = participant.to_dict()
            self.repository.save_data(data)

    def delete(self, dni: str, event_id: str) -> bool:
        with self._lock:
            data = self.repository.load_data()
            partition = data.get(event_id, {})
            if dni not in partition:
                return False
            del partition[dni]
            self.repository.save_data(data)
            return True


class RedisParticipantStore(ParticipantStore):
    """
    Redis-backed participant store

    Each participant is a JSON document under
    ``<prefix>:event:<event_id>:participant:<dni>``; a set per event indexes
    the keys. Partial updates and compare-and-set use WATCH/MULTI so a
    concurrent writer makes the transaction retry or conflict instead of
    overwriting its changes.
    """

    MAX_WATCH_RETRIES = 5

    def __init__(self, client: redis.Redis, prefix: str = "checkin"):
        self.client = client
        self.prefix = prefix

    def _key(self, dni: str, event_id: str) -> str:
        return f"{self.prefix}:event:{event_id}:participant:{dni}"

    def _index_key(self, event_id: str) -> str:
        return f"{self.prefix}:event:{event_id}:participants"

    def get_by_key(self, dni: str, event_id: str) -> Optional[Participant]:
        try:
            raw = self.client.get(self._key(dni, event_id))
        except redis.RedisError as e:
            raise StoreError("read", str(e))
        if raw is None:
            return None
        return Participant.from_dict(json.loads(raw), event_id)

    def _transact(self, dni: str, event_id: str, mutate, create: bool) -> None:
        key = self._key(dni, event_id)
        try:
            with self.client.pipeline() as pipe:
                for _ in range(self.MAX_WATCH_RETRIES):
                    try:
                        pipe.watch(key)
                        raw = pipe.get(key)
                        if raw is None and not create:
                            raise StoreError("compare_and_set", f"participant '{dni}' no longer exists")
                        document = json.loads(raw) if raw else {'dni': dni, 'eventId': event_id}
                        mutate(document)
                        pipe.multi()
                        pipe.set(key, json.dumps(document))
                        pipe.sadd(self._index_key(event_id), dni)
                        pipe.execute()
                        return
                    except redis.WatchError:
                        logger.debug("Concurrent write on %s, retrying", key)
                        continue
        except redis.RedisError as e:
            raise StoreError("write", str(e))
        raise StoreError("write", f"too much contention on {key}")

    def upsert_fields(self, dni: str, event_id: str, fields: Dict[str, Any]) -> None:
        self._transact(dni, event_id, lambda document: apply_fields(document, fields), create=True)

    def compare_and_set_field(self, dni: str, event_id: str, field: str,
                              expected: Any, new: Any,
                              extra_fields: Optional[Dict[str, Any]] = None) -> None:
        def mutate(document: Dict) -> None:
            actual = bool(get_path(document, field))
            if actual != expected:
                raise StateConflictError(dni, field, expected, actual)
            fields = dict(extra_fields or {})
            fields[field] = new
            apply_fields(document, fields)

        self._transact(dni, event_id, mutate, create=False)

    def list_by_event(self, event_id: str) -> List[Participant]:
        try:
            dnis = sorted(self.client.smembers(self._index_key(event_id)))
            if not dnis:
                return []
            raws = self.client.mget([self._key(dni, event_id) for dni in dnis])
        except redis.RedisError as e:
            raise StoreError("read", str(e))
        participants = [Participant.from_dict(json.loads(raw), event_id) for raw in raws if raw]
        return sorted(participants, key=lambda p: p.nombre.lower())

    def save(self, participant: Participant) -> None:
        try:
            pipe = self.client.pipeline()
            pipe.set(self._key(participant.dni, participant.event_id),
                     json.dumps(participant.to_dict()))
            pipe.sadd(self._index_key(participant.event_id), participant.dni)
            pipe.execute()
        except redis.RedisError as e:
            raise StoreError("write", str(e))

    def delete(self, dni: str, event_id: str) -> bool:
        try:
            pipe = self.client.pipeline()
            pipe.delete(self._key(dni, event_id))
            pipe.srem(self._index_key(event_id), dni)
            removed, _ = pipe.execute()
        except redis.RedisError as e:
            raise StoreError("delete", str(e))
        return bool(removed)


class AccessLogStore(ABC):
    """Append-only collection of access log entries"""

    @abstractmethod
    def append(self, entry: AccessLogEntry) -> None:
        """
        Append one entry

        Raises:
            StoreError: On I/O failure
        """

    @abstractmethod
    def list_by_event(self, event_id: str) -> List[AccessLogEntry]:
        """List the entries of an event in timestamp order"""

    @abstractmethod
    def delete_by_dni(self, dni: str, event_id: str) -> int:
        """Remove every entry of one participant; returns how many"""

    @abstractmethod
    def delete_by_event(self, event_id: str) -> int:
        """Remove every entry of an event; returns how many"""


class DocumentAccessLogStore(AccessLogStore):
    """Access log store on top of a ``DataRepository`` holding ``{event_id: [entry]}``"""

    def __init__(self, repository: DataRepository):
        self.repository = repository
        self._lock = threading.Lock()

    def append(self, entry: AccessLogEntry) -> None:
        with self._lock:
            data = self.repository.load_data()
            data.setdefault(entry.event_id, []).append(entry.to_dict())
            self.repository.save_data(data)

    def list_by_event(self, event_id: str) -> List[AccessLogEntry]:
        with self._lock:
            rows = self.repository.load_data().get(event_id, [])
        entries = [AccessLogEntry.from_dict(row) for row in rows]
        return sorted(entries, key=lambda entry: entry.timestamp)

    def delete_by_dni(self, dni: str, event_id: str) -> int:
        with self._lock:
            data = self.repository.load_data()
            rows = data.get(event_id, [])
            kept = [row for row in rows if row['dni'] != dni]
            removed = len(rows) - len(kept)
            if removed:
                data[event_id] = kept
                self.repository.save_data(data)
            return removed

    def delete_by_event(self, event_id: str) -> int:
        with self._lock:
            data = self.repository.load_data()
            removed = len(data.pop(event_id, []))
            if removed:
                self.repository.save_data(data)
            return removed


class RedisAccessLogStore(AccessLogStore):
    """Access log kept as one Redis list of JSON entries per event"""

    def __init__(self, client: redis.Redis, prefix: str = "checkin"):
        self.client = client
        self.prefix = prefix

    def _key(self, event_id: str) -> str:
        return f"{self.prefix}:event:{event_id}:access_logs"

    def append(self, entry: AccessLogEntry) -> None:
        try:
            self.client.rpush(self._key(entry.event_id), json.dumps(entry.to_dict()))
        except redis.RedisError as e:
            raise StoreError("append", str(e))

    def list_by_event(self, event_id: str) -> List[AccessLogEntry]:
        try:
            rows = self.client.lrange(self._key(event_id), 0, -1)
        except redis.RedisError as e:
            raise StoreError("read", str(e))
        entries = [AccessLogEntry.from_dict(json.loads(row)) for row in rows]
        return sorted(entries, key=lambda entry: entry.timestamp)

    def delete_by_dni(self, dni: str, event_id: str) -> int:
        key = self._key(event_id)
        removed = 0
        try:
            for row in self.client.lrange(key, 0, -1):
                if json.loads(row)['dni'] == dni:
                    removed += self.client.lrem(key, 1, row)
        except redis.RedisError as e:
            raise StoreError("delete", str(e))
        return removed

    def delete_by_event(self, event_id: str) -> int:
        key = self._key(event_id)
        try:
            pipe = self.client.pipeline()
            pipe.llen(key)
            pipe.delete(key)
            count, _ = pipe.execute()
        except redis.RedisError as e:
            raise StoreError("delete", str(e))
        return count


class SheetsAccessLogStore(AccessLogStore):
    """
    Access log appended as rows of a Google Sheets worksheet

    The sheet is an audit trail for organizers; rows are never removed
    from it, so the delete operations raise ``StoreError``.
    """

    def __init__(self, worksheet: gspread.Worksheet):
        self.worksheet = worksheet

    @staticmethod
    def to_row(entry: AccessLogEntry) -> List:
        data = entry.to_dict()
        return [data[column] for column in SHEET_COLUMNS]

    def append(self, entry: AccessLogEntry) -> None:
        try:
            self.worksheet.append_row(self.to_row(entry), value_input_option="RAW")
        except SHEETS_ERRORS as e:
            raise StoreError("append", str(e))

    def list_by_event(self, event_id: str) -> List[AccessLogEntry]:
        try:
            records = self.worksheet.get_all_records()
        except SHEETS_ERRORS as e:
            raise StoreError("read", str(e))
        entries = []
        for record in records:
            if str(record.get('eventId')) != event_id:
                continue
            record['exitoso'] = str(record['exitoso']).upper() == 'TRUE'
            record['eventId'] = str(record['eventId'])
            record['dni'] = str(record['dni'])
            entries.append(AccessLogEntry.from_dict(record))
        return sorted(entries, key=lambda entry: entry.timestamp)

    def delete_by_dni(self, dni: str, event_id: str) -> int:
        raise StoreError("delete", "the Google Sheets access log is append-only")

    def delete_by_event(self, event_id: str) -> int:
        raise StoreError("delete", "the Google Sheets access log is append-only")


def open_access_log_worksheet(service_account_info: Dict, spreadsheet: str,
                              worksheet: str = "Sheet1") -> gspread.Worksheet:
    """
    Authorize with a service account and open the access log worksheet

    Args:
        service_account_info: Parsed service account JSON
        spreadsheet: Spreadsheet title
        worksheet: Worksheet title inside the spreadsheet

    Returns:
        gspread Worksheet

    Raises:
        StoreError: If the spreadsheet cannot be opened
    """
    creds = Credentials.from_service_account_info(service_account_info, scopes=SHEETS_SCOPE)
    try:
        client = gspread.authorize(creds)
        return client.open(spreadsheet).worksheet(worksheet)
    except SHEETS_ERRORS as e:
        raise StoreError("open", f"Cannot open spreadsheet '{spreadsheet}': {e}")


def flush_access_logs_to_sheet(client: redis.Redis, event_id: str,
                               worksheet: gspread.Worksheet, prefix: str = "checkin") -> int:
    """
    Copy the Redis access log of an event into a worksheet in one batch

    Args:
        client: Redis client holding the log list
        event_id: Event whose log is exported
        worksheet: Destination worksheet
        prefix: Key prefix used by ``RedisAccessLogStore``

    Returns:
        Number of rows written
    """
    entries = RedisAccessLogStore(client, prefix).list_by_event(event_id)
    rows = [SheetsAccessLogStore.to_row(entry) for entry in entries]
    if rows:
        try:
            worksheet.append_rows(rows, value_input_option="RAW")
        except SHEETS_ERRORS as e:
            raise StoreError("append", str(e))
    logger.info("Exported %d access log rows of event %s", len(rows), event_id)
    return len(rows)


class RepositoryFactory:
    """
    Factory class for creating repositories and stores

    This class provides a centralized way to create the storage
    backends based on configuration.
    """

    @staticmethod
    def create_json_repository(file_path: str) -> JSONRepository:
        return JSONRepository(file_path)

    @staticmethod
    def create_memory_repository(initial_data: Optional[Dict] = None) -> InMemoryRepository:
        return InMemoryRepository(initial_data)

    @staticmethod
    def create_repository(repo_type: str, **kwargs) -> DataRepository:
        """
        Create a document repository based on type

        Args:
            repo_type: Type of repository ('json' or 'memory')
            **kwargs: Additional arguments for repository creation

        Returns:
            DataRepository instance

        Raises:
            ValueError: If repository type is not supported
        """
        if repo_type.lower() == 'json':
            if 'file_path' not in kwargs:
                raise ValueError("file_path is required for JSON repository")
            return RepositoryFactory.create_json_repository(kwargs['file_path'])

        elif repo_type.lower() == 'memory':
            return RepositoryFactory.create_memory_repository(kwargs.get('initial_data'))

        else:
            raise ValueError(f"Unsupported repository type: {repo_type}")

    @staticmethod
    def create_redis_client(config: Dict) -> redis.Redis:
        return redis.Redis(
            host=config['REDIS_HOST'],
            port=int(config['REDIS_PORT']),
            db=int(config.get('REDIS_DB', 0)),
            decode_responses=True,
        )

    @staticmethod
    def create_participant_store(backend: str, **kwargs) -> ParticipantStore:
        """
        Create a participant store

        Args:
            backend: 'memory', 'json' or 'redis'
            **kwargs: ``file_path`` for json, ``client`` for redis

        Returns:
            ParticipantStore instance
        """
        if backend == 'redis':
            return RedisParticipantStore(kwargs['client'], kwargs.get('prefix', 'checkin'))
        return DocumentParticipantStore(RepositoryFactory.create_repository(backend, **kwargs))

    @staticmethod
    def create_access_log_store(backend: str, **kwargs) -> AccessLogStore:
        """
        Create an access log store

        Args:
            backend: 'memory', 'json', 'redis' or 'sheets'
            **kwargs: ``file_path`` for json, ``client`` for redis,
                ``worksheet`` for sheets

        Returns:
            AccessLogStore instance
        """
        if backend == 'redis':
            return RedisAccessLogStore(kwargs['client'], kwargs.get('prefix', 'checkin'))
        if backend == 'sheets':
            return SheetsAccessLogStore(kwargs['worksheet'])
        return DocumentAccessLogStore(RepositoryFactory.create_repository(backend, **kwargs))

