"""Record-store binding: commands, results, snapshots and presence as polled records."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
import uuid
from pathlib import Path
from typing import Any, Callable, TypeVar
from urllib.parse import quote, unquote

from loguru import logger

from agentrelay.relay.errors import TransportError
from agentrelay.relay.ledger import ResultStore
from agentrelay.relay.types import Command, CommandResult, RunnerPresence, Snapshot
from agentrelay.transports.base import RelayTransport
from agentrelay.utils.helpers import now_ms

T = TypeVar("T")

COMMAND_TYPE = "RelayCommand"
RESULT_TYPE = "RelayCommandResult"
SNAPSHOT_TYPE = "RelaySnapshot"
RUNNER_TYPE = "RelayRunner"
TEST_TYPE = "RelayTest"

PROVISION_MARKER = ".container.json"
ALLOW_UNPROVISIONED_ENV = "AGENTRELAY_ALLOW_UNPROVISIONED"


def allow_unprovisioned() -> bool:
    return os.environ.get(ALLOW_UNPROVISIONED_ENV, "").strip().lower() in {"1", "true", "yes"}


def command_record_name(runner_id: str, command_id: str) -> str:
    return f"{runner_id}.{command_id}"


def snapshot_record_name(runner_id: str, scope_key: str) -> str:
    return f"{runner_id}.{scope_key}"


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


class FileRecordStore:
    """
    Blocking record database laid out as `<root>/<container>/<RecordType>/<name>.json`.

    Missing records and missing record types read as None / empty, never as
    errors. A container must be provisioned before use unless
    AGENTRELAY_ALLOW_UNPROVISIONED=1 lets the store create it.
    """

    def __init__(self, root: Path, container_id: str, *, allow_create: bool | None = None):
        container_id = str(container_id or "").strip()
        if not container_id:
            raise TransportError("record container id is required")
        self.root = Path(root).expanduser()
        self.container_id = container_id
        self.container_path = self.root / quote(container_id, safe="")
        self.allow_create = allow_unprovisioned() if allow_create is None else allow_create

    @property
    def provisioned(self) -> bool:
        return (self.container_path / PROVISION_MARKER).exists()

    def provision(self) -> None:
        self.container_path.mkdir(parents=True, exist_ok=True)
        marker = self.container_path / PROVISION_MARKER
        if not marker.exists():
            marker.write_text(
                json.dumps({"containerId": self.container_id, "createdAt": now_ms()}),
                encoding="utf-8",
            )
            logger.info(f"Provisioned record container {self.container_id}")

    def ensure_allowed(self) -> None:
        if self.provisioned:
            return
        if not self.allow_create:
            raise TransportError(
                f"record container '{self.container_id}' is not provisioned "
                f"(set {ALLOW_UNPROVISIONED_ENV}=1 to create it)"
            )
        self.provision()

    def account_status(self) -> dict[str, Any]:
        if not self.provisioned:
            return {"available": False, "status": "noContainer"}
        if not os.access(self.container_path, os.R_OK | os.W_OK):
            return {"available": False, "status": "restricted"}
        return {"available": True, "status": "available"}

    def _type_dir(self, record_type: str) -> Path:
        return self.container_path / record_type

    def _record_path(self, record_type: str, record_name: str) -> Path:
        return self._type_dir(record_type) / f"{quote(record_name, safe='')}.json"

    def save(self, record_type: str, record_name: str, fields: dict[str, Any]) -> dict[str, Any]:
        self.ensure_allowed()
        directory = self._type_dir(record_type)
        directory.mkdir(parents=True, exist_ok=True)
        record = dict(fields)
        record["recordType"] = record_type
        record["recordName"] = record_name
        record["modifiedAt"] = now_ms()
        target = self._record_path(record_type, record_name)
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=str(directory),
            prefix=f"{target.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp.write(json.dumps(record, ensure_ascii=False))
            tmp_path = Path(tmp.name)
        tmp_path.replace(target)
        return record

    def _read(self, path: Path) -> dict[str, Any] | None:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError:
            logger.warning(f"Skipping unreadable record {path.name}")
            return None
        return raw if isinstance(raw, dict) else None

    def fetch(self, record_type: str, record_name: str) -> dict[str, Any] | None:
        self.ensure_allowed()
        return self._read(self._record_path(record_type, record_name))

    def query(
        self,
        record_type: str,
        filters: dict[str, Any] | None = None,
        *,
        sort_key: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self.ensure_allowed()
        directory = self._type_dir(record_type)
        if not directory.is_dir():
            return []
        records = []
        for path in directory.glob("*.json"):
            record = self._read(path)
            if record is None:
                continue
            if filters and any(record.get(k) != v for k, v in filters.items()):
                continue
            record.setdefault("recordName", unquote(path.stem))
            records.append(record)
        if sort_key:
            records.sort(key=lambda r: (r.get(sort_key) is None, r.get(sort_key) or 0), reverse=descending)
        if limit is not None:
            records = records[: max(0, int(limit))]
        return records

    def delete(self, record_type: str, record_name: str) -> bool:
        self.ensure_allowed()
        try:
            self._record_path(record_type, record_name).unlink()
            return True
        except FileNotFoundError:
            return False


class RecordStoreClient:
    """
    Async facade over FileRecordStore.

    Every blocking call runs in a worker thread under a fixed timeout; a
    timeout or OS failure surfaces as TransportError.
    """

    def __init__(self, store: FileRecordStore, timeout_s: float = 15.0):
        self.store = store
        self.timeout_s = timeout_s

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise TransportError(f"record store call timed out after {self.timeout_s:g}s") from e
        except OSError as e:
            raise TransportError(f"record store I/O failed: {e}") from e

    async def ensure_allowed(self) -> None:
        await self._run(self.store.ensure_allowed)

    async def save(self, record_type: str, record_name: str, fields: dict[str, Any]) -> dict[str, Any]:
        return await self._run(self.store.save, record_type, record_name, fields)

    async def fetch(self, record_type: str, record_name: str) -> dict[str, Any] | None:
        return await self._run(self.store.fetch, record_type, record_name)

    async def query(self, record_type: str, filters: dict[str, Any] | None = None, **kwargs: Any) -> list[dict[str, Any]]:
        return await self._run(self.store.query, record_type, filters, **kwargs)

    async def delete(self, record_type: str, record_name: str) -> bool:
        return await self._run(self.store.delete, record_type, record_name)


def command_from_record(record: dict[str, Any]) -> Command:
    args = _load_json(record.get("payload"))
    client_id = record.get("clientId")
    command = Command(
        command_id=str(record.get("commandId") or ""),
        type=str(record.get("type") or ""),
        args=args if isinstance(args, dict) else {},
        client_id=str(client_id) if client_id else None,
        created_at=int(record.get("createdAt") or 0),
    )
    command.meta["recordName"] = record.get("recordName")
    return command


def result_from_record(record: dict[str, Any]) -> CommandResult:
    payload = _load_json(record.get("payload"))
    return CommandResult(
        command_id=str(record.get("commandId") or ""),
        ok=bool(record.get("ok")),
        payload=payload if isinstance(payload, dict) else {},
        created_at=int(record.get("createdAt") or 0),
    )


class RecordStoreTransport(RelayTransport, ResultStore):
    """Poll `RelayCommand` records; results double as the durable ledger."""

    name = "records"
    supports_push_events = False

    def __init__(self, client: RecordStoreClient, runner_id: str):
        self.client = client
        self.runner_id = runner_id

    @property
    def results(self) -> ResultStore:
        return self

    async def open(self) -> None:
        await self.client.ensure_allowed()
        logger.info(f"Record store binding ready (container {self.client.store.container_id})")

    async def close(self) -> None:
        pass

    async def poll_commands(self) -> list[Command]:
        records = await self.client.query(
            COMMAND_TYPE,
            {"runnerId": self.runner_id, "status": "new"},
            sort_key="createdAt",
        )
        commands = [command_from_record(r) for r in records]
        if commands:
            logger.debug(f"Fetched {len(commands)} pending command(s)")
        return [c for c in commands if c.command_id]

    async def finish_command(self, command: Command, result: CommandResult | None, duplicate: bool = False) -> None:
        name = command.meta.get("recordName") or command_record_name(self.runner_id, command.command_id)
        await self.client.delete(COMMAND_TYPE, name)

    async def get_result(self, command_id: str) -> CommandResult | None:
        record = await self.client.fetch(RESULT_TYPE, command_record_name(self.runner_id, command_id))
        return result_from_record(record) if record else None

    async def put_result(self, result: CommandResult) -> None:
        await self.client.save(
            RESULT_TYPE,
            command_record_name(self.runner_id, result.command_id),
            {
                "runnerId": self.runner_id,
                "commandId": result.command_id,
                "ok": result.ok,
                "createdAt": result.created_at,
                "payload": json.dumps(result.payload, ensure_ascii=False),
            },
        )

    async def write_snapshot(self, snapshot: Snapshot) -> None:
        await self.client.save(
            SNAPSHOT_TYPE,
            snapshot_record_name(self.runner_id, snapshot.scope_key),
            {
                "runnerId": self.runner_id,
                "scopeKey": snapshot.scope_key,
                "updatedAt": snapshot.updated_at,
                "payload": json.dumps(snapshot.envelope(), ensure_ascii=False),
            },
        )

    async def write_presence(self, presence: RunnerPresence) -> None:
        await self.client.save(RUNNER_TYPE, presence.runner_id, presence.to_dict())


class RecordDiagnostics:
    """Out-of-process diagnostic operations over a record container."""

    def __init__(self, store: FileRecordStore):
        self.store = store

    def status(self) -> dict[str, Any]:
        return self.store.account_status()

    def roundtrip_test(self) -> dict[str, Any]:
        started = time.monotonic()
        record_name = f"test-{uuid.uuid4().hex}"
        self.store.save(TEST_TYPE, record_name, {"createdAt": now_ms()})
        if self.store.fetch(TEST_TYPE, record_name) is None:
            raise TransportError(f"test record {record_name} was not readable after save")
        self.store.delete(TEST_TYPE, record_name)
        return {"recordName": record_name, "durationMs": int((time.monotonic() - started) * 1000)}

    def latest_runner(self) -> dict[str, Any] | None:
        rows = self.store.query(RUNNER_TYPE, sort_key="updatedAt", descending=True, limit=1)
        return RunnerPresence.from_dict(rows[0]).to_dict() if rows else None

    def upsert_runner(self, runner_id: str, name: str, platform: str) -> dict[str, Any]:
        presence = RunnerPresence(runner_id=runner_id, name=name, platform=platform)
        self.store.save(RUNNER_TYPE, runner_id, presence.to_dict())
        return presence.to_dict()

    def get_snapshot(self, runner_id: str, scope_key: str) -> dict[str, Any] | None:
        record = self.store.fetch(SNAPSHOT_TYPE, snapshot_record_name(runner_id, scope_key))
        if record is None:
            return None
        envelope = _load_json(record.get("payload"))
        return envelope if isinstance(envelope, dict) else None

    def get_command_result(self, runner_id: str, command_id: str) -> dict[str, Any] | None:
        record = self.store.fetch(RESULT_TYPE, command_record_name(runner_id, command_id))
        return result_from_record(record).to_dict() if record else None

    def latest_command_result(self, runner_id: str) -> dict[str, Any] | None:
        rows = self.store.query(
            RESULT_TYPE,
            {"runnerId": runner_id},
            sort_key="createdAt",
            descending=True,
            limit=1,
        )
        return result_from_record(rows[0]).to_dict() if rows else None

    def submit_command(self, runner_id: str, payload_json: str) -> dict[str, Any]:
        try:
            data = json.loads(payload_json)
        except ValueError as e:
            raise ValueError(f"invalid command JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("command JSON must be an object")
        command_type = str(data.get("type") or "").strip()
        if not command_type:
            raise ValueError("command JSON is missing 'type'")
        command_id = str(data.get("commandId") or uuid.uuid4().hex)
        args = data.get("args")
        if args is None:
            args = data.get("payload")
        created_at = int(data.get("createdAt") or now_ms())
        record_name = command_record_name(runner_id, command_id)
        self.store.save(
            COMMAND_TYPE,
            record_name,
            {
                "runnerId": runner_id,
                "commandId": command_id,
                "clientId": data.get("clientId"),
                "type": command_type,
                "createdAt": created_at,
                "status": "new",
                "payload": json.dumps(args if isinstance(args, dict) else {}, ensure_ascii=False),
            },
        )
        return {"commandId": command_id, "recordName": record_name, "createdAt": created_at}


def create_records_transport(config: Any, _sessions: Any = None) -> RecordStoreTransport:
    store = FileRecordStore(config.records.root_path, config.records.container_id)
    client = RecordStoreClient(store, timeout_s=config.relay.transport_timeout_s)
    return RecordStoreTransport(client, config.runner.runner_id)
