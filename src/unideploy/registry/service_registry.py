"""Persisted registry of deployed services and their version history.

The registry is a single JSON document mapping app name to
``ServiceRecord``:

    {"services": {"shop": {"name": "shop", "image": "acme/shop", "tag": "v2", ...}}}

Mutation protocol:
1. Acquire the write lock (default 30s timeout)
2. Read the current document, repairing it if corrupt
3. Compute the updated document (history grows only on image:tag change)
4. Write to a temp file in the same directory and atomically rename it
   over the registry file (mode 0600)
5. Release the lock

Degraded reads: reads take the read lock with a short timeout (default
10s). If the lock cannot be obtained the read proceeds without it and
logs ``registry_read_degraded``. Because writes are atomic renames, an
unlocked read sees either the old or the new document, never a partial
one; it may be stale but never blocks indefinitely.

Example:
    >>> registry = ServiceRegistry(RegistryConfig(path=Path("registry.json")))
    >>> result = await registry.register(ServiceRecord(name="shop", image="acme/shop", tag="v1"))
    >>> record = await registry.get("shop")
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Callable

import structlog
from pydantic import BaseModel, Field, ValidationError

from unideploy.config import RegistryConfig
from unideploy.errors import ErrorKind, OperationError
from unideploy.models import RouteType, ServiceRecord, VersionEntry
from unideploy.registry.lock import LockKind, LockManager

logger = structlog.get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 10


class RegistryDocument(BaseModel):
    """In-memory form of the registry file."""

    services: dict[str, ServiceRecord] = Field(default_factory=dict)


class RegistryResult(BaseModel):
    """Result of a registry mutation.

    Attributes:
        success: Whether the mutation was persisted
        name: Service the mutation targeted
        action: register or unregister
        record: Stored record after the mutation
        history_appended: Whether a version-history entry was added
        error: Failure description
        duration_seconds: Time taken including lock wait
    """

    success: bool
    name: str
    action: str
    record: ServiceRecord | None = None
    history_appended: bool = False
    error: OperationError | None = None
    duration_seconds: float = Field(default=0.0, ge=0.0)


class ServiceRegistry:
    """Concurrency-safe service registry on top of LockManager.

    Attributes:
        config: Registry configuration
        path: Registry document path
        locks: Lock manager guarding the document
    """

    def __init__(
        self,
        config: RegistryConfig,
        lock_manager: LockManager | None = None,
    ) -> None:
        self.config = config
        self.path = config.path
        self.locks = lock_manager or LockManager(self.path, config)
        self._logger = logger.bind(component="ServiceRegistry")

    # ------------------------------------------------------------------
    # Document IO
    # ------------------------------------------------------------------

    def _parse(self, raw: str) -> tuple[RegistryDocument, bool]:
        """Parse registry text, repairing what can be repaired.

        Returns:
            Tuple of (document, repaired) where repaired is True when the
            on-disk content differed from a valid document.
        """
        if not raw.strip():
            return RegistryDocument(), True

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            self._logger.error("registry_corrupt", path=str(self.path), error=str(e))
            return RegistryDocument(), True

        if not isinstance(data, dict):
            return RegistryDocument(), True

        repaired = False
        services = data.get("services")
        if services is None:
            # Bare {name: record} mapping from a hand-edited file
            services = {k: v for k, v in data.items() if isinstance(v, dict)}
            repaired = True
        if not isinstance(services, dict):
            return RegistryDocument(), True

        document = RegistryDocument()
        for name, entry in services.items():
            if not isinstance(entry, dict):
                repaired = True
                continue
            try:
                document.services[name] = ServiceRecord.model_validate({**entry, "name": name})
            except ValidationError as e:
                repaired = True
                self._logger.warning(
                    "registry_entry_dropped",
                    service=name,
                    error=str(e),
                )
        return document, repaired

    def _read_file(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _load_for_write(self) -> RegistryDocument:
        raw = self._read_file()
        if raw is None:
            return RegistryDocument()

        document, repaired = self._parse(raw)
        if repaired and raw.strip():
            backup = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
            backup.write_text(raw, encoding="utf-8")
            os.chmod(backup, 0o600)
            self._logger.warning(
                "registry_repaired",
                path=str(self.path),
                backup=str(backup),
                services_kept=len(document.services),
            )
        return document

    def _write_document(self, document: RegistryDocument) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = document.model_dump(mode="json")
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def _read_document(self) -> RegistryDocument:
        lock = await self.locks.acquire(LockKind.READ)
        if not lock.success:
            self._logger.warning(
                "registry_read_degraded",
                path=str(self.path),
                reason=lock.error.message if lock.error else None,
            )
        try:
            raw = await asyncio.to_thread(self._read_file)
        finally:
            if lock.success:
                self.locks.release(LockKind.READ)

        if raw is None:
            return RegistryDocument()
        document, _ = self._parse(raw)
        return document

    async def _mutate(
        self,
        name: str,
        action: str,
        apply: Callable[[RegistryDocument], tuple[ServiceRecord | None, bool]],
    ) -> RegistryResult:
        """Run one locked read-modify-write cycle."""
        start = time.monotonic()
        lock = await self.locks.acquire(LockKind.WRITE)
        if not lock.success:
            return RegistryResult(
                success=False,
                name=name,
                action=action,
                error=lock.error,
                duration_seconds=time.monotonic() - start,
            )

        try:
            document = await asyncio.to_thread(self._load_for_write)
            record, appended = apply(document)
            await asyncio.to_thread(self._write_document, document)
        except (OSError, ValueError) as e:
            self._logger.error(
                "registry_write_failed",
                service=name,
                action=action,
                error=str(e),
                error_type=type(e).__name__,
            )
            return RegistryResult(
                success=False,
                name=name,
                action=action,
                error=OperationError(kind=ErrorKind.DEPLOYMENT, message=str(e)),
                duration_seconds=time.monotonic() - start,
            )
        finally:
            self.locks.release(LockKind.WRITE)

        return RegistryResult(
            success=True,
            name=name,
            action=action,
            record=record,
            history_appended=appended,
            duration_seconds=time.monotonic() - start,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def initialize(self) -> RegistryResult:
        """Create the registry document if it does not exist."""

        def apply(document: RegistryDocument) -> tuple[ServiceRecord | None, bool]:
            return None, False

        return await self._mutate("", "initialize", apply)

    async def register(
        self, record: ServiceRecord, track_versions: bool = True
    ) -> RegistryResult:
        """Insert or update a service record.

        When the stored (image, tag) differs from the new one, the stored
        version is appended to version_history. Registering the same
        version again keeps history and registered_at unchanged.

        Args:
            record: Record to store; its version_history is ignored when an
                entry already exists
            track_versions: Append history entries on version change

        Returns:
            RegistryResult with the stored record
        """

        def apply(document: RegistryDocument) -> tuple[ServiceRecord | None, bool]:
            existing = document.services.get(record.name)
            stored = record.model_copy(deep=True)
            appended = False

            if existing is not None:
                stored.version_history = list(existing.version_history)
                if existing.version == record.version:
                    stored.registered_at = existing.registered_at
                elif track_versions and existing.image:
                    stored.version_history.append(
                        VersionEntry(
                            image=existing.image,
                            tag=existing.tag,
                            deployed_at=existing.deployed_at or existing.registered_at,
                        )
                    )
                    appended = True

            document.services[record.name] = stored
            return stored, appended

        result = await self._mutate(record.name, "register", apply)
        if result.success:
            self._logger.info(
                "service_registered",
                service=record.name,
                image=record.image,
                tag=record.tag,
                history_appended=result.history_appended,
                duration_seconds=round(result.duration_seconds, 3),
            )
        return result

    async def unregister(self, name: str) -> RegistryResult:
        """Remove a service. Removing an unknown service is an error."""
        missing = False

        def apply(document: RegistryDocument) -> tuple[ServiceRecord | None, bool]:
            nonlocal missing
            removed = document.services.pop(name, None)
            missing = removed is None
            return removed, False

        result = await self._mutate(name, "unregister", apply)
        if result.success and missing:
            return result.model_copy(
                update={
                    "success": False,
                    "error": OperationError(
                        kind=ErrorKind.DEPLOYMENT, message=f"Service not found: {name}"
                    ),
                }
            )
        if result.success:
            self._logger.info("service_unregistered", service=name)
        return result

    async def get(self, name: str) -> ServiceRecord | None:
        document = await self._read_document()
        return document.services.get(name)

    async def exists(self, name: str) -> bool:
        return await self.get(name) is not None

    async def list_services(self) -> list[str]:
        document = await self._read_document()
        return sorted(document.services)

    async def list_records(self) -> list[ServiceRecord]:
        document = await self._read_document()
        return [document.services[name] for name in sorted(document.services)]

    async def history(self, name: str, limit: int = DEFAULT_HISTORY_LIMIT) -> list[VersionEntry]:
        """Return the last ``limit`` history entries, oldest first."""
        record = await self.get(name)
        if record is None or limit <= 0:
            return []
        return record.version_history[-limit:]

    async def previous_version(self, name: str) -> VersionEntry | None:
        """Most recent history entry, i.e. the version before the current one."""
        entries = await self.history(name, limit=1)
        return entries[-1] if entries else None

    async def get_service_url(self, name: str, ssl: bool = True) -> str | None:
        """Public URL of a service, or None if it is not registered."""
        record = await self.get(name)
        if record is None:
            return None
        return service_url(record, ssl)


def service_url(record: ServiceRecord, ssl: bool = True) -> str:
    """Build the public URL for a record from its routing fields."""
    scheme = "https" if ssl else "http"
    route = record.route.strip("/")
    if record.route_type is RouteType.SUBDOMAIN:
        host = f"{route}.{record.domain}" if route else record.domain
        return f"{scheme}://{host}"
    if route:
        return f"{scheme}://{record.domain}/{route}"
    return f"{scheme}://{record.domain}"

