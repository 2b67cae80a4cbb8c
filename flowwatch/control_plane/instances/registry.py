"""Registered instances, their credentials, and the probe-driven status machine."""

from __future__ import annotations

import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, Iterator
from urllib.parse import urlsplit

from loguru import logger

from flowwatch.control_plane.db.db import FlowwatchDB
from flowwatch.control_plane.errors import (
    AuthRejected,
    ConnectorError,
    CredentialError,
    NotFoundError,
    Unreachable,
    ValidationError,
)
from flowwatch.control_plane.events.broadcaster import EventBroadcaster, EventKind
from flowwatch.control_plane.instances.connector import (
    ConnectionTarget,
    InstanceConnector,
    ProbeOutcome,
    ProbeStatus,
)
from flowwatch.control_plane.models.records import Instance, InstanceStatus
from flowwatch.shared.secrets import CredentialCipher
from flowwatch.shared.timeutil import utc_now


def normalize_endpoint(raw: str) -> str:
    """Return ``scheme://host[:port][/path]`` without a trailing slash."""

    value = (raw or "").strip()
    if not value:
        raise ValidationError("Instance URL is required", reason_code="endpoint_missing")
    parts = urlsplit(value)
    if parts.scheme.lower() not in {"http", "https"}:
        raise ValidationError("Instance URL must use http or https", reason_code="endpoint_scheme")
    if not parts.hostname:
        raise ValidationError("Instance URL must include a host", reason_code="endpoint_host")
    if parts.query or parts.fragment:
        raise ValidationError(
            "Instance URL must not carry a query or fragment", reason_code="endpoint_query"
        )
    path = parts.path.rstrip("/")
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}{path}"


class InstanceRegistry:
    def __init__(
        self,
        *,
        db: FlowwatchDB,
        connector: InstanceConnector,
        cipher: CredentialCipher,
        broadcaster: EventBroadcaster | None = None,
        unreachable_threshold: int = 3,
        probe_concurrency: int = 4,
        probe_timeout_s: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.connector = connector
        self.cipher = cipher
        self.broadcaster = broadcaster
        self.unreachable_threshold = max(1, int(unreachable_threshold))
        self.probe_concurrency = max(1, int(probe_concurrency))
        self.probe_timeout_s = float(probe_timeout_s)
        self.clock = clock
        self._removal_listeners: list[Callable[[str], None]] = []

    def register(self, owner_id: str, endpoint: str, credential: str, name: str = "") -> Instance:
        owner = (owner_id or "").strip()
        if not owner:
            raise ValidationError("owner id is required", reason_code="owner_missing")
        if not (credential or "").strip():
            raise ValidationError("API key is required", reason_code="credential_missing")
        normalized = normalize_endpoint(endpoint)
        now = self.clock()
        instance = Instance(
            id=uuid.uuid4().hex,
            owner_id=owner,
            name=(name or "").strip() or (urlsplit(normalized).hostname or normalized),
            endpoint=normalized,
            credential_ciphertext=self.cipher.encrypt(credential),
            status=InstanceStatus.PENDING,
            version=None,
            consecutive_failures=0,
            last_probed_at=None,
            last_error=None,
            created_at=now,
            updated_at=now,
        )
        self.db.insert_instance(instance)
        self.db.append_audit_event(
            "instance_registered",
            {"instance_id": instance.id, "owner_id": owner, "endpoint": normalized},
        )
        logger.info("Instance registered", instance_id=instance.id, endpoint=normalized)
        return instance

    def get(self, owner_id: str, instance_id: str) -> Instance:
        instance = self.db.get_instance(instance_id)
        if instance is None or instance.owner_id != owner_id:
            raise NotFoundError("Instance not found", reason_code="instance_not_found")
        return instance

    def list_instances(self, owner_id: str | None = None) -> list[Instance]:
        return self.db.list_instances(owner_id=owner_id)

    def update(
        self,
        owner_id: str,
        instance_id: str,
        *,
        name: str | None = None,
        endpoint: str | None = None,
        credential: str | None = None,
    ) -> Instance:
        current = self.get(owner_id, instance_id)
        fields: dict[str, object] = {}
        if name is not None and name.strip():
            fields["name"] = name.strip()
        if endpoint is not None:
            normalized = normalize_endpoint(endpoint)
            if normalized != current.endpoint:
                fields["endpoint"] = normalized
        if credential is not None:
            if not credential.strip():
                raise ValidationError("API key is required", reason_code="credential_missing")
            fields["credential_ciphertext"] = self.cipher.encrypt(credential)
        if "endpoint" in fields or "credential_ciphertext" in fields:
            # New connection details invalidate whatever the last probe concluded.
            fields.update(
                {"status": InstanceStatus.PENDING, "consecutive_failures": 0, "last_error": None}
            )
        if not fields:
            return current
        updated = self.db.update_instance(instance_id, **fields)
        if updated is None:
            raise NotFoundError("Instance not found", reason_code="instance_not_found")
        self.db.append_audit_event(
            "instance_updated",
            {"instance_id": instance_id, "fields": sorted(key for key in fields if key != "credential_ciphertext")},
        )
        self._announce(current, updated)
        return updated

    def add_removal_listener(self, listener: Callable[[str], None]) -> None:
        self._removal_listeners.append(listener)

    def delete(self, owner_id: str, instance_id: str) -> None:
        instance = self.get(owner_id, instance_id)
        self.db.delete_instance(instance.id)
        self.db.append_audit_event(
            "instance_removed", {"instance_id": instance.id, "owner_id": owner_id}
        )
        logger.info("Instance removed", instance_id=instance.id)
        for listener in list(self._removal_listeners):
            listener(instance.id)

    def reconnect(self, owner_id: str, instance_id: str) -> tuple[Instance, ProbeOutcome]:
        """Clear ERROR/DISCONNECTED back to PENDING and probe right away."""

        current = self.get(owner_id, instance_id)
        reset = self.db.update_instance(
            instance_id,
            status=InstanceStatus.PENDING,
            consecutive_failures=0,
            last_error=None,
        )
        if reset is None:
            raise NotFoundError("Instance not found", reason_code="instance_not_found")
        self.db.append_audit_event(
            "instance_reconnect_requested",
            {"instance_id": instance_id, "previous_status": current.status.value},
        )
        self._announce(current, reset)
        outcome = self._probe_one(reset)
        updated = self._apply_outcome(instance_id, outcome)
        return (updated or reset), outcome

    def probe_all(
        self, concurrency_limit: int | None = None
    ) -> Iterator[tuple[Instance, ProbeOutcome]]:
        """Probe every non-ERROR instance, yielding results in completion order.

        No more than ``concurrency_limit`` probes are in flight at once; new
        probes are only submitted as earlier ones finish.
        """

        limit = max(1, int(concurrency_limit or self.probe_concurrency))
        candidates = iter(
            self.db.list_instances(
                statuses=[
                    InstanceStatus.PENDING,
                    InstanceStatus.CONNECTED,
                    InstanceStatus.DISCONNECTED,
                ]
            )
        )
        executor = ThreadPoolExecutor(max_workers=limit, thread_name_prefix="flowwatch-probe")
        in_flight: dict[Future[ProbeOutcome], Instance] = {}
        try:
            for instance in candidates:
                in_flight[executor.submit(self._probe_one, instance)] = instance
                if len(in_flight) >= limit:
                    break
            while in_flight:
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    instance = in_flight.pop(future)
                    updated = self._apply_outcome(instance.id, future.result())
                    next_instance = next(candidates, None)
                    if next_instance is not None:
                        in_flight[executor.submit(self._probe_one, next_instance)] = next_instance
                    if updated is not None:
                        yield updated, future.result()
        finally:
            for future in in_flight:
                future.cancel()
            executor.shutdown(wait=True)

    def report_connector_error(self, instance_id: str, error: ConnectorError) -> Instance | None:
        """Feed a connector error raised outside probing into the status machine."""

        if isinstance(error, AuthRejected):
            outcome = ProbeOutcome(status=ProbeStatus.AUTH_REJECTED, detail=str(error))
        elif isinstance(error, Unreachable):
            outcome = ProbeOutcome(status=ProbeStatus.UNREACHABLE, detail=str(error))
        else:
            return self.db.update_instance(instance_id, last_error=str(error))
        return self._apply_outcome(instance_id, outcome)

    def target_for(self, instance: Instance) -> ConnectionTarget:
        return ConnectionTarget(
            instance_id=instance.id,
            endpoint=instance.endpoint,
            api_key=self.cipher.decrypt(instance.credential_ciphertext),
        )

    def _probe_one(self, instance: Instance) -> ProbeOutcome:
        try:
            target = self.target_for(instance)
        except CredentialError as exc:
            return ProbeOutcome(status=ProbeStatus.AUTH_REJECTED, detail=str(exc))
        try:
            return self.connector.probe(target, timeout_s=self.probe_timeout_s)
        except ConnectorError as exc:
            status = ProbeStatus.AUTH_REJECTED if isinstance(exc, AuthRejected) else ProbeStatus.UNREACHABLE
            return ProbeOutcome(status=status, detail=str(exc))
        except Exception as exc:
            logger.exception("Probe raised unexpectedly", instance_id=instance.id)
            return ProbeOutcome(status=ProbeStatus.UNREACHABLE, detail=f"probe failed: {exc}")

    def _apply_outcome(self, instance_id: str, outcome: ProbeOutcome) -> Instance | None:
        with self.db.transaction():
            current = self.db.get_instance(instance_id)
            if current is None:
                return None
            fields: dict[str, object] = {"last_probed_at": outcome.checked_at}
            if current.status is InstanceStatus.ERROR:
                # Only an explicit reconnect leaves ERROR.
                pass
            elif outcome.status is ProbeStatus.HEALTHY:
                fields.update(
                    status=InstanceStatus.CONNECTED,
                    consecutive_failures=0,
                    last_error=None,
                    version=outcome.version or current.version,
                )
            elif outcome.status is ProbeStatus.AUTH_REJECTED:
                fields.update(status=InstanceStatus.ERROR, last_error=outcome.detail or "Invalid API key")
            else:
                failures = current.consecutive_failures + 1
                fields.update(consecutive_failures=failures, last_error=outcome.detail or "unreachable")
                if current.status is InstanceStatus.CONNECTED and failures >= self.unreachable_threshold:
                    fields["status"] = InstanceStatus.DISCONNECTED
            updated = self.db.update_instance(instance_id, **fields)
        if updated is not None:
            self._announce(current, updated)
        return updated

    def _announce(self, before: Instance, after: Instance) -> None:
        if before.status is after.status:
            return
        payload = {
            "instance_id": after.id,
            "name": after.name,
            "previous_status": before.status.value,
            "status": after.status.value,
            "last_error": after.last_error,
            "version": after.version,
        }
        self.db.append_audit_event("instance_status_changed", payload)
        logger.info(
            "Instance status changed",
            instance_id=after.id,
            previous_status=before.status.value,
            status=after.status.value,
        )
        if self.broadcaster is not None:
            self.broadcaster.publish(after.owner_id, EventKind.INSTANCE_STATUS_CHANGED, payload)
