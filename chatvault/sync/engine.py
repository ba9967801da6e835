"""
Sync engine: mirrors the local message tree to a remote sync server.

Three ways to move data:

  sync_to_cloud()                   full encrypted push (snapshot + per-type rows)
  sync_from_cloud()                 full snapshot pull, applied wholesale (bootstrap)
  sync_with_conflict_resolution()   download per-type rows, detect/resolve
                                    conflicts, apply, push merged state back

plus pull_changes(), the O(delta) catch-up over versioned per-type rows that
the polling loop uses.

Cycle state is recorded in the local "syncStatus" setting
(idle → syncing → success | error). One in-memory flag keeps pushes from
overlapping; a push requested while one runs is dropped, not queued. Local
writes schedule a push after a debounce window.

The engine only touches local data through the MessageTree it is given.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field

from chatvault.config import SyncSettings
from chatvault.storage.models import (
    TABLE_CONVERSATIONS,
    TABLE_MESSAGES,
    Tombstone,
    entity_timestamp,
    now_ms,
)
from chatvault.sync import crypto
from chatvault.sync.client import SyncClient
from chatvault.sync.conflicts import (
    Conflict,
    ResolutionStrategy,
    detect_conflicts,
    merge_data,
    resolve_conflicts,
)
from chatvault.sync.errors import (
    PayloadTooLargeError,
    ServerUnavailableError,
    SyncError,
)
from chatvault.sync.health import HealthMonitor
from chatvault.tree import MessageTree

logger = logging.getLogger(__name__)

STATUS_IDLE = "idle"
STATUS_SYNCING = "syncing"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

DATA_CONFIG = "config"
DATA_CONVERSATIONS = "conversations"
DATA_MESSAGES = "messages"
DATA_DELETED = "deletedRecords"
DATA_TYPES = (DATA_CONFIG, DATA_CONVERSATIONS, DATA_MESSAGES, DATA_DELETED)

SETTING_STATUS = "syncStatus"
SETTING_VERSIONS = "syncVersions"
SETTING_APP_CONFIG = "appConfig"

_WATCHED_TABLES = (TABLE_CONVERSATIONS, TABLE_MESSAGES)


@dataclass
class SyncResult:
    success: bool
    strategy: str = ""
    conflicts: list[Conflict] = field(default_factory=list)
    resolved: int = 0
    applied: int = 0
    skipped: int = 0
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "strategy": self.strategy,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "resolved": self.resolved,
            "applied": self.applied,
            "skipped": self.skipped,
            "error": self.error,
        }


def _canonical(value) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class SyncEngine:
    def __init__(
        self,
        tree: MessageTree,
        client: SyncClient,
        settings: SyncSettings,
        health: HealthMonitor | None = None,
    ):
        self.tree = tree
        self.client = client
        self.settings = settings
        self.health = health or HealthMonitor(
            client,
            ttl=settings.health_ttl_seconds,
            interval=settings.health_interval_seconds,
        )
        self.has_synced_once = False
        self._is_syncing = False
        self._applying = False
        self._sync_id: str | None = None
        self._debounce_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._started = False

    # ─ Identity ───────────────────────────────────────────────────────────

    @property
    def sync_id(self) -> str:
        if self._sync_id is None:
            self._sync_id = crypto.derive_sync_id(self.settings.passphrase)
        return self._sync_id

    @property
    def user_id(self) -> str:
        return self.settings.user_id or crypto.derive_user_id(self.settings.passphrase)

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    def _can_sync(self) -> bool:
        return bool(
            self.settings.enabled
            and self.settings.passphrase
            and self.settings.api_url
        )

    # ─ Status ─────────────────────────────────────────────────────────────

    def status(self) -> dict:
        state = dict(self.tree.get_setting(SETTING_STATUS) or {})
        state.setdefault("syncStatus", STATUS_IDLE)
        state.setdefault("lastSyncTime", None)
        state.setdefault("lastError", None)
        health = self.health.status
        state["serverAvailable"] = health.available if health else None
        return state

    def _record_status(self, status: str, error: str | None = None, synced: bool = False) -> None:
        state = dict(self.tree.get_setting(SETTING_STATUS) or {})
        state["syncStatus"] = status
        state["lastError"] = error
        if synced:
            state["lastSyncTime"] = now_ms()
        self.tree.put_setting(SETTING_STATUS, state)

    def _versions(self) -> dict:
        return dict(self.tree.get_setting(SETTING_VERSIONS) or {})

    def _save_versions(self, versions: dict) -> None:
        self.tree.put_setting(SETTING_VERSIONS, versions)

    # ─ Local state ────────────────────────────────────────────────────────

    def _collect(self) -> dict:
        return {
            DATA_CONFIG: self.tree.get_setting(SETTING_APP_CONFIG) or {},
            DATA_CONVERSATIONS: self.tree.export_conversations(),
            DATA_MESSAGES: self.tree.export_messages(),
            DATA_DELETED: self.tree.export_tombstones(),
            "timestamp": now_ms(),
        }

    def _skip_by_tombstone(self, table: str, item: dict) -> bool:
        """True when a local tombstone is newer than this remote entity."""
        tomb = self.tree.tombstone_for(table, str(item.get("id")))
        return tomb is not None and entity_timestamp(item) < tomb.deleted_at

    def _apply_tombstones(self, records: list[dict]) -> int:
        removed = 0
        for record in records or []:
            try:
                tomb = Tombstone.from_dict(record)
            except (KeyError, TypeError) as e:
                logger.warning("Skipping malformed tombstone %r: %s", record, e)
                continue
            if self.tree.apply_tombstone(tomb):
                removed += 1
        if removed:
            logger.info("Applied %d remote deletion(s)", removed)
        return removed

    def _apply_config(self, remote_config: dict | None) -> None:
        if not remote_config:
            return
        local = self.tree.get_setting(SETTING_APP_CONFIG) or {}
        self.tree.put_setting(SETTING_APP_CONFIG, merge_data(local, remote_config))

    def _apply_wholesale(self, payload: dict) -> int:
        """Snapshot pull: tombstones, then bulk upsert, no conflict detection."""
        self._applying = True
        try:
            with self.tree.store.transaction():
                self._apply_tombstones(payload.get(DATA_DELETED) or [])
                convs = [
                    c for c in payload.get(DATA_CONVERSATIONS) or []
                    if not self._skip_by_tombstone(TABLE_CONVERSATIONS, c)
                ]
                msgs = [
                    m for m in payload.get(DATA_MESSAGES) or []
                    if not self._skip_by_tombstone(TABLE_MESSAGES, m)
                ]
                applied = self.tree.upsert_conversations(convs) + self.tree.upsert_messages(msgs)
                if payload.get(DATA_CONFIG):
                    self.tree.put_setting(SETTING_APP_CONFIG, payload[DATA_CONFIG])
        finally:
            self._applying = False
        return applied

    def _merge_remote(self, remote: dict, strategy: ResolutionStrategy) -> SyncResult:
        """
        Detect, resolve and apply remote entities against local ones.
        With MANUAL and any conflict, nothing is written.
        """
        remote_convs = remote.get(DATA_CONVERSATIONS) or []
        remote_msgs = remote.get(DATA_MESSAGES) or []

        conv_conflicts = detect_conflicts(self.tree.export_conversations(), remote_convs)
        msg_conflicts = detect_conflicts(self.tree.export_messages(), remote_msgs)
        conflicts = conv_conflicts + msg_conflicts

        if conflicts and strategy is ResolutionStrategy.MANUAL:
            logger.info("%d conflict(s) need a manual decision; nothing applied", len(conflicts))
            return SyncResult(success=False, strategy=strategy.value, conflicts=conflicts)

        conflict_conv_ids = {c.id for c in conv_conflicts}
        conflict_msg_ids = {c.id for c in msg_conflicts}
        resolved_convs = [
            r.data for r in resolve_conflicts(conv_conflicts, strategy)
            if not self._skip_by_tombstone(TABLE_CONVERSATIONS, r.data)
        ]
        resolved_msgs = [
            r.data for r in resolve_conflicts(msg_conflicts, strategy)
            if not self._skip_by_tombstone(TABLE_MESSAGES, r.data)
        ]

        self._applying = True
        try:
            with self.tree.store.transaction():
                self._apply_tombstones(remote.get(DATA_DELETED) or [])
                self.tree.upsert_conversations(resolved_convs)
                self.tree.upsert_messages(resolved_msgs)

                fresh_convs = [
                    c for c in remote_convs
                    if c.get("id") not in conflict_conv_ids
                    and not self._skip_by_tombstone(TABLE_CONVERSATIONS, c)
                ]
                fresh_msgs = [
                    m for m in remote_msgs
                    if m.get("id") not in conflict_msg_ids
                    and not self._skip_by_tombstone(TABLE_MESSAGES, m)
                ]
                self.tree.upsert_conversations(fresh_convs)
                self.tree.upsert_messages(fresh_msgs)
                self._apply_config(remote.get(DATA_CONFIG))
        finally:
            self._applying = False

        skipped = len(remote_convs) + len(remote_msgs) - len(conflicts) - len(fresh_convs) - len(fresh_msgs)
        if conflicts:
            logger.info("Resolved and applied %d conflict(s) using %s", len(conflicts), strategy.value)
        return SyncResult(
            success=True,
            strategy=strategy.value,
            resolved=len(resolved_convs) + len(resolved_msgs),
            applied=len(fresh_convs) + len(fresh_msgs),
            skipped=skipped,
        )

    # ─ Versioned per-type rows ────────────────────────────────────────────

    def _next_version(self, data_type: str, versions: dict) -> int:
        return max(now_ms(), int(versions.get(data_type, 0)) + 1)

    async def push_changes(self, bundle: dict | None = None) -> dict:
        """
        Upload every data type as its own encrypted, checksummed row.
        Returns {dataType: accepted_version}.
        """
        bundle = bundle or self._collect()
        versions = self._versions()
        accepted = {}
        for data_type in DATA_TYPES:
            value = bundle.get(data_type)
            if value is None:
                continue
            version = await self.client.upload(
                self.user_id,
                data_type,
                crypto.encrypt(value, self.settings.passphrase),
                self._next_version(data_type, versions),
                crypto.checksum(_canonical(value)),
            )
            versions[data_type] = max(int(versions.get(data_type, 0)), version)
            accepted[data_type] = version
        self._save_versions(versions)
        logger.debug("Uploaded %s", accepted)
        return accepted

    def _decode_rows(self, rows: list[dict]) -> tuple[dict, dict, int]:
        """
        Decrypt downloaded rows into {dataType: value}.
        Checksum mismatches are skipped and logged; the newest version per type wins.
        """
        remote: dict = {}
        versions: dict = {}
        skipped = 0
        for row in sorted(rows, key=lambda r: int(r.get("version") or 0)):
            data_type = row.get("dataType")
            if data_type not in DATA_TYPES:
                logger.debug("Ignoring unknown data type %r", data_type)
                continue
            value = crypto.decrypt(row.get("encryptedData") or "", self.settings.passphrase)
            if row.get("checksum") and crypto.checksum(_canonical(value)) != row["checksum"]:
                logger.warning(
                    "Checksum mismatch for %s v%s; skipping this row",
                    data_type, row.get("version"),
                )
                skipped += 1
                continue
            remote[data_type] = value
            versions[data_type] = int(row.get("version") or 0)
        return remote, versions, skipped

    async def pull_changes(self, strategy: ResolutionStrategy | str | None = None) -> SyncResult:
        """Fetch only rows newer than the local watermarks and merge them."""
        strategy = ResolutionStrategy.parse(strategy or self.settings.strategy)
        if not self._can_sync():
            return SyncResult(success=False, strategy=strategy.value, error="Sync is not configured")
        if self._is_syncing:
            return SyncResult(success=False, strategy=strategy.value, error="Sync already in progress")

        self._is_syncing = True
        try:
            if not await self.health.check():
                raise ServerUnavailableError()
            watermarks = self._versions()
            rows = []
            for data_type in DATA_TYPES:
                rows.extend(await self.client.download(
                    self.user_id, data_type, since_version=int(watermarks.get(data_type, 0)),
                ))
            if not rows:
                logger.debug("No remote changes")
                return SyncResult(success=True, strategy=strategy.value)

            remote, seen, skipped = self._decode_rows(rows)
            result = self._merge_remote(remote, strategy)
            result.skipped += skipped
            if not result.success:
                return result

            for data_type, version in seen.items():
                watermarks[data_type] = max(int(watermarks.get(data_type, 0)), version)
            self._save_versions(watermarks)
            self._record_status(STATUS_SUCCESS, synced=True)
            logger.info("Pulled %d remote row(s), %d entity change(s)", len(rows), result.applied + result.resolved)
            return result
        except SyncError as e:
            logger.warning("Pull failed: %s", e)
            self._record_status(STATUS_ERROR, str(e))
            return SyncResult(success=False, strategy=strategy.value, error=str(e))
        except Exception as e:
            logger.exception("Pull failed unexpectedly")
            self._record_status(STATUS_ERROR, str(e))
            return SyncResult(success=False, strategy=strategy.value, error=str(e))
        finally:
            self._is_syncing = False

    # ─ Full push / pull ───────────────────────────────────────────────────

    async def _upload_state(self) -> None:
        bundle = self._collect()
        size = len(_canonical(bundle).encode("utf-8"))
        if size > self.settings.max_payload_bytes:
            raise PayloadTooLargeError(size, self.settings.max_payload_bytes)

        blob = crypto.encrypt(bundle, self.settings.passphrase)
        await self.client.put_snapshot(self.sync_id, blob, bundle["timestamp"])
        await self.push_changes(bundle)
        logger.info(
            "Pushed %d conversation(s), %d message(s) (%.1f KB)",
            len(bundle[DATA_CONVERSATIONS]), len(bundle[DATA_MESSAGES]), size / 1024,
        )

    async def sync_to_cloud(self, force: bool = False) -> SyncResult | None:
        """
        Push the full local state.

        Returns None when the push was skipped (another sync running, sync
        disabled or unconfigured). Before the first successful sync a
        non-forced push becomes a conflict-aware sync so nothing remote is
        overwritten blindly.
        """
        if self._is_syncing:
            logger.debug("Push requested while a sync is running; dropped")
            return None
        if not self._can_sync():
            return None
        if not self.has_synced_once and not force:
            logger.info("Not synced with cloud yet; upgrading push to conflict-aware sync")
            return await self.sync_with_conflict_resolution()

        self._is_syncing = True
        try:
            if not await self.health.check(force=True):
                raise ServerUnavailableError()
            self._record_status(STATUS_SYNCING)
            await self._upload_state()
            self._record_status(STATUS_SUCCESS, synced=True)
            return SyncResult(success=True)
        except SyncError as e:
            logger.error("Sync to cloud failed: %s", e)
            self._record_status(STATUS_ERROR, str(e))
            return SyncResult(success=False, error=str(e))
        except Exception as e:
            logger.exception("Sync to cloud failed unexpectedly")
            self._record_status(STATUS_ERROR, str(e))
            return SyncResult(success=False, error=str(e))
        finally:
            self._is_syncing = False

    async def sync_from_cloud(self) -> SyncResult | None:
        """Fetch the snapshot for this passphrase and apply it wholesale."""
        if self._is_syncing or not self._can_sync():
            return None

        self._is_syncing = True
        try:
            if not await self.health.check(force=True):
                raise ServerUnavailableError()
            self._record_status(STATUS_SYNCING)
            snapshot = await self.client.get_snapshot(self.sync_id)
            if not snapshot or not snapshot.get("data"):
                logger.debug("No cloud data found")
                self._record_status(STATUS_IDLE)
                return SyncResult(success=True)
            payload = crypto.decrypt(snapshot["data"], self.settings.passphrase)
            applied = self._apply_wholesale(payload)
            self._record_status(STATUS_SUCCESS, synced=True)
            logger.info("Cloud snapshot applied (%d entities)", applied)
            return SyncResult(success=True, applied=applied)
        except SyncError as e:
            logger.error("Sync from cloud failed: %s", e)
            self._record_status(STATUS_ERROR, str(e))
            return SyncResult(success=False, error=str(e))
        except Exception as e:
            logger.exception("Sync from cloud failed unexpectedly")
            self._record_status(STATUS_ERROR, str(e))
            return SyncResult(success=False, error=str(e))
        finally:
            self._is_syncing = False

    async def sync_with_conflict_resolution(
        self, strategy: ResolutionStrategy | str | None = None
    ) -> SyncResult:
        """
        Merge remote per-type rows into local state, then push the result.

        A failure after conflicts were applied does not roll them back.
        """
        strategy = ResolutionStrategy.parse(strategy or self.settings.strategy)
        if not self._can_sync():
            return SyncResult(success=False, strategy=strategy.value, error="Sync is not configured")
        if self._is_syncing:
            return SyncResult(success=False, strategy=strategy.value, error="Sync already in progress")

        logger.info("Starting sync with conflict resolution (%s)", strategy.value)
        self._is_syncing = True
        self._record_status(STATUS_SYNCING)
        try:
            if not await self.health.check(force=True):
                raise ServerUnavailableError()

            rows = await self.client.download(self.user_id)
            remote, seen, skipped = self._decode_rows(rows)
            result = self._merge_remote(remote, strategy)
            result.skipped += skipped
            if not result.success:
                self._record_status(STATUS_IDLE)
                return result

            self.has_synced_once = True
            watermarks = self._versions()
            for data_type, version in seen.items():
                watermarks[data_type] = max(int(watermarks.get(data_type, 0)), version)
            self._save_versions(watermarks)

            await self._upload_state()
            self._record_status(STATUS_SUCCESS, synced=True)
            logger.info(
                "Sync with conflict resolution completed: %d resolved, %d applied, %d skipped",
                result.resolved, result.applied, result.skipped,
            )
            return result
        except SyncError as e:
            logger.error("Sync with conflict resolution failed: %s", e)
            self._record_status(STATUS_ERROR, str(e))
            return SyncResult(success=False, strategy=strategy.value, error=str(e))
        except Exception as e:
            logger.exception("Sync with conflict resolution failed unexpectedly")
            self._record_status(STATUS_ERROR, str(e))
            return SyncResult(success=False, strategy=strategy.value, error=str(e))
        finally:
            self._is_syncing = False

    async def delete_cloud_data(self, data_type: str | None = None) -> dict:
        """Remove this user's remote rows (one type, or everything)."""
        if not self.settings.passphrase or not self.settings.api_url:
            raise SyncError("Sync is not configured")
        if not await self.health.check(force=True):
            raise ServerUnavailableError()
        result = await self.client.delete(self.user_id, data_type)
        versions = self._versions()
        if data_type:
            versions.pop(data_type, None)
        else:
            await self.client.delete_snapshot(self.sync_id)
            versions = {}
            self.has_synced_once = False
        self._save_versions(versions)
        logger.info("Cloud data deleted (%s)", data_type or "all types")
        return result

    # ─ Automatic sync ─────────────────────────────────────────────────────

    def start(self) -> None:
        """Watch local writes; start health monitoring and polling when enabled."""
        if not self._started:
            self.tree.add_change_observer(self._on_local_change)
            self._started = True
        if self.settings.enabled:
            self.health.start()
            if self.settings.auto_sync:
                self._start_polling()

    async def stop(self) -> None:
        if self._started:
            self.tree.remove_change_observer(self._on_local_change)
            self._started = False
        for task in (self._debounce_task, self._poll_task):
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._debounce_task = None
        self._poll_task = None
        await self.health.stop()

    async def enable(self, strategy: ResolutionStrategy | str | None = None) -> SyncResult:
        """Turn sync on and run an initial conflict-aware sync."""
        self.settings.enabled = True
        self.start()
        return await self.sync_with_conflict_resolution(strategy)

    async def disable(self) -> None:
        self.settings.enabled = False
        await self.stop()

    def _on_local_change(self, table: str, ids: list[str]) -> None:
        if self._applying or table not in _WATCHED_TABLES:
            return
        if not (self.settings.enabled and self.settings.auto_sync):
            return
        self.schedule_push()

    def schedule_push(self) -> None:
        """(Re)start the debounce window; the push runs when it expires."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; auto-push skipped")
            return
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = loop.create_task(self._debounced_push())

    async def _debounced_push(self) -> None:
        await asyncio.sleep(self.settings.debounce_seconds)
        await self.sync_to_cloud()

    async def flush(self) -> None:
        """Wait for a pending debounced push, if any."""
        task = self._debounce_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)

    def _start_polling(self) -> None:
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.ensure_future(self._poll_loop())
            logger.info("Cloud polling started (every %.0fs)", self.settings.polling_interval_seconds)

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.polling_interval_seconds)
            if not (self.settings.enabled and self.settings.auto_sync):
                logger.info("Cloud polling stopped")
                return
            if self._is_syncing:
                continue
            await self.pull_changes()
