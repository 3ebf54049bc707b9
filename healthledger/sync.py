"""
Ledger -> cache synchronization.

The ledger is the source of truth and the relational cache a fast query
copy. Every operation here is an idempotent upsert that never deletes:
identities and profiles are created when missing and their ledger-sourced
columns overwritten when present, while cache-only columns are never
written by a sync. Concurrent reconciliations of the same key share one
execution; different keys proceed independently.
"""

import json
import logging
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from healthledger.constants import ROLES, SYNC_WAIT_TIMEOUT
from healthledger.database import PatientProfile, User, normalize_wallet, utcnow
from healthledger.errors import (
    CacheWriteError,
    Conflict,
    IdentityMismatch,
    LedgerUnavailable,
    NotFound,
    PayloadRejected,
)
from healthledger.fallback import first_success
from healthledger.profiles import PROFILE_KINDS, ProfileKind, profile_kind

logger = logging.getLogger(__name__)


class InFlight:
    """Per-key in-flight marker: callers racing on one key share one execution."""

    def __init__(self, wait_timeout=SYNC_WAIT_TIMEOUT):
        self.wait_timeout = wait_timeout
        self._lock = threading.Lock()
        self._futures = {}

    def keys(self):
        with self._lock:
            return set(self._futures)

    def run(self, key, fn):
        with self._lock:
            future = self._futures.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._futures[key] = future

        if not leader:
            try:
                return future.result(timeout=self.wait_timeout)
            except FutureTimeout:
                raise LedgerUnavailable(f"Reconciliation of {key} is still in progress") from None

        try:
            result = fn()
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._futures.pop(key, None)


@dataclass
class SyncResult:
    kind: ProfileKind
    identity: User
    profile: Optional[Any]
    stale: bool = False

    def as_dict(self) -> Dict[str, Any]:
        view = self.kind.view(self.identity, self.profile)
        view["stale"] = self.stale
        return view


class SyncEngine:
    def __init__(self, ledger, cache, records=None, activity=None, wait_timeout=SYNC_WAIT_TIMEOUT):
        self.ledger = ledger
        self.cache = cache
        self.records = records
        self.activity = activity
        self._inflight = InFlight(wait_timeout)

    # Profiles

    def reconcile_profile(self, role, numeric_id, allow_stale=True) -> SyncResult:
        """
        Refresh one profile from the ledger into the cache.

        Args:
            role: patient, doctor or diagnostic
            numeric_id: the role-scoped numeric identifier
            allow_stale: when the ledger is unavailable, answer from the cache
                with stale=True instead of failing

        Raises:
            NotFound: the ledger has no such entity
            LedgerUnavailable: the ledger failed and no usable cache copy exists
            CacheWriteError: the ledger answered but the cache could not be written
        """
        kind = profile_kind(role)
        numeric_id = int(numeric_id)
        strategies = [("ledger", lambda: self._sync_from_ledger(kind, numeric_id))]
        if allow_stale:
            strategies.append(("cache", lambda: self._cached(kind, numeric_id)))
        return self._inflight.run(
            ("profile", kind.role, numeric_id, allow_stale),
            lambda: first_success(strategies, recoverable=(LedgerUnavailable,)),
        )

    def register(self, role, numeric_id) -> SyncResult:
        """Mirror a freshly registered on-chain entity into the cache. Never stale."""
        return self.reconcile_profile(role, numeric_id, allow_stale=False)

    def _cached(self, kind, numeric_id):
        identity = self.cache.get(User, role=kind.role, numeric_id=numeric_id)
        if identity is None:
            raise LedgerUnavailable(f"Ledger unavailable and no cached {kind.role} {numeric_id}")
        profile = self.cache.get(kind.model, numeric_id=numeric_id)
        logger.warning(f"Serving cached {kind.role} {numeric_id} (ledger unavailable)")
        return SyncResult(kind, identity, profile, stale=True)

    def _sync_from_ledger(self, kind, numeric_id):
        logger.info(f"Syncing {kind.role} profile from ledger: {numeric_id}")
        entity = kind.fetch(self.ledger, numeric_id)
        try:
            identity = self._upsert_identity(kind, numeric_id, entity)
            profile = self._upsert_profile(kind, identity, kind.ledger_fields(entity))
        except (SQLAlchemyError, Conflict) as e:
            logger.error(f"Cache write failed for {kind.role} {numeric_id}: {e}")
            raise CacheWriteError(f"Could not write {kind.role} {numeric_id} to the cache") from e
        return SyncResult(kind, identity, profile, stale=False)

    def _upsert_identity(self, kind, numeric_id, entity):
        wallet = normalize_wallet(entity.wallet_address)
        try:
            identity, created = self.cache.insert_or_get(
                User,
                {"wallet_address": wallet},
                {"role": kind.role, "numeric_id": numeric_id, "email": entity.email, "is_active": True,
                 "created_at": utcnow()},
            )
        except Conflict as e:
            raise IdentityMismatch(f"{kind.role} {numeric_id} is already bound to another wallet") from e

        if identity.role != kind.role or identity.numeric_id != numeric_id:
            raise IdentityMismatch(
                f"Wallet {wallet} is registered as {identity.role} {identity.numeric_id}, "
                f"ledger reports {kind.role} {numeric_id}"
            )
        if created:
            logger.info(f"Created user in cache for {kind.role} {numeric_id}")
        elif entity.email and identity.email != entity.email:
            with self.cache.session() as db:
                db.execute(update(User).where(User.id == identity.id).values(email=entity.email))
            identity.email = entity.email
        return identity

    def _upsert_profile(self, kind, identity, values):
        now = utcnow()
        profile, created = self.cache.insert_or_get(
            kind.model,
            {"numeric_id": identity.numeric_id},
            {"user_id": identity.id, **values, "created_at": now, "updated_at": now},
        )
        if created:
            logger.info(f"Created {kind.role} profile in cache for {identity.numeric_id}")
            return profile

        if any(getattr(profile, column) != value for column, value in values.items()):
            # Only ledger-sourced columns; cache-only columns are left as they are.
            with self.cache.session() as db:
                db.execute(
                    update(kind.model)
                    .where(kind.model.numeric_id == identity.numeric_id)
                    .values(**values, updated_at=now)
                )
            profile = self.cache.get(kind.model, numeric_id=identity.numeric_id)
            logger.info(f"Updated {kind.role} profile in cache for {identity.numeric_id}")
        return profile

    # Records

    def reconcile_record(self, record_id):
        """Index a ledger record if it is not indexed yet. Indexed records are immutable."""
        record_id = str(record_id)
        return self._inflight.run(("record", record_id), lambda: self._sync_record(record_id))

    def _sync_record(self, record_id):
        existing = self.records.find(record_id)
        if existing is not None:
            return existing

        logger.info(f"Syncing record from ledger: {record_id}")
        record = self.ledger.get_record(record_id)
        try:
            metadata = json.loads(record.meta) if record.meta else {}
        except ValueError as e:
            logger.warning(f"Could not parse metadata of record {record_id}: {e}")
            metadata = {}
        if not isinstance(metadata, dict):
            metadata = {"value": metadata}

        patient = self.cache.get(User, wallet_address=normalize_wallet(record.patient), role=ROLES["PATIENT"])
        created_at = None
        if record.timestamp:
            created_at = datetime.fromtimestamp(record.timestamp, tz=timezone.utc).replace(tzinfo=None)
        try:
            return self.records.index(
                record_id=record_id,
                patient_wallet=record.patient,
                creator_wallet=record.creator,
                content_id=record.cid,
                record_type=metadata.get("recordType") or metadata.get("record_type") or "general",
                metadata=metadata,
                patient_numeric_id=patient.numeric_id if patient else None,
                created_at=created_at,
            )
        except SQLAlchemyError as e:
            logger.error(f"Cache write failed for record {record_id}: {e}")
            raise CacheWriteError(f"Could not index record {record_id}") from e

    # Cache-side lookups and cache-authoritative writes

    def check_registration(self, wallet_address=None, role=None, numeric_id=None) -> Dict[str, Any]:
        if not wallet_address and numeric_id is None:
            raise PayloadRejected("Either wallet_address or numeric_id is required")
        if numeric_id is not None and not role:
            raise PayloadRejected("role is required when looking up by numeric_id")
        if role:
            try:
                kind = profile_kind(role)
            except ValueError as e:
                raise PayloadRejected(str(e)) from None

        identity = None
        if wallet_address:
            identity = self.cache.get(User, wallet_address=normalize_wallet(wallet_address))
        if identity is None and numeric_id is not None:
            identity = self.cache.get(User, role=kind.role, numeric_id=int(numeric_id))

        if identity is None:
            return {"is_registered": False, "message": "Not registered. You can proceed with registration."}

        kind = profile_kind(identity.role)
        profile = self.cache.get(kind.model, numeric_id=identity.numeric_id)
        ledger_data = None
        try:
            ledger_data = kind.fetch(self.ledger, identity.numeric_id).model_dump()
        except (LedgerUnavailable, NotFound) as e:
            logger.info(f"Could not fetch ledger data for {identity.role} {identity.numeric_id}: {e}")

        return {
            "is_registered": True,
            "message": f"You are already registered as {identity.role}",
            "user": identity.as_dict(),
            "profile": kind.view(identity, profile),
            "ledger_data": ledger_data,
        }

    def lookup_by_email(self, email) -> Dict[str, Any]:
        with self.cache.session() as db:
            identity = db.scalar(
                select(User).where(func.lower(User.email) == email.strip().lower()).order_by(User.id).limit(1)
            )
        if identity is None:
            raise NotFound("No account found with this email address")
        kind = profile_kind(identity.role)
        profile = self.cache.get(kind.model, numeric_id=identity.numeric_id)
        return {
            "numeric_id": identity.numeric_id,
            "wallet_address": identity.wallet_address,
            "role": identity.role,
            "name": kind.view(identity, profile)["name"],
            "email": identity.email,
        }

    def update_patient_profile(self, numeric_id, updates) -> Dict[str, Any]:
        """Write cache-authoritative patient fields. Ledger-sourced fields are not accepted."""
        kind = PROFILE_KINDS[ROLES["PATIENT"]]
        fields = {k: v for k, v in updates.items() if k in kind.cache_only_columns and v is not None}
        if not fields:
            raise PayloadRejected("No fields to update")

        numeric_id = int(numeric_id)
        identity = self.cache.get(User, role=kind.role, numeric_id=numeric_id)
        if identity is None or self.cache.get(PatientProfile, numeric_id=numeric_id) is None:
            raise NotFound("Patient profile not found")

        with self.cache.session() as db:
            db.execute(
                update(PatientProfile)
                .where(PatientProfile.numeric_id == numeric_id)
                .values(**fields, updated_at=utcnow())
            )
        logger.info(f"Updated cache-only fields {sorted(fields)} for patient {numeric_id}")

        if self.activity is not None:
            self.activity.notify(
                identity.wallet_address,
                "Profile Updated",
                "Your profile information has been updated successfully",
                "profile_update",
            )
        return kind.view(identity, self.cache.get(PatientProfile, numeric_id=numeric_id))
