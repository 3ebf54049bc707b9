"""
Record index and search.

The index keeps one row per ledger record: who it belongs to, who created
it, where its encrypted payload lives (content identifier) and a
searchable text projection of its metadata. Clinical payloads are never
stored here.
"""

import logging
from typing import Dict, List, Any

from sqlalchemy import or_, select, update

from healthledger.database import RecordIndexEntry, normalize_wallet, utcnow
from healthledger.errors import Forbidden, NotFound, PayloadRejected

logger = logging.getLogger(__name__)


def _flatten(value):
    if isinstance(value, dict):
        for key in sorted(value):
            yield str(key)
            yield from _flatten(value[key])
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _flatten(item)
    elif value is not None:
        yield str(value)


def build_searchable_text(record_type, metadata):
    """
    Deterministic search projection of a record's metadata.

    Keys are visited in sorted order and the result is lowercased with
    whitespace collapsed, so equal metadata always gives equal text.
    """
    parts = [record_type or ""] + list(_flatten(metadata or {}))
    return " ".join(" ".join(parts).lower().split())


class RecordIndex:
    def __init__(self, cache, access, activity=None, content_store=None):
        self.cache = cache
        self.access = access
        self.activity = activity
        self.content_store = content_store

    def index(self, record_id, patient_wallet, content_id, creator_wallet=None, record_type="general",
              metadata=None, patient_numeric_id=None, blockchain_tx_hash=None, created_at=None):
        """
        Add a record to the index. Indexing an existing record_id returns the
        stored entry unchanged.
        """
        metadata = metadata or {}
        record_type = record_type or "general"
        entry, created = self.cache.insert_or_get(
            RecordIndexEntry,
            {"record_id": str(record_id)},
            {
                "patient_wallet": normalize_wallet(patient_wallet),
                "patient_numeric_id": patient_numeric_id,
                "creator_wallet": normalize_wallet(creator_wallet or patient_wallet),
                "content_id": content_id,
                "record_type": record_type,
                "record_metadata": metadata,
                "searchable_text": build_searchable_text(record_type, metadata),
                "blockchain_tx_hash": blockchain_tx_hash,
                "created_at": created_at or utcnow(),
            },
        )
        if created:
            logger.info(f"Indexed record {record_id} -> {content_id}")
        return entry

    def get(self, record_id):
        entry = self.cache.get(RecordIndexEntry, record_id=str(record_id))
        if entry is None:
            raise NotFound(f"Record {record_id} is not indexed")
        return entry

    def find(self, record_id):
        return self.cache.get(RecordIndexEntry, record_id=str(record_id))

    def refresh_projection(self, record_id):
        """Recompute the searchable text; the only mutable part of an entry."""
        entry = self.get(record_id)
        text = build_searchable_text(entry.record_type, entry.record_metadata)
        if text != entry.searchable_text:
            with self.cache.session() as db:
                db.execute(
                    update(RecordIndexEntry)
                    .where(RecordIndexEntry.record_id == entry.record_id)
                    .values(searchable_text=text)
                )
            entry.searchable_text = text
        return entry

    def search(self, query, scope_wallet=None, scope_role=None, scope_numeric_id=None, limit=50,
               origin=None, user_agent=None) -> List[RecordIndexEntry]:
        """
        Token search over the metadata projection.

        Every token of the query must appear in a record's projection. With a
        scope wallet the result is restricted in SQL to what that caller may
        see; without a role the wallet is matched as owner or creator.
        """
        tokens = (query or "").lower().split()
        if not tokens:
            raise PayloadRejected("Search query is required")

        statement = select(RecordIndexEntry).where(
            *[RecordIndexEntry.searchable_text.contains(token, autoescape=True) for token in tokens]
        )
        if scope_wallet is not None:
            if scope_role:
                statement = statement.where(self.access.record_scope(scope_wallet, scope_role, scope_numeric_id))
            else:
                wallet = normalize_wallet(scope_wallet)
                statement = statement.where(
                    or_(RecordIndexEntry.patient_wallet == wallet, RecordIndexEntry.creator_wallet == wallet)
                )
        statement = statement.order_by(RecordIndexEntry.created_at.desc(), RecordIndexEntry.id.desc()).limit(limit)

        with self.cache.session() as db:
            results = list(db.scalars(statement))

        if self.activity is not None:
            self.activity.log_access("search", scope_wallet, scope_role or "user", "search", origin, user_agent)
        logger.info(f"Search '{query}' returned {len(results)} records")
        return results

    def list_by_patient(self, patient_wallet, limit=50, creator_wallet=None) -> List[RecordIndexEntry]:
        """Newest records of a patient, optionally only those written by ``creator_wallet``."""
        statement = select(RecordIndexEntry).where(
            RecordIndexEntry.patient_wallet == normalize_wallet(patient_wallet)
        )
        if creator_wallet is not None:
            statement = statement.where(RecordIndexEntry.creator_wallet == normalize_wallet(creator_wallet))
        statement = statement.order_by(RecordIndexEntry.created_at.desc(), RecordIndexEntry.id.desc()).limit(limit)
        with self.cache.session() as db:
            return list(db.scalars(statement))

    def fetch_content(self, record_id, requester_wallet, requester_role, requester_numeric_id=None,
                      origin=None, user_agent=None) -> bytes:
        """
        Resolve a record to its encrypted payload.

        The caller must be authorized for the record. Content store failures
        propagate; there is no fallback for payload reads.
        """
        entry = self.get(record_id)
        if not self.access.can_view_record(requester_wallet, requester_role, entry, requester_numeric_id):
            logger.warning(f"Denied content of record {record_id} to {requester_role} {requester_wallet}")
            raise Forbidden(f"Not authorized for record {record_id}")
        data = self.content_store.get(entry.content_id)
        if self.activity is not None:
            self.activity.log_access(entry.record_id, requester_wallet, requester_role, "view", origin, user_agent)
        return data

    @staticmethod
    def serialize(entry) -> Dict[str, Any]:
        data = entry.as_dict()
        data["metadata"] = data.pop("record_metadata")
        return data
