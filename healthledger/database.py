"""
Relational cache for the HealthLedger backend.

The cache holds a derived copy of ledger facts (identities, role profiles,
record pointers) plus data that only lives here: cache-only profile fields,
access grants, access logs and notifications. It is never the source of
truth for identity or role.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    inspect,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from healthledger.constants import DATABASE_URL
from healthledger.errors import Conflict

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_wallet(wallet_address):
    """Wallet addresses are compared case-insensitively; store them lowercased."""
    if wallet_address is None:
        return None
    return wallet_address.strip().lower()


class SerializerMixin:
    def as_dict(self):
        return {attr.key: getattr(self, attr.key) for attr in inspect(self).mapper.column_attrs}


class User(SerializerMixin, Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("role", "numeric_id", name="uq_users_role_numeric_id"),)

    id = Column(Integer, primary_key=True)
    wallet_address = Column(String(42), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=True, index=True)
    role = Column(String(20), nullable=False)
    numeric_id = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


class PatientProfile(SerializerMixin, Base):
    __tablename__ = "patient_profiles"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    numeric_id = Column(Integer, unique=True, nullable=False)
    # ledger-sourced
    full_name = Column(String(255))
    date_of_birth = Column(String(10))
    gender = Column(String(20))
    blood_group = Column(String(5))
    home_address = Column(Text)
    # cache-only
    phone_number = Column(String(20))
    emergency_contact_name = Column(String(255))
    emergency_contact_phone = Column(String(20))
    allergies = Column(Text)
    chronic_conditions = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)


class DoctorProfile(SerializerMixin, Base):
    __tablename__ = "doctor_profiles"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    numeric_id = Column(Integer, unique=True, nullable=False)
    # ledger-sourced
    full_name = Column(String(255))
    specialization = Column(String(255))
    hospital = Column(String(255))
    # cache-only
    license_number = Column(String(100))
    phone_number = Column(String(20))
    years_of_experience = Column(Integer)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)


class DiagnosticProfile(SerializerMixin, Base):
    __tablename__ = "diagnostic_profiles"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    numeric_id = Column(Integer, unique=True, nullable=False)
    # ledger-sourced
    center_name = Column(String(255))
    location = Column(Text)
    # cache-only
    phone_number = Column(String(20))
    services_offered = Column(Text)
    accreditation = Column(String(255))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)


class RecordIndexEntry(SerializerMixin, Base):
    __tablename__ = "record_index"

    id = Column(Integer, primary_key=True)
    record_id = Column(String(128), unique=True, nullable=False)
    patient_wallet = Column(String(42), nullable=False, index=True)
    patient_numeric_id = Column(Integer, nullable=True)
    creator_wallet = Column(String(42), nullable=False, index=True)
    content_id = Column(String(128), nullable=False, index=True)
    record_type = Column(String(50), default="general")
    # "metadata" is reserved on declarative classes
    record_metadata = Column("metadata", JSON, default=dict)
    searchable_text = Column(Text, default="")
    blockchain_tx_hash = Column(String(66), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class AccessGrant(SerializerMixin, Base):
    __tablename__ = "doctor_patient_access"
    # At most one active grant per (doctor, patient); revoked rows are history.
    __table_args__ = (
        Index(
            "uq_active_grant",
            "doctor_wallet",
            "patient_wallet",
            unique=True,
            sqlite_where=text("is_active"),
            postgresql_where=text("is_active"),
        ),
    )

    id = Column(Integer, primary_key=True)
    doctor_wallet = Column(String(42), nullable=False, index=True)
    patient_wallet = Column(String(42), nullable=False, index=True)
    doctor_numeric_id = Column(Integer, nullable=False)
    patient_numeric_id = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    granted_at = Column(DateTime, default=utcnow)
    revoked_at = Column(DateTime, nullable=True)


class AccessLog(SerializerMixin, Base):
    __tablename__ = "access_logs"

    id = Column(Integer, primary_key=True)
    record_id = Column(String(128), nullable=False, index=True)
    accessor_wallet = Column(String(42), nullable=True)
    accessor_role = Column(String(20), nullable=True)
    action = Column(String(50), nullable=False)
    origin = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    timestamp = Column(DateTime, default=utcnow)


class Notification(SerializerMixin, Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    recipient_wallet = Column(String(42), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(50), nullable=False)
    related_record_id = Column(String(128), nullable=True)
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)


class Cache:
    """Session factory and single-entity primitives over the relational cache."""

    def __init__(self, database_url=DATABASE_URL, engine=None):
        if engine is None:
            kwargs = {}
            if database_url.startswith("sqlite"):
                kwargs["connect_args"] = {"check_same_thread": False}
                if ":memory:" in database_url or database_url == "sqlite://":
                    kwargs["poolclass"] = StaticPool
            engine = create_engine(database_url, **kwargs)
        self.engine = engine
        self.Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def init_schema(self):
        Base.metadata.create_all(bind=self.engine)
        logger.info("Relational cache schema is ready")

    @contextmanager
    def session(self):
        """Session that commits on success and rolls back on any error."""
        db = self.Session()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get(self, model, **criteria):
        with self.session() as db:
            return db.scalar(select(model).filter_by(**criteria))

    def insert(self, row):
        """Insert one row; a uniqueness violation surfaces as Conflict."""
        try:
            with self.session() as db:
                db.add(row)
        except IntegrityError as e:
            raise Conflict(f"{row.__tablename__}: {e.orig}") from e
        return row

    def insert_or_get(self, model, criteria, values):
        """
        Idempotent insert keyed on ``criteria``.

        Returns (row, created). A concurrent insert of the same key loses the
        uniqueness race and reads the winner's row instead.
        """
        existing = self.get(model, **criteria)
        if existing is not None:
            return existing, False
        try:
            return self.insert(model(**criteria, **values)), True
        except Conflict:
            existing = self.get(model, **criteria)
            if existing is None:
                raise
            return existing, False
