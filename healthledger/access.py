"""
Doctor <-> patient access grants.

This module is the only writer of AccessGrant rows and the only place that
decides whether a caller may see a patient's data. Grants are revocable,
never deleted: revocation flips ``is_active`` and stamps ``revoked_at``,
and a later grant creates a new row.
"""

import logging
from typing import Dict, List, Optional, Any

from sqlalchemy import and_, false, select, update

from healthledger.constants import ROLES
from healthledger.database import (
    AccessGrant,
    PatientProfile,
    RecordIndexEntry,
    User,
    normalize_wallet,
    utcnow,
)
from healthledger.errors import Conflict, NotFound

logger = logging.getLogger(__name__)


class AccessControlEngine:
    def __init__(self, cache, activity=None):
        self.cache = cache
        self.activity = activity

    def _identity(self, wallet_address, role):
        identity = self.cache.get(User, wallet_address=normalize_wallet(wallet_address), role=role)
        if identity is None:
            raise NotFound(f"No {role} registered for wallet {wallet_address}")
        return identity

    def active_grant(self, doctor_wallet, patient_wallet) -> Optional[AccessGrant]:
        return self.cache.get(
            AccessGrant,
            doctor_wallet=normalize_wallet(doctor_wallet),
            patient_wallet=normalize_wallet(patient_wallet),
            is_active=True,
        )

    def grant(self, patient_wallet, doctor_wallet) -> AccessGrant:
        """
        Give a doctor access to a patient's records.

        Granting an already active relationship returns the existing row.
        Granting after a revocation creates a new active row.
        """
        patient = self._identity(patient_wallet, ROLES["PATIENT"])
        doctor = self._identity(doctor_wallet, ROLES["DOCTOR"])

        existing = self.active_grant(doctor.wallet_address, patient.wallet_address)
        if existing is not None:
            logger.info(f"Doctor {doctor.wallet_address} already has access to patient {patient.wallet_address}")
            return existing

        try:
            grant = self.cache.insert(
                AccessGrant(
                    doctor_wallet=doctor.wallet_address,
                    patient_wallet=patient.wallet_address,
                    doctor_numeric_id=doctor.numeric_id,
                    patient_numeric_id=patient.numeric_id,
                    is_active=True,
                    granted_at=utcnow(),
                )
            )
        except Conflict:
            # A concurrent grant for the same pair won the race
            grant = self.active_grant(doctor.wallet_address, patient.wallet_address)
            if grant is None:
                raise
            return grant

        logger.info(f"Patient {patient.wallet_address} granted access to doctor {doctor.wallet_address}")
        if self.activity is not None:
            self.activity.notify(
                doctor.wallet_address,
                "Access Granted",
                f"Patient {patient.numeric_id} granted you access to their records",
                "access_granted",
            )
        return grant

    def revoke(self, patient_wallet, doctor_wallet) -> Optional[AccessGrant]:
        """
        Revoke a doctor's access. Revoking a missing or already revoked grant
        is a no-op; the most recent grant row (if any) is returned.
        """
        doctor_wallet = normalize_wallet(doctor_wallet)
        patient_wallet = normalize_wallet(patient_wallet)
        with self.cache.session() as db:
            result = db.execute(
                update(AccessGrant)
                .where(
                    AccessGrant.doctor_wallet == doctor_wallet,
                    AccessGrant.patient_wallet == patient_wallet,
                    AccessGrant.is_active.is_(True),
                )
                .values(is_active=False, revoked_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            revoked = result.rowcount
            latest = db.scalar(
                select(AccessGrant)
                .where(AccessGrant.doctor_wallet == doctor_wallet, AccessGrant.patient_wallet == patient_wallet)
                .order_by(AccessGrant.id.desc())
                .limit(1)
            )

        if revoked:
            logger.info(f"Patient {patient_wallet} revoked access for doctor {doctor_wallet}")
            if self.activity is not None:
                self.activity.notify(
                    doctor_wallet,
                    "Access Revoked",
                    f"Patient {latest.patient_numeric_id} revoked your access to their records",
                    "access_revoked",
                )
        else:
            logger.info(f"No active grant to revoke for doctor {doctor_wallet} / patient {patient_wallet}")
        return latest

    def grant_history(self, doctor_wallet, patient_wallet) -> List[AccessGrant]:
        with self.cache.session() as db:
            rows = db.scalars(
                select(AccessGrant)
                .where(
                    AccessGrant.doctor_wallet == normalize_wallet(doctor_wallet),
                    AccessGrant.patient_wallet == normalize_wallet(patient_wallet),
                )
                .order_by(AccessGrant.id)
            )
            return list(rows)

    def is_authorized(self, requester_wallet, requester_role, patient_wallet,
                      requester_numeric_id=None, record_id=None) -> bool:
        """
        Decide whether a caller may see a patient's data.

        - a patient is authorized for their own data only
        - a doctor needs an active grant naming their wallet (and numeric id, when known)
        - a diagnostic center is authorized only for a record it created
        """
        requester_wallet = normalize_wallet(requester_wallet)
        patient_wallet = normalize_wallet(patient_wallet)
        role = (requester_role or "").lower()

        if role == ROLES["PATIENT"]:
            return requester_wallet is not None and requester_wallet == patient_wallet

        if role == ROLES["DOCTOR"]:
            criteria = {
                "doctor_wallet": requester_wallet,
                "patient_wallet": patient_wallet,
                "is_active": True,
            }
            if requester_numeric_id is not None:
                criteria["doctor_numeric_id"] = int(requester_numeric_id)
            return self.cache.get(AccessGrant, **criteria) is not None

        if role == ROLES["DIAGNOSTIC"]:
            if record_id is None:
                return False
            entry = self.cache.get(RecordIndexEntry, record_id=str(record_id))
            return (
                entry is not None
                and entry.patient_wallet == patient_wallet
                and entry.creator_wallet == requester_wallet
            )

        return False

    def can_view_record(self, requester_wallet, requester_role, entry, requester_numeric_id=None) -> bool:
        return self.is_authorized(
            requester_wallet,
            requester_role,
            entry.patient_wallet,
            requester_numeric_id=requester_numeric_id,
            record_id=entry.record_id,
        )

    def record_scope(self, wallet_address, role, numeric_id=None):
        """SQL condition restricting RecordIndexEntry rows to what the caller may see."""
        wallet_address = normalize_wallet(wallet_address)
        role = (role or "").lower()
        if role == ROLES["PATIENT"]:
            return RecordIndexEntry.patient_wallet == wallet_address
        if role == ROLES["DIAGNOSTIC"]:
            return RecordIndexEntry.creator_wallet == wallet_address
        if role == ROLES["DOCTOR"]:
            granted = select(AccessGrant.patient_wallet).where(
                AccessGrant.doctor_wallet == wallet_address,
                AccessGrant.is_active.is_(True),
            )
            if numeric_id is not None:
                granted = granted.where(AccessGrant.doctor_numeric_id == int(numeric_id))
            return RecordIndexEntry.patient_wallet.in_(granted)
        return false()

    def list_patients_for(self, doctor_wallet, doctor_numeric_id=None) -> List[Dict[str, Any]]:
        """
        Patients that currently grant access to this doctor.

        Filters on the doctor's numeric id as well as the wallet; numeric ids
        are only unique within a role, so the patient side is joined on the
        patient role explicitly.
        """
        doctor_wallet = normalize_wallet(doctor_wallet)
        if doctor_numeric_id is None:
            doctor = self.cache.get(User, wallet_address=doctor_wallet, role=ROLES["DOCTOR"])
            if doctor is None:
                return []
            doctor_numeric_id = doctor.numeric_id

        query = (
            select(AccessGrant, User, PatientProfile)
            .join(
                User,
                and_(
                    User.wallet_address == AccessGrant.patient_wallet,
                    User.numeric_id == AccessGrant.patient_numeric_id,
                    User.role == ROLES["PATIENT"],
                ),
            )
            .outerjoin(PatientProfile, PatientProfile.numeric_id == User.numeric_id)
            .where(
                AccessGrant.doctor_wallet == doctor_wallet,
                AccessGrant.doctor_numeric_id == int(doctor_numeric_id),
                AccessGrant.is_active.is_(True),
            )
            .order_by(AccessGrant.granted_at.desc(), AccessGrant.id.desc())
        )
        with self.cache.session() as db:
            rows = db.execute(query).all()

        patients = []
        for grant, user, profile in rows:
            patients.append({
                "patient_numeric_id": user.numeric_id,
                "full_name": profile.full_name if profile else None,
                "blood_group": profile.blood_group if profile else None,
                "gender": profile.gender if profile else None,
                "wallet_address": user.wallet_address,
                "email": user.email,
                "granted_at": grant.granted_at,
            })
        logger.info(f"Found {len(patients)} patients for doctor {doctor_numeric_id}")
        return patients

    def list_doctors_for(self, patient_wallet) -> List[AccessGrant]:
        """Active grants a patient has handed out."""
        with self.cache.session() as db:
            rows = db.scalars(
                select(AccessGrant)
                .where(
                    AccessGrant.patient_wallet == normalize_wallet(patient_wallet),
                    AccessGrant.is_active.is_(True),
                )
                .order_by(AccessGrant.granted_at.desc())
            )
            return list(rows)
