"""
Profile kinds for the three HealthLedger roles.

Each kind knows how to read its entity from the ledger, which cache
columns that read is allowed to write, and which columns are
cache-authoritative and must never be written by a sync.
"""

from datetime import date, datetime, timezone

from healthledger.constants import ROLES
from healthledger.database import DiagnosticProfile, DoctorProfile, PatientProfile


def unix_to_date(timestamp):
    """Ledger date (Unix seconds, UTC) -> calendar date string YYYY-MM-DD."""
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).date().isoformat()


def date_to_unix(date_string):
    """Calendar date string -> Unix seconds at UTC midnight of that date."""
    d = date.fromisoformat(date_string)
    return int(datetime(d.year, d.month, d.day, tzinfo=timezone.utc).timestamp())


class ProfileKind:
    role = None
    model = None
    name_column = "full_name"
    default_name = ""
    ledger_columns = ()
    cache_only_columns = ()

    def fetch(self, ledger, numeric_id):
        raise NotImplementedError

    def ledger_fields(self, entity):
        """Cache column values derived from a ledger entity."""
        raise NotImplementedError

    def view(self, identity, profile):
        """Flat profile view combining identity, ledger-sourced and cache-only fields."""
        view = {
            "numeric_id": identity.numeric_id,
            "wallet_address": identity.wallet_address,
            "email": identity.email or "",
            "role": identity.role,
            "name": (getattr(profile, self.name_column, None) if profile else None) or self.default_name,
        }
        for column in self.ledger_columns + self.cache_only_columns:
            if column == self.name_column:
                continue
            view[column] = getattr(profile, column, None) if profile else None
        return view


class PatientKind(ProfileKind):
    role = ROLES["PATIENT"]
    model = PatientProfile
    default_name = "Patient"
    ledger_columns = ("full_name", "date_of_birth", "gender", "blood_group", "home_address")
    cache_only_columns = (
        "phone_number",
        "emergency_contact_name",
        "emergency_contact_phone",
        "allergies",
        "chronic_conditions",
    )

    def fetch(self, ledger, numeric_id):
        return ledger.get_patient(numeric_id)

    def ledger_fields(self, entity):
        return {
            "full_name": entity.name,
            "date_of_birth": unix_to_date(entity.dob),
            "gender": entity.gender,
            "blood_group": entity.blood_group,
            "home_address": entity.home_address,
        }


class DoctorKind(ProfileKind):
    role = ROLES["DOCTOR"]
    model = DoctorProfile
    default_name = "Dr."
    ledger_columns = ("full_name", "specialization", "hospital")
    cache_only_columns = ("license_number", "phone_number", "years_of_experience")

    def fetch(self, ledger, numeric_id):
        return ledger.get_doctor(numeric_id)

    def ledger_fields(self, entity):
        return {
            "full_name": entity.name,
            "specialization": entity.specialization,
            "hospital": entity.hospital,
        }


class DiagnosticKind(ProfileKind):
    role = ROLES["DIAGNOSTIC"]
    model = DiagnosticProfile
    name_column = "center_name"
    default_name = "Diagnostic Center"
    ledger_columns = ("center_name", "location")
    cache_only_columns = ("phone_number", "services_offered", "accreditation")

    def fetch(self, ledger, numeric_id):
        return ledger.get_diagnostic(numeric_id)

    def ledger_fields(self, entity):
        return {"center_name": entity.name, "location": entity.location}


PROFILE_KINDS = {kind.role: kind for kind in (PatientKind(), DoctorKind(), DiagnosticKind())}


def profile_kind(role):
    """Look up the kind for a role name (case-insensitive)."""
    try:
        return PROFILE_KINDS[str(role).lower()]
    except KeyError:
        raise ValueError(f"Invalid role: {role}") from None
