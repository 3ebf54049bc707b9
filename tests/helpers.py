"""
Shared fixtures for the HealthLedger test suites: wallets with fixed test
keys, an in-memory cache and in-memory stand-ins for the ledger and the
content store.
"""

import json
import logging

from eth_account import Account
from eth_account.messages import encode_defunct
from sqlalchemy import func, select
from web3 import Web3

from healthledger.content_store import validate_upload
from healthledger.database import Cache
from healthledger.errors import ContentStoreUnavailable, LedgerUnavailable, NotFound
from healthledger.models import LedgerDiagnostic, LedgerDoctor, LedgerPatient, LedgerRecord
from healthledger.profiles import date_to_unix

logging.getLogger("healthledger").setLevel(logging.CRITICAL)

# Hardhat development keys, never used outside tests
TEST_KEYS = {
    "Patient 1": "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d",
    "Patient 2": "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a",
    "Doctor 1": "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80",
    "Doctor 2": "0x7c852118294e51e653712a81e05800f419141751be58f605c371e15141b007a6",
    "Diagnostic 1": "0x47e179ec197488593b187f80a00eb0da91f1b9d0b13f8733639f19c30a34926a",
    "Patient 3": "0x1111111111111111111111111111111111111111111111111111111111111111",
}

TEST_ACCOUNTS = {
    name: {"address": Account.from_key(private_key).address, "private_key": private_key}
    for name, private_key in TEST_KEYS.items()
}


def wallet(name):
    return TEST_ACCOUNTS[name]["address"]


def sign(name, message):
    """Sign a message the way a browser wallet does (personal_sign)."""
    signed = Account.sign_message(encode_defunct(text=message), private_key=TEST_ACCOUNTS[name]["private_key"])
    return Web3.to_hex(signed.signature)


def memory_cache():
    cache = Cache("sqlite://")
    cache.init_schema()
    return cache


class FakeLedger:
    """In-memory ledger. Set ``down = True`` to make every call fail."""

    def __init__(self):
        self.patients = {}
        self.doctors = {}
        self.diagnostics = {}
        self.records = {}
        self.roles = {}
        self.down = False
        self.calls = []

    def _check(self, name):
        self.calls.append(name)
        if self.down:
            raise LedgerUnavailable(f"Ledger call {name} failed: connection refused")

    def add_patient(self, numeric_id, name, account, dob="1990-05-17", email="", **fields):
        self.patients[numeric_id] = LedgerPatient(
            name=name,
            dob=date_to_unix(dob),
            email=email,
            wallet_address=wallet(account),
            gender=fields.get("gender", "Female"),
            blood_group=fields.get("blood_group", "O+"),
            home_address=fields.get("home_address", "12 Harbour Road"),
        )
        return self.patients[numeric_id]

    def add_doctor(self, numeric_id, name, account, email="", doctor_role=True, **fields):
        self.doctors[numeric_id] = LedgerDoctor(
            name=name,
            email=email,
            wallet_address=wallet(account),
            specialization=fields.get("specialization", "Cardiology"),
            hospital=fields.get("hospital", "City Hospital"),
        )
        if doctor_role:
            self.roles.setdefault(wallet(account).lower(), set()).add("DOCTOR")
        return self.doctors[numeric_id]

    def add_diagnostic(self, numeric_id, name, account, email="", location="North Wing"):
        self.diagnostics[numeric_id] = LedgerDiagnostic(
            name=name, location=location, email=email, wallet_address=wallet(account)
        )
        return self.diagnostics[numeric_id]

    def add_record(self, record_id, patient_account, cid, meta=None, creator_account=None, timestamp=1700000000):
        self.records[str(record_id)] = LedgerRecord(
            record_id=str(record_id),
            patient=wallet(patient_account),
            creator=wallet(creator_account or patient_account),
            cid=cid,
            meta=meta if isinstance(meta, str) else json.dumps(meta or {}),
            timestamp=timestamp,
        )
        return self.records[str(record_id)]

    def _lookup(self, table, key, what):
        if key not in table:
            raise NotFound(f"{what} {key} not found on ledger")
        return table[key]

    def get_patient(self, numeric_id):
        self._check("getPatient")
        return self._lookup(self.patients, int(numeric_id), "Patient")

    def get_doctor(self, numeric_id):
        self._check("getDoctor")
        return self._lookup(self.doctors, int(numeric_id), "Doctor")

    def get_diagnostic(self, numeric_id):
        self._check("getDiagnostic")
        return self._lookup(self.diagnostics, int(numeric_id), "Diagnostic center")

    def get_record(self, record_id):
        self._check("getRecord")
        return self._lookup(self.records, str(record_id), "Record")

    def has_role(self, address, role_name):
        self._check("hasRole")
        return role_name.upper() in self.roles.get(address.lower(), set())


class FakeContentStore:
    """In-memory content store keyed by CID."""

    def __init__(self, blobs=None):
        self.blobs = dict(blobs or {})
        self.down = False
        self.uploads = []

    def get(self, cid):
        if self.down or cid not in self.blobs:
            raise ContentStoreUnavailable(f"Failed to retrieve content for CID {cid}")
        return self.blobs[cid]

    def put_file(self, data, file_name, metadata=None):
        ext = validate_upload(data, file_name)
        cid = f"bafyfake{len(self.blobs) + 1}"
        self.blobs[cid] = data
        self.uploads.append((file_name, metadata))
        return {"cid": cid, "size": len(data), "url": f"https://gateway.test/ipfs/{cid}",
                "file_name": file_name, "file_type": ext}


def count(cache, model, **criteria):
    """Number of cache rows of ``model`` matching the given column values."""
    with cache.session() as db:
        statement = select(func.count()).select_from(model)
        for column, value in criteria.items():
            statement = statement.where(getattr(model, column) == value)
        return db.scalar(statement)
