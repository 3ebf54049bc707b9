"""
Read façade over the HealthLedger contract.

Every call is a bounded-timeout JSON-RPC request. Network failures,
timeouts and contract reverts surface as LedgerUnavailable; an entity the
contract reports as empty surfaces as NotFound. The client keeps no state
besides the contract handle.
"""

import json
import logging

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from healthledger.constants import CONTRACT_ABI_PATH, CONTRACT_ADDRESS, LEDGER_RPC_URL, LEDGER_TIMEOUT
from healthledger.errors import LedgerUnavailable, NotFound
from healthledger.models import LedgerDiagnostic, LedgerDoctor, LedgerPatient, LedgerRecord

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _abi_function(name, inputs, outputs):
    return {
        "inputs": [{"internalType": t, "name": n, "type": t} for n, t in inputs],
        "name": name,
        "outputs": [{"internalType": t, "name": n, "type": t} for n, t in outputs],
        "stateMutability": "view",
        "type": "function",
    }


# Minimal ABI covering the read calls this client makes
DEFAULT_ABI = [
    _abi_function(
        "getPatient",
        [("hhNumber", "uint256")],
        [("name", "string"), ("dob", "uint256"), ("gender", "string"), ("bloodGroup", "string"),
         ("homeAddress", "string"), ("email", "string"), ("walletAddress", "address")],
    ),
    _abi_function(
        "getDoctor",
        [("hhNumber", "uint256")],
        [("name", "string"), ("specialization", "string"), ("hospital", "string"),
         ("email", "string"), ("walletAddress", "address")],
    ),
    _abi_function(
        "getDiagnostic",
        [("hhNumber", "uint256")],
        [("name", "string"), ("location", "string"), ("email", "string"), ("walletAddress", "address")],
    ),
    _abi_function(
        "getRecord",
        [("recordId", "string")],
        [("patient", "address"), ("creator", "address"), ("cid", "string"), ("meta", "string"),
         ("timestamp", "uint256")],
    ),
    _abi_function("hasRole", [("role", "bytes32"), ("account", "address")], [("", "bool")]),
]


def load_abi(abi_path=CONTRACT_ABI_PATH):
    """Load the contract ABI from a compiled artifact, or fall back to DEFAULT_ABI."""
    try:
        with open(abi_path, "r") as f:
            abi = json.load(f)["abi"]
        logger.info(f"Loaded contract ABI from {abi_path}")
        return abi
    except (FileNotFoundError, json.JSONDecodeError, KeyError) as e:
        logger.warning(f"Could not load ABI from {abi_path} ({e}); using built-in ABI")
        return DEFAULT_ABI


def role_id(role_name):
    """bytes32 identifier of an on-chain role, e.g. keccak256("DOCTOR_ROLE")."""
    return Web3.keccak(text=f"{role_name.upper()}_ROLE")


class LedgerClient:
    def __init__(self, rpc_url=LEDGER_RPC_URL, contract_address=CONTRACT_ADDRESS, abi=None,
                 timeout=LEDGER_TIMEOUT, contract=None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.contract = contract
        if self.contract is None and contract_address:
            w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
            self.contract = w3.eth.contract(
                address=Web3.to_checksum_address(contract_address),
                abi=abi if abi is not None else load_abi(),
            )
        elif self.contract is None:
            logger.warning("CONTRACT_ADDRESS not set; ledger calls will report the ledger as unavailable")

    def _call(self, function_name, *args):
        if self.contract is None:
            raise LedgerUnavailable("Ledger contract is not configured")
        try:
            return getattr(self.contract.functions, function_name)(*args).call()
        except (requests.exceptions.RequestException, Web3Exception, ValueError, OSError) as e:
            logger.error(f"Ledger call {function_name}{args} failed: {e}")
            raise LedgerUnavailable(f"Ledger call {function_name} failed: {e}") from e

    @staticmethod
    def _require(found, what):
        if not found:
            raise NotFound(f"{what} not found on ledger")

    def get_patient(self, numeric_id):
        name, dob, gender, blood_group, home_address, email, wallet = self._call("getPatient", int(numeric_id))
        self._require(name and wallet != ZERO_ADDRESS, f"Patient {numeric_id}")
        return LedgerPatient(
            name=name,
            dob=int(dob),
            gender=gender,
            blood_group=blood_group,
            home_address=home_address,
            email=email,
            wallet_address=wallet,
        )

    def get_doctor(self, numeric_id):
        name, specialization, hospital, email, wallet = self._call("getDoctor", int(numeric_id))
        self._require(name and wallet != ZERO_ADDRESS, f"Doctor {numeric_id}")
        return LedgerDoctor(
            name=name,
            specialization=specialization,
            hospital=hospital,
            email=email,
            wallet_address=wallet,
        )

    def get_diagnostic(self, numeric_id):
        name, location, email, wallet = self._call("getDiagnostic", int(numeric_id))
        self._require(name and wallet != ZERO_ADDRESS, f"Diagnostic center {numeric_id}")
        return LedgerDiagnostic(name=name, location=location, email=email, wallet_address=wallet)

    def get_record(self, record_id):
        patient, creator, cid, meta, timestamp = self._call("getRecord", str(record_id))
        self._require(cid and patient != ZERO_ADDRESS, f"Record {record_id}")
        return LedgerRecord(
            record_id=str(record_id),
            patient=patient,
            creator=creator if creator != ZERO_ADDRESS else patient,
            cid=cid,
            meta=meta,
            timestamp=int(timestamp),
        )

    def has_role(self, address, role_name):
        return bool(self._call("hasRole", role_id(role_name), Web3.to_checksum_address(address)))
